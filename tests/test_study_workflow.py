"""
Tests for persisted workflow transitions.

These tests verify:
1. End-to-end: allocate an AOI study, confirm it, study lands in Reporting
2. Decisions require the holder (or an admin) and the track permission
3. Unknown decisions release the study in place
4. Queue classification and downstream progression
5. Every transition leaves an audit entry
"""

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pv_triage.models import AuditLog, WorkflowStage, WorkflowTrack
from pv_triage.services import AuditService
from pv_triage.services.allocator import AllocationService, WorkflowConfig
from pv_triage.services.authorization import AuthorizationEngine, PermissionDeniedError
from pv_triage.services.study_workflow import StudyWorkflowService
from pv_triage.services.workflow_engine import (
    ConcurrencyError,
    InvalidTransitionError,
    NotAssignedError,
    StudyNotFoundError,
    process_assessment,
)


@pytest.fixture
def authorization() -> AuthorizationEngine:
    return AuthorizationEngine(super_admin_org_id="org_super")


def services(session, authorization, **config):
    audit = AuditService(session)
    return (
        AllocationService(session, WorkflowConfig(**config), audit=audit),
        StudyWorkflowService(session, authorization=authorization, audit=audit),
    )


# =============================================================================
# TEST: END TO END
# =============================================================================


class TestAoiScenario:
    async def test_allocate_then_confirm_aoi(
        self,
        session: AsyncSession,
        org_id: str,
        study_factory,
        user_factory,
        authorization,
    ):
        reviewer = user_factory(org_id, "QA", id="u1")
        study = study_factory(org_id, "Probable AOI", WorkflowTrack.AOI, WorkflowStage.TRIAGE_QUEUE_AOI)
        session.add_all([reviewer, study])
        await session.flush()

        allocator, workflow = services(session, authorization, batch_size_aoi=1)

        batch = await allocator.allocate(org_id, WorkflowTrack.AOI, reviewer)
        assert [s.id for s in batch.studies] == [study.id]
        assert batch.studies[0].workflow_stage == WorkflowStage.ASSESSMENT_AOI
        assert batch.studies[0].assigned_to == "u1"

        outcome = await workflow.apply_decision(org_id, study.id, "Confirm AOI", reviewer)

        assert outcome.study.workflow_stage == WorkflowStage.REPORTING
        assert outcome.study.status == "Reporting"
        assert outcome.study.icsr_classification == "Probable AOI"
        assert outcome.study.assigned_to is None
        assert outcome.study.batch_id is None

        history = (
            await session.execute(
                select(AuditLog.action).where(AuditLog.resource_id == study.id).order_by(AuditLog.timestamp)
            )
        ).scalars().all()
        assert history == ["allocate", "decide"]


# =============================================================================
# TEST: DECISIONS
# =============================================================================


class TestApplyDecision:
    async def _allocated(self, session, org_id, study_factory, reviewer, authorization):
        study = study_factory(org_id)
        session.add_all([reviewer, study])
        await session.flush()
        allocator, workflow = services(session, authorization)
        await allocator.allocate(org_id, WorkflowTrack.ICSR, reviewer)
        return study, workflow

    async def test_reject_returns_to_queue(
        self, session: AsyncSession, org_id, study_factory, user_factory, authorization,
    ):
        reviewer = user_factory(org_id, "triage")
        study, workflow = await self._allocated(session, org_id, study_factory, reviewer, authorization)

        outcome = await workflow.apply_decision(org_id, study.id, "Reject", reviewer)

        assert outcome.study.workflow_stage == WorkflowStage.TRIAGE_QUEUE_ICSR
        assert outcome.study.assigned_to is None

    async def test_unknown_decision_is_rejected_and_study_stays_held(
        self, session: AsyncSession, org_id, study_factory, user_factory, authorization,
    ):
        reviewer = user_factory(org_id, "triage")
        study, workflow = await self._allocated(session, org_id, study_factory, reviewer, authorization)

        with pytest.raises(InvalidTransitionError):
            await workflow.apply_decision(org_id, study.id, "Typo Decision", reviewer)

        stored = await workflow.get_study(org_id, study.id)
        assert stored.workflow_stage == WorkflowStage.ASSESSMENT_ICSR
        assert stored.assigned_to == reviewer.id
        assert stored.batch_id is not None

        allocator, _ = services(session, authorization)
        released = await allocator.release(org_id, reviewer, reviewer_id=reviewer.id)
        assert [s.id for s in released] == [study.id]
        assert released[0].workflow_stage == WorkflowStage.TRIAGE_QUEUE_ICSR

        history = (
            await session.execute(select(AuditLog.action).where(AuditLog.resource_id == study.id))
        ).scalars().all()
        assert "decide" not in history

    async def test_non_holder_cannot_decide(
        self, session: AsyncSession, org_id, study_factory, user_factory, authorization,
    ):
        reviewer = user_factory(org_id, "triage")
        study, workflow = await self._allocated(session, org_id, study_factory, reviewer, authorization)
        other = user_factory(org_id, "triage")

        with pytest.raises(NotAssignedError):
            await workflow.apply_decision(org_id, study.id, "Confirm ICSR", other)

    async def test_admin_can_decide_for_holder(
        self, session: AsyncSession, org_id, study_factory, user_factory, authorization,
    ):
        reviewer = user_factory(org_id, "triage")
        study, workflow = await self._allocated(session, org_id, study_factory, reviewer, authorization)

        outcome = await workflow.apply_decision(org_id, study.id, "Confirm ICSR", user_factory(org_id, "admin"))

        assert outcome.study.workflow_stage == WorkflowStage.DATA_ENTRY

    async def test_track_permission_is_rechecked(
        self, session: AsyncSession, org_id, study_factory, user_factory, authorization,
    ):
        reviewer = user_factory(org_id, "triage")
        study, workflow = await self._allocated(session, org_id, study_factory, reviewer, authorization)
        reviewer.permissions = {}

        with pytest.raises(PermissionDeniedError):
            await workflow.apply_decision(org_id, study.id, "Confirm ICSR", reviewer)

    async def test_decision_outside_assessment(
        self, session: AsyncSession, org_id, study_factory, user_factory, authorization,
    ):
        study = study_factory(org_id)
        session.add(study)
        await session.flush()
        _, workflow = services(session, authorization)

        with pytest.raises(InvalidTransitionError):
            await workflow.apply_decision(org_id, study.id, "Confirm ICSR", user_factory(org_id, "admin"))
        with pytest.raises(StudyNotFoundError):
            await workflow.apply_decision(org_id, "missing", "Confirm ICSR", user_factory(org_id, "admin"))

    async def test_stale_holder_is_a_conflict(
        self, session: AsyncSession, org_id, study_factory, user_factory, authorization,
    ):
        reviewer = user_factory(org_id, "triage")
        study, workflow = await self._allocated(session, org_id, study_factory, reviewer, authorization)
        allocator, _ = services(session, authorization)

        # Another request releases the study after it was read
        loaded = await workflow.get_study(org_id, study.id)
        await allocator._apply_if_held(org_id, study.id, reviewer.id, {"assigned_to": None})

        with pytest.raises(ConcurrencyError):
            await workflow._write(org_id, loaded, process_assessment(loaded, "Confirm ICSR"), reviewer, "decide", "", holder_guard=True)


# =============================================================================
# TEST: QUEUE CLASSIFICATION AND PROGRESSION
# =============================================================================


class TestClassifyAndAdvance:
    async def test_classify_into_assessment_assigns_classifier(
        self, session: AsyncSession, org_id, study_factory, user_factory, authorization,
    ):
        reviewer = user_factory(org_id, "triage")
        study = study_factory(org_id)
        session.add_all([reviewer, study])
        await session.flush()
        _, workflow = services(session, authorization)

        outcome = await workflow.classify_from_queue(org_id, study.id, "AOI", reviewer)

        assert outcome.study.workflow_stage == WorkflowStage.ASSESSMENT_AOI
        assert outcome.study.assigned_to == reviewer.id
        assert outcome.study.last_queue_stage == WorkflowStage.TRIAGE_QUEUE_ICSR

    async def test_classified_study_can_be_resumed_and_released(
        self, session: AsyncSession, org_id, study_factory, user_factory, authorization,
    ):
        reviewer = user_factory(org_id, "triage")
        study = study_factory(org_id)
        session.add_all([reviewer, study])
        await session.flush()
        allocator, workflow = services(session, authorization)

        outcome = await workflow.classify_from_queue(org_id, study.id, "ICSR", reviewer)
        batch_id = outcome.study.batch_id
        assert batch_id is not None

        resumed = await allocator.allocate(org_id, WorkflowTrack.ICSR, reviewer)
        assert resumed.resumed is True
        assert resumed.batch_id == batch_id

        released = await allocator.release(org_id, reviewer, batch_id=batch_id)
        assert [s.id for s in released] == [study.id]

    async def test_classify_requires_queue_track_permission(
        self, session: AsyncSession, org_id, study_factory, user_factory, authorization,
    ):
        viewer = user_factory(org_id, "sponsor_auditor")
        study = study_factory(org_id, "No Case", WorkflowTrack.NO_CASE, WorkflowStage.TRIAGE_QUEUE_NO_CASE)
        session.add_all([viewer, study])
        await session.flush()
        _, workflow = services(session, authorization)

        with pytest.raises(PermissionDeniedError):
            await workflow.classify_from_queue(org_id, study.id, "ICSR", viewer)

    async def test_invalid_classification(
        self, session: AsyncSession, org_id, study_factory, user_factory, authorization,
    ):
        reviewer = user_factory(org_id, "triage")
        study = study_factory(org_id)
        session.add_all([reviewer, study])
        await session.flush()
        _, workflow = services(session, authorization)

        with pytest.raises(InvalidTransitionError):
            await workflow.classify_from_queue(org_id, study.id, "Unclear", reviewer)

    async def test_advance_through_processing(
        self, session: AsyncSession, org_id, study_factory, user_factory, authorization,
    ):
        user = user_factory(org_id, "data_entry")
        study = study_factory(
            org_id, stage=WorkflowStage.DATA_ENTRY, status="Data Entry", sub_status="processing",
        )
        session.add_all([user, study])
        await session.flush()
        _, workflow = services(session, authorization)

        # Outcomes share one session-tracked row
        stages = []
        for required in (True, False, False):
            outcome = await workflow.advance(org_id, study.id, user, medical_review_required=required)
            stages.append((outcome.study.workflow_stage, outcome.result.decision))

        assert stages == [
            (WorkflowStage.MEDICAL_REVIEW, "MEDICAL_REVIEW"),
            (WorkflowStage.REPORTING, "REPORTING"),
            (WorkflowStage.COMPLETED, "COMPLETED"),
        ]
        with pytest.raises(InvalidTransitionError):
            await workflow.advance(org_id, study.id, user)
