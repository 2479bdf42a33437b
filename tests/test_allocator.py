"""
Tests for the Batch Allocator.

These tests verify:
1. Eligibility: label, unheld, waiting in triage
2. Deterministic order and the batch size cap
3. One batch id and one timestamp per call
4. Compare-and-set claims: a lost race yields a smaller batch, never a double hold
5. Release is idempotent and returns studies to their queue
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from pv_triage.models import AuditLog, Study, WorkflowStage, WorkflowTrack
from pv_triage.services import AuditService
from pv_triage.services.allocator import (
    AllocationService,
    WorkflowConfig,
    allocate_batch,
    plan_release,
    release_updates,
)
from pv_triage.services.workflow_engine import NotAssignedError, StudyNotFoundError

NOW = datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc)


def candidate(study_id, classification="Probable ICSR", created_at=None, **extra) -> dict:
    study = {
        "id": study_id,
        "icsr_classification": classification,
        "assigned_to": None,
        "status": "Under Triage Review",
        "workflow_stage": WorkflowStage.TRIAGE_QUEUE_ICSR,
        "created_at": created_at,
    }
    study.update(extra)
    return study


# =============================================================================
# TEST: PURE SELECTION
# =============================================================================


class TestAllocateBatch:
    """Tests for selecting and stamping a batch from a snapshot."""

    def test_filters_by_label_and_holder(self):
        candidates = [
            candidate("a", "Probable ICSR"),
            candidate("b", "Probable ICSR/AOI"),
            candidate("c", "Article requires manual review"),
            candidate("d", "Probable AOI"),
            candidate("e", "Probable ICSR", assigned_to="someone"),
            candidate("f", "No Case"),
        ]

        batch = allocate_batch(candidates, WorkflowTrack.ICSR, "rev", WorkflowConfig(), now=NOW)

        assert sorted(s["id"] for s in batch.studies) == ["a", "b", "c"]

    def test_requires_triage_status_or_queue_stage(self):
        candidates = [
            candidate("queued", "Probable AOI", status="Something", workflow_stage=WorkflowStage.TRIAGE_QUEUE_AOI),
            candidate("status_only", "Probable AOI", workflow_stage=None),
            candidate("neither", "Probable AOI", status="Reporting", workflow_stage=WorkflowStage.REPORTING),
        ]

        batch = allocate_batch(candidates, WorkflowTrack.AOI, "rev", WorkflowConfig(), now=NOW)

        assert sorted(s["id"] for s in batch.studies) == ["queued", "status_only"]

    def test_caps_at_batch_size_oldest_first(self):
        candidates = [
            candidate(f"s{i}", created_at=datetime(2024, 1, 1 + i, tzinfo=timezone.utc))
            for i in reversed(range(8))
        ]

        batch = allocate_batch(candidates, WorkflowTrack.ICSR, "rev", WorkflowConfig(batch_size_icsr=3), now=NOW)

        assert [s["id"] for s in batch.studies] == ["s0", "s1", "s2"]

    def test_ties_broken_by_id_and_missing_dates_last(self):
        same = datetime(2024, 1, 1, tzinfo=timezone.utc)
        candidates = [
            candidate("zeta", created_at=None),
            candidate("beta", created_at=same),
            candidate("alpha", created_at=same),
        ]

        batch = allocate_batch(candidates, WorkflowTrack.ICSR, "rev", WorkflowConfig(), now=NOW)

        assert [s["id"] for s in batch.studies] == ["alpha", "beta", "zeta"]

    def test_stamps_share_batch_id_and_timestamp(self):
        candidates = [candidate(f"s{i}") for i in range(4)]

        batch = allocate_batch(candidates, WorkflowTrack.ICSR, "rev", WorkflowConfig(), now=NOW)
        stamped = batch.stamped()

        assert len(stamped) == 4
        assert {s["batch_id"] for s in stamped} == {batch.batch_id}
        assert {s["allocated_at"] for s in stamped} == {NOW}
        for study in stamped:
            assert study["assigned_to"] == "rev"
            assert study["workflow_stage"] == WorkflowStage.ASSESSMENT_ICSR
            assert study["status"] == "Under Assessment"
            assert study["last_queue_stage"] == WorkflowStage.TRIAGE_QUEUE_ICSR

    def test_empty_supply_is_empty_batch(self):
        batch = allocate_batch([], WorkflowTrack.NO_CASE, "rev", WorkflowConfig(), now=NOW)
        assert len(batch) == 0
        assert batch.batch_id

    def test_sampling_rate_does_not_drop_items(self):
        candidates = [candidate(f"s{i}", "No Case", workflow_stage=WorkflowStage.TRIAGE_QUEUE_NO_CASE) for i in range(5)]
        config = WorkflowConfig(sampling_rate_no_case=0)

        batch = allocate_batch(candidates, WorkflowTrack.NO_CASE, "rev", config, now=NOW)

        assert len(batch) == 5


class TestReleaseUpdates:
    def test_assessment_study_returns_to_breadcrumb_queue(self):
        updates = release_updates({
            "workflow_stage": WorkflowStage.ASSESSMENT_ICSR,
            "last_queue_stage": WorkflowStage.TRIAGE_QUEUE_AOI,
            "assigned_to": "rev",
        })
        assert updates["workflow_stage"] == WorkflowStage.TRIAGE_QUEUE_AOI
        assert updates["assigned_to"] is None
        assert updates["status"] == "Under Triage Review"

    def test_missing_breadcrumb_uses_track_queue(self):
        updates = release_updates({"workflow_stage": WorkflowStage.ASSESSMENT_NO_CASE, "assigned_to": "rev"})
        assert updates["workflow_stage"] == WorkflowStage.TRIAGE_QUEUE_NO_CASE

    def test_finalized_study_keeps_stage(self):
        updates = release_updates({"workflow_stage": WorkflowStage.REPORTING, "batch_id": "b1"})
        assert updates == {"assigned_to": None, "allocated_at": None, "batch_id": None}

    def test_nothing_held_is_noop(self):
        assert release_updates({"workflow_stage": WorkflowStage.TRIAGE_QUEUE_ICSR}) is None

    def test_plan_release_is_idempotent(self):
        studies = [
            {"id": "a", "batch_id": "b1", "assigned_to": "rev", "workflow_stage": WorkflowStage.ASSESSMENT_AOI},
            {"id": "b", "batch_id": "b2", "assigned_to": "rev", "workflow_stage": WorkflowStage.ASSESSMENT_AOI},
        ]

        plan = plan_release(studies, batch_id="b1")
        assert [s["id"] for s, _ in plan] == ["a"]

        released = [{**study, **updates} for study, updates in plan]
        assert plan_release(released, batch_id="b1") == []

    def test_plan_release_requires_a_selector(self):
        assert plan_release([{"id": "a", "assigned_to": "rev"}]) == []


# =============================================================================
# TEST: PERSISTED ALLOCATION
# =============================================================================


class RacingAllocationService(AllocationService):
    """Lets a rival reviewer claim the oldest candidate right after the snapshot."""

    rival_id = "rival_reviewer"

    async def _candidates(self, organization_id, track):
        candidates = await super()._candidates(organization_id, track)
        if candidates:
            await self._claim(organization_id, candidates[0], track, {"assigned_to": self.rival_id})
        return candidates


class FinishingAllocationService(AllocationService):
    """Lets another request finish the oldest candidate right after the snapshot."""

    async def _candidates(self, organization_id, track):
        candidates = await super()._candidates(organization_id, track)
        if candidates:
            await self._session.execute(
                update(Study)
                .where(Study.id == candidates[0].id)
                .values(workflow_stage=WorkflowStage.COMPLETED, status="Completed", sub_status="archived")
                .execution_options(synchronize_session=False)
            )
        return candidates


class TestAllocationService:
    """Tests for allocation against the database."""

    async def test_allocate_claims_oldest_studies(
        self,
        session: AsyncSession,
        org_id: str,
        study_factory,
        user_factory,
    ):
        reviewer = user_factory(org_id, "triage")
        session.add(reviewer)
        for minute in (30, 10, 20, 40):
            session.add(study_factory(org_id, minutes=minute))
        session.add(study_factory("other_org", minutes=0))
        await session.flush()

        service = AllocationService(session, WorkflowConfig(batch_size_icsr=3))
        result = await service.allocate(org_id, WorkflowTrack.ICSR, reviewer)

        assert [s.title for s in result.studies] == ["Case report 10", "Case report 20", "Case report 30"]
        assert {s.batch_id for s in result.studies} == {result.batch_id}
        assert all(s.assigned_to == reviewer.id for s in result.studies)
        assert all(s.workflow_stage == WorkflowStage.ASSESSMENT_ICSR for s in result.studies)
        assert all(s.organization_id == org_id for s in result.studies)

    async def test_resume_returns_held_studies(
        self,
        session: AsyncSession,
        org_id: str,
        study_factory,
        user_factory,
    ):
        reviewer = user_factory(org_id, "triage")
        session.add(reviewer)
        for minute in range(4):
            session.add(study_factory(org_id, minutes=minute))
        await session.flush()

        service = AllocationService(session, WorkflowConfig(batch_size_icsr=2))
        first = await service.allocate(org_id, WorkflowTrack.ICSR, reviewer)
        second = await service.allocate(org_id, WorkflowTrack.ICSR, reviewer)

        assert second.resumed is True
        assert {s.id for s in second.studies} == {s.id for s in first.studies}

    async def test_lost_race_yields_smaller_batch(
        self,
        session: AsyncSession,
        org_id: str,
        study_factory,
        user_factory,
    ):
        reviewer = user_factory(org_id, "triage")
        session.add(reviewer)
        for minute in range(3):
            session.add(study_factory(org_id, minutes=minute))
        await session.flush()

        service = RacingAllocationService(session, WorkflowConfig(batch_size_icsr=3))
        result = await service.allocate(org_id, WorkflowTrack.ICSR, reviewer)

        assert len(result.studies) == 2
        assert result.lost_to_concurrency == 1

        rows = (await session.execute(select(Study).execution_options(populate_existing=True))).scalars().all()
        holders = [s.assigned_to for s in rows]
        assert holders.count(RacingAllocationService.rival_id) == 1
        assert holders.count(reviewer.id) == 2

    async def test_claim_never_reopens_a_finished_study(
        self,
        session: AsyncSession,
        org_id: str,
        study_factory,
        user_factory,
    ):
        reviewer = user_factory(org_id, "QC")
        study = study_factory(org_id, "No Case", WorkflowTrack.NO_CASE, WorkflowStage.TRIAGE_QUEUE_NO_CASE)
        session.add_all([reviewer, study])
        await session.flush()

        service = FinishingAllocationService(session, WorkflowConfig())
        result = await service.allocate(org_id, WorkflowTrack.NO_CASE, reviewer)

        assert result.studies == []
        assert result.lost_to_concurrency == 1

        stored = (
            await session.execute(
                select(Study).where(Study.id == study.id).execution_options(populate_existing=True)
            )
        ).scalar_one()
        assert stored.workflow_stage == WorkflowStage.COMPLETED
        assert stored.assigned_to is None
        assert stored.batch_id is None

    async def test_two_reviewers_never_share_studies(
        self,
        session: AsyncSession,
        org_id: str,
        study_factory,
        user_factory,
    ):
        first, second = user_factory(org_id, "QA"), user_factory(org_id, "QA")
        session.add_all([first, second])
        for minute in range(5):
            session.add(study_factory(org_id, "Probable AOI", WorkflowTrack.AOI,
                                      WorkflowStage.TRIAGE_QUEUE_AOI, minutes=minute))
        await session.flush()

        service = AllocationService(session, WorkflowConfig(batch_size_aoi=3))
        a = await service.allocate(org_id, WorkflowTrack.AOI, first)
        b = await service.allocate(org_id, WorkflowTrack.AOI, second)

        assert len(a.studies) == 3
        assert len(b.studies) == 2
        assert not {s.id for s in a.studies} & {s.id for s in b.studies}
        assert a.batch_id != b.batch_id

    async def test_release_batch_is_idempotent_and_audited(
        self,
        session: AsyncSession,
        org_id: str,
        study_factory,
        user_factory,
    ):
        reviewer = user_factory(org_id, "triage")
        session.add(reviewer)
        for minute in range(2):
            session.add(study_factory(org_id, minutes=minute))
        await session.flush()

        service = AllocationService(session, WorkflowConfig(), audit=AuditService(session))
        batch = await service.allocate(org_id, WorkflowTrack.ICSR, reviewer)

        released = await service.release(org_id, reviewer, batch_id=batch.batch_id)
        again = await service.release(org_id, reviewer, batch_id=batch.batch_id)

        assert len(released) == 2
        assert again == []
        for study in released:
            assert study.assigned_to is None
            assert study.batch_id is None
            assert study.workflow_stage == WorkflowStage.TRIAGE_QUEUE_ICSR

        actions = (await session.execute(select(AuditLog.action))).scalars().all()
        assert sorted(actions) == ["allocate", "allocate", "release", "release"]

    async def test_release_case_only_by_holder(
        self,
        session: AsyncSession,
        org_id: str,
        study_factory,
        user_factory,
    ):
        holder, other = user_factory(org_id, "triage"), user_factory(org_id, "triage")
        session.add_all([holder, other])
        session.add(study_factory(org_id))
        await session.flush()

        service = AllocationService(session, WorkflowConfig())
        batch = await service.allocate(org_id, WorkflowTrack.ICSR, holder)
        study_id = batch.studies[0].id

        with pytest.raises(NotAssignedError):
            await service.release_case(org_id, study_id, other)
        with pytest.raises(StudyNotFoundError):
            await service.release_case(org_id, "missing", holder)

        study = await service.release_case(org_id, study_id, holder)
        assert study.assigned_to is None
        assert study.workflow_stage == WorkflowStage.TRIAGE_QUEUE_ICSR

    async def test_track_statistics(
        self,
        session: AsyncSession,
        org_id: str,
        study_factory,
        user_factory,
    ):
        reviewer = user_factory(org_id, "triage")
        session.add(reviewer)
        for minute in range(3):
            session.add(study_factory(org_id, minutes=minute))
        session.add(study_factory(org_id, "No Case", WorkflowTrack.NO_CASE, WorkflowStage.TRIAGE_QUEUE_NO_CASE))
        await session.flush()

        service = AllocationService(session, WorkflowConfig(batch_size_icsr=1))
        await service.allocate(org_id, WorkflowTrack.ICSR, reviewer)
        stats = await service.track_statistics(org_id)

        assert stats["ICSR"] == {"queued": 2, "in_assessment": 1}
        assert stats["NO_CASE"] == {"queued": 1, "in_assessment": 0}
        assert stats["AOI"] == {"queued": 0, "in_assessment": 0}
