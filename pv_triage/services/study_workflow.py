"""
Study workflow service: persists state machine transitions.

Each transition is computed by ``workflow_engine`` and written as a single
conditional UPDATE guarded on the stage (and holder) the computation was
based on. A guard miss means another request moved the study first.
"""

from dataclasses import dataclass
from typing import Any
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import AuditAction, Study, WorkflowTrack
from ..models.base import utcnow
from .audit import AuditService
from .allocator import new_batch_id
from .authorization import AuthorizationEngine
from .workflow_engine import (
    ConcurrencyError,
    InvalidTransitionError,
    NotAssignedError,
    StudyNotFoundError,
    TransitionResult,
    advance_stage,
    is_assessment_stage,
    is_queue_stage,
    parse_stage,
    process_assessment,
    process_queue_classification,
    track_for_stage,
)

logger = logging.getLogger(__name__)

# Permission required to work a track's queue and assessment desk
TRACK_PERMISSIONS: dict[WorkflowTrack, tuple[str, str]] = {
    WorkflowTrack.ICSR: ("triage", "write"),
    WorkflowTrack.AOI: ("QA", "write"),
    WorkflowTrack.NO_CASE: ("QC", "write"),
}


@dataclass
class TransitionOutcome:
    study: Study
    result: TransitionResult


class StudyWorkflowService:
    """Applies decisions, queue classifications and downstream progression."""

    def __init__(
        self,
        session: AsyncSession,
        authorization: AuthorizationEngine | None = None,
        audit: AuditService | None = None,
    ):
        self._session = session
        self._authorization = authorization or AuthorizationEngine()
        self._audit = audit

    async def get_study(self, organization_id: str, study_id: str) -> Study:
        result = await self._session.execute(
            select(Study).where(Study.organization_id == organization_id, Study.id == study_id)
        )
        study = result.scalar_one_or_none()
        if study is None:
            raise StudyNotFoundError(f"Study {study_id} not found")
        return study

    # =========================================================================
    # ASSESSMENT DECISIONS
    # =========================================================================

    async def apply_decision(
        self,
        organization_id: str,
        study_id: str,
        decision: str,
        actor: Any,
    ) -> TransitionOutcome:
        """
        Apply a reviewer's decision to a study on an assessment desk.

        The reviewer must hold the study (admins may act on any holder's
        study) and have the track's permission. An unrecognized decision is
        rejected before anything is written.
        """
        study = await self.get_study(organization_id, study_id)
        stage = parse_stage(study.workflow_stage)
        if not is_assessment_stage(stage):
            raise InvalidTransitionError(
                f"Study {study_id} is not under assessment (stage {stage})"
            )

        self._require_track_permission(actor, track_for_stage(stage))
        if study.assigned_to != str(actor.id) and not self._authorization.is_admin(actor):
            raise NotAssignedError(f"Study {study_id} is not assigned to {actor.id}")

        result = process_assessment(study, decision)
        if not result.recognized:
            raise InvalidTransitionError(f"Unknown decision {decision!r} for study {study_id}")

        study = await self._write(organization_id, study, result, actor, AuditAction.DECIDE,
                                  f"Decision '{result.decision}' on study {study_id}",
                                  holder_guard=True)
        return TransitionOutcome(study=study, result=result)

    # =========================================================================
    # QUEUE CLASSIFICATION
    # =========================================================================

    async def classify_from_queue(
        self,
        organization_id: str,
        study_id: str,
        classification: str,
        actor: Any,
    ) -> TransitionOutcome:
        """Classify an unheld study sitting in a triage queue."""
        study = await self.get_study(organization_id, study_id)
        stage = parse_stage(study.workflow_stage)
        if not is_queue_stage(stage):
            raise InvalidTransitionError(
                f"Study {study_id} is not in a triage queue (stage {stage})"
            )

        self._require_track_permission(actor, track_for_stage(stage))
        if study.assigned_to and study.assigned_to != str(actor.id):
            raise NotAssignedError(f"Study {study_id} is held by another reviewer")

        result = process_queue_classification(study, classification, str(actor.id), utcnow())
        if not result.recognized:
            raise InvalidTransitionError(
                f"Classification {classification!r} is not valid from stage {stage}"
            )
        if result.updates.get("assigned_to"):
            # A held study always carries a batch id
            result.updates["batch_id"] = new_batch_id()

        study = await self._write(organization_id, study, result, actor, AuditAction.CLASSIFY,
                                  f"Classified study {study_id} as {result.decision}",
                                  holder_guard=True)
        return TransitionOutcome(study=study, result=result)

    # =========================================================================
    # DOWNSTREAM PROGRESSION
    # =========================================================================

    async def advance(
        self,
        organization_id: str,
        study_id: str,
        actor: Any,
        medical_review_required: bool = False,
    ) -> TransitionOutcome:
        study = await self.get_study(organization_id, study_id)
        self._authorization.require_permission(actor, "studies", "write")

        result = advance_stage(study, medical_review_required)
        study = await self._write(organization_id, study, result, actor, AuditAction.ADVANCE,
                                  f"Advanced study {study_id} to {result.decision}")
        return TransitionOutcome(study=study, result=result)

    # =========================================================================
    # INTERNAL
    # =========================================================================

    def _require_track_permission(self, actor: Any, track: WorkflowTrack | None) -> None:
        resource, action = TRACK_PERMISSIONS.get(track, ("studies", "write"))
        self._authorization.require_permission(actor, resource, action)

    async def _write(
        self,
        organization_id: str,
        study: Study,
        result: TransitionResult,
        actor: Any,
        action: AuditAction,
        details: str,
        holder_guard: bool = False,
    ) -> Study:
        """Apply ``result.updates`` atomically, guarded on the observed state."""
        before = study.workflow_fields()

        statement = update(Study).where(
            Study.id == study.id,
            Study.organization_id == organization_id,
            Study.workflow_stage == study.workflow_stage,
        )
        if holder_guard:
            statement = statement.where(
                Study.assigned_to.is_(None) if study.assigned_to is None
                else Study.assigned_to == study.assigned_to
            )

        outcome = await self._session.execute(
            statement.values(**result.updates, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount != 1:
            raise ConcurrencyError(f"Study {study.id} was modified by another request")

        logger.info(f"Study {study.id}: {before['workflow_stage']} -> {result.updates.get('workflow_stage')}")

        if self._audit is not None:
            await self._audit.record_change(
                actor=actor,
                organization_id=organization_id,
                action=action,
                resource="study",
                resource_id=study.id,
                before=before,
                after={**before, **result.updates},
                metadata={"note": details, "decision": result.decision},
            )

        refreshed = await self._session.execute(
            select(Study)
            .where(Study.id == study.id)
            .execution_options(populate_existing=True)
        )
        return refreshed.scalar_one()
