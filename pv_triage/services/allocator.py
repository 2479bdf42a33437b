"""
Batch Allocator: exclusive hand-out of queued studies to a reviewer.

Selection (``allocate_batch``) is a pure function of a candidate snapshot.
``AllocationService`` persists the plan, claiming each study with a single
conditional UPDATE that re-checks the eligibility filter and the stage seen in
the snapshot, so two concurrent requests can never both hold the same study
and a study finalized in between is never reopened. The loser of a race gets
a smaller batch.

Sampling rates in ``WorkflowConfig`` decide which population enters the AOI
and No-Case queues (secondary QC); the allocator never drops eligible items.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Sequence
from uuid import uuid4
import logging

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..models import AuditAction, Study, WorkflowStage, WorkflowTrack
from ..models.base import utcnow
from .audit import AuditService
from .workflow_engine import (
    ASSESSMENT_STAGES,
    QUEUE_STAGES,
    RELEASE_FIELDS,
    STATUS_UNDER_ASSESSMENT,
    STATUS_UNDER_TRIAGE,
    TRACK_LABELS,
    NotAssignedError,
    StudyNotFoundError,
    default_queue,
    is_assessment_stage,
    is_queue_stage,
    parse_stage,
    read_field,
    track_for_stage,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class WorkflowConfig:
    """Per-organization allocation policy."""

    batch_size_icsr: int = 10
    batch_size_aoi: int = 10
    batch_size_no_case: int = 10
    sampling_rate_aoi: int = 10  # 0-100
    sampling_rate_no_case: int = 10  # 0-100

    @classmethod
    def from_settings(cls) -> "WorkflowConfig":
        settings = get_settings()
        return cls(
            batch_size_icsr=settings.batch_size_icsr,
            batch_size_aoi=settings.batch_size_aoi,
            batch_size_no_case=settings.batch_size_no_case,
            sampling_rate_aoi=settings.sampling_rate_aoi,
            sampling_rate_no_case=settings.sampling_rate_no_case,
        )

    def batch_size_for(self, track: WorkflowTrack) -> int:
        return {
            WorkflowTrack.ICSR: self.batch_size_icsr,
            WorkflowTrack.AOI: self.batch_size_aoi,
            WorkflowTrack.NO_CASE: self.batch_size_no_case,
        }[track]


def new_batch_id() -> str:
    return f"batch_{uuid4().hex}"


# =============================================================================
# PURE SELECTION
# =============================================================================


@dataclass
class BatchAllocation:
    """A planned batch: every item shares one batch id and one timestamp."""

    batch_id: str
    track: WorkflowTrack
    reviewer_id: str
    allocated_at: datetime
    items: list[tuple[Any, dict]] = field(default_factory=list)

    @property
    def studies(self) -> list[Any]:
        return [study for study, _ in self.items]

    def stamped(self) -> list[dict]:
        """Mapping candidates with their updates applied."""
        return [{**dict(study), **updates} for study, updates in self.items]

    def __len__(self) -> int:
        return len(self.items)


def is_unassigned(study: Any) -> bool:
    return not read_field(study, "assigned_to")


def is_eligible(study: Any, track: WorkflowTrack) -> bool:
    """Belongs to the track by label, unheld, and waiting in triage."""
    return (
        read_field(study, "icsr_classification") in TRACK_LABELS[track]
        and is_unassigned(study)
        and (
            read_field(study, "status") == STATUS_UNDER_TRIAGE
            or parse_stage(read_field(study, "workflow_stage")) == QUEUE_STAGES[track]
        )
    )


def selection_key(study: Any) -> tuple:
    """Oldest first; studies without ``created_at`` last; ties broken by id."""
    created = read_field(study, "created_at")
    return (created is None, created or 0, str(read_field(study, "id") or ""))


def allocation_updates(
    study: Any,
    track: WorkflowTrack,
    reviewer_id: str,
    batch_id: str,
    now: datetime,
) -> dict[str, Any]:
    current = parse_stage(read_field(study, "workflow_stage"))
    return {
        "assigned_to": reviewer_id,
        "workflow_stage": ASSESSMENT_STAGES[track],
        "status": STATUS_UNDER_ASSESSMENT,
        "sub_status": "assessment",
        "allocated_at": now,
        "batch_id": batch_id,
        # Breadcrumb for returning the study on rejection or release
        "last_queue_stage": current if is_queue_stage(current) else QUEUE_STAGES[track],
    }


def allocate_batch(
    candidates: Iterable[Any],
    track: WorkflowTrack,
    reviewer_id: str,
    config: WorkflowConfig,
    now: datetime | None = None,
    batch_id: str | None = None,
) -> BatchAllocation:
    """Select up to the track's batch size of eligible studies and stamp them."""
    now = now or utcnow()
    batch = BatchAllocation(
        batch_id=batch_id or new_batch_id(),
        track=track,
        reviewer_id=reviewer_id,
        allocated_at=now,
    )

    batch_size = max(config.batch_size_for(track), 0)
    eligible = sorted((s for s in candidates if is_eligible(s, track)), key=selection_key)

    for study in eligible[:batch_size]:
        batch.items.append(
            (study, allocation_updates(study, track, reviewer_id, batch.batch_id, now))
        )
    return batch


def release_updates(study: Any) -> dict[str, Any] | None:
    """Update returning a held study to its queue; ``None`` when nothing is held."""
    stage = parse_stage(read_field(study, "workflow_stage"))

    if is_assessment_stage(stage):
        queue = parse_stage(read_field(study, "last_queue_stage"))
        if not is_queue_stage(queue):
            queue = default_queue(track_for_stage(stage))
        return {
            **RELEASE_FIELDS,
            "workflow_stage": queue,
            "status": STATUS_UNDER_TRIAGE,
            "sub_status": "triage",
        }

    if any(read_field(study, name) is not None for name in RELEASE_FIELDS):
        # Finalized studies keep their stage; only the lock is dropped
        return dict(RELEASE_FIELDS)
    return None


def plan_release(
    studies: Iterable[Any],
    batch_id: str | None = None,
    reviewer_id: str | None = None,
) -> list[tuple[Any, dict]]:
    """Release plan for a batch or for everything a reviewer holds."""
    if batch_id is None and reviewer_id is None:
        return []

    plan = []
    for study in studies:
        if batch_id is not None and read_field(study, "batch_id") != batch_id:
            continue
        if reviewer_id is not None and read_field(study, "assigned_to") != reviewer_id:
            continue
        updates = release_updates(study)
        if updates:
            plan.append((study, updates))
    return plan


# =============================================================================
# PERSISTED ALLOCATION
# =============================================================================


@dataclass
class AllocationResult:
    batch_id: str | None
    track: WorkflowTrack
    studies: list[Study]
    requested: int = 0
    lost_to_concurrency: int = 0
    resumed: bool = False


class AllocationService:
    """Persists allocation and release plans with compare-and-set writes."""

    def __init__(
        self,
        session: AsyncSession,
        config: WorkflowConfig | None = None,
        audit: AuditService | None = None,
    ):
        self._session = session
        self._config = config or WorkflowConfig.from_settings()
        self._audit = audit

    # =========================================================================
    # ALLOCATE
    # =========================================================================

    async def allocate(
        self,
        organization_id: str,
        track: WorkflowTrack,
        reviewer: Any,
        resume: bool = True,
    ) -> AllocationResult:
        """
        Allocate a batch of the track's queued studies to ``reviewer``.

        A reviewer who still holds studies on this track's desk gets those
        back instead of a new batch. Zero supply yields an empty result.
        """
        reviewer_id = str(reviewer.id)

        if resume:
            held = await self._held_by(organization_id, reviewer_id, ASSESSMENT_STAGES[track])
            if held:
                logger.info(
                    f"Resuming {len(held)} {track.value} studies for reviewer {reviewer_id}"
                )
                return AllocationResult(
                    batch_id=next((s.batch_id for s in held if s.batch_id), None),
                    track=track,
                    studies=held,
                    requested=len(held),
                    resumed=True,
                )

        candidates = await self._candidates(organization_id, track)
        plan = allocate_batch(candidates, track, reviewer_id, self._config)

        claimed_ids: list[str] = []
        for study, updates in plan.items:
            before = study.workflow_fields()
            if await self._claim(organization_id, study, track, updates):
                claimed_ids.append(study.id)
                await self._record(reviewer, organization_id, AuditAction.ALLOCATE, study.id,
                                   before, {**before, **updates},
                                   f"Allocated study {study.id} to {reviewer_id} in batch {plan.batch_id}")
            else:
                logger.info(f"Study {study.id} no longer available; claimed by another reviewer")

        studies = await self._fetch(organization_id, claimed_ids)
        if not studies:
            logger.info(f"No {track.value} studies available for reviewer {reviewer_id}")

        return AllocationResult(
            batch_id=plan.batch_id if studies else None,
            track=track,
            studies=studies,
            requested=len(plan),
            lost_to_concurrency=len(plan) - len(studies),
        )

    # =========================================================================
    # RELEASE
    # =========================================================================

    async def release(
        self,
        organization_id: str,
        actor: Any,
        batch_id: str | None = None,
        reviewer_id: str | None = None,
    ) -> list[Study]:
        """Return every still-held study of a batch (or of a reviewer) to its queue.

        Idempotent: a released or empty batch is a no-op.
        """
        if batch_id is None and reviewer_id is None:
            return []

        query = select(Study).where(Study.organization_id == organization_id)
        if batch_id is not None:
            query = query.where(Study.batch_id == batch_id)
        if reviewer_id is not None:
            query = query.where(Study.assigned_to == reviewer_id)

        result = await self._session.execute(query.order_by(Study.created_at, Study.id))
        studies = result.scalars().all()

        released_ids = []
        for study, updates in plan_release(studies, batch_id=batch_id, reviewer_id=reviewer_id):
            before = study.workflow_fields()
            if await self._apply_if_held(organization_id, study.id, study.assigned_to, updates):
                released_ids.append(study.id)
                await self._record(actor, organization_id, AuditAction.RELEASE, study.id,
                                   before, {**before, **updates},
                                   f"Released study {study.id}")

        return await self._fetch(organization_id, released_ids)

    async def release_case(
        self,
        organization_id: str,
        study_id: str,
        reviewer: Any,
    ) -> Study:
        """Release one study; only its current holder may do so."""
        study = await self._get_study_or_raise(organization_id, study_id)
        if study.assigned_to != str(reviewer.id):
            raise NotAssignedError(f"Study {study_id} is not assigned to {reviewer.id}")

        updates = release_updates(study)
        before = study.workflow_fields()
        if updates and await self._apply_if_held(organization_id, study.id, study.assigned_to, updates):
            await self._record(reviewer, organization_id, AuditAction.RELEASE, study.id,
                               before, {**before, **updates},
                               f"Released the case for study {study.id}")

        return (await self._fetch(organization_id, [study.id]))[0]

    # =========================================================================
    # STATISTICS
    # =========================================================================

    async def track_statistics(self, organization_id: str) -> dict[str, dict[str, int]]:
        """Queued (unheld) and in-assessment counts per track."""
        result = await self._session.execute(
            select(Study.workflow_stage, func.count())
            .where(Study.organization_id == organization_id)
            .group_by(Study.workflow_stage)
        )
        counts = {stage: count for stage, count in result.all()}

        unheld = await self._session.execute(
            select(Study.workflow_stage, func.count())
            .where(
                Study.organization_id == organization_id,
                Study.assigned_to.is_(None),
                Study.workflow_stage.in_(list(QUEUE_STAGES.values())),
            )
            .group_by(Study.workflow_stage)
        )
        queued = {stage: count for stage, count in unheld.all()}

        return {
            track.value: {
                "queued": queued.get(QUEUE_STAGES[track], 0),
                "in_assessment": counts.get(ASSESSMENT_STAGES[track], 0),
            }
            for track in WorkflowTrack
        }

    # =========================================================================
    # INTERNAL
    # =========================================================================

    @staticmethod
    def _eligible_clause(track: WorkflowTrack):
        """SQL form of ``is_eligible``."""
        labels = [label.value for label in TRACK_LABELS[track]]
        return and_(
            Study.assigned_to.is_(None),
            Study.icsr_classification.in_(labels),
            or_(
                Study.status == STATUS_UNDER_TRIAGE,
                Study.workflow_stage == QUEUE_STAGES[track],
            ),
        )

    async def _candidates(self, organization_id: str, track: WorkflowTrack) -> Sequence[Study]:
        result = await self._session.execute(
            select(Study)
            .where(Study.organization_id == organization_id, self._eligible_clause(track))
            .order_by(Study.created_at, Study.id)
        )
        return result.scalars().all()

    async def _held_by(
        self,
        organization_id: str,
        reviewer_id: str,
        stage: WorkflowStage,
    ) -> list[Study]:
        result = await self._session.execute(
            select(Study)
            .where(
                Study.organization_id == organization_id,
                Study.assigned_to == reviewer_id,
                Study.workflow_stage == stage,
            )
            .order_by(Study.created_at, Study.id)
        )
        return list(result.scalars().all())

    async def _claim(
        self,
        organization_id: str,
        study: Study,
        track: WorkflowTrack,
        updates: dict,
    ) -> bool:
        """Compare-and-set: write only if the study is still eligible and unmoved."""
        observed_stage = (
            Study.workflow_stage.is_(None) if study.workflow_stage is None
            else Study.workflow_stage == study.workflow_stage
        )
        result = await self._session.execute(
            update(Study)
            .where(
                Study.id == study.id,
                Study.organization_id == organization_id,
                self._eligible_clause(track),
                observed_stage,
            )
            .values(**updates, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _apply_if_held(
        self,
        organization_id: str,
        study_id: str,
        holder: str | None,
        updates: dict,
    ) -> bool:
        holder_clause = Study.assigned_to.is_(None) if holder is None else Study.assigned_to == holder
        result = await self._session.execute(
            update(Study)
            .where(
                Study.id == study_id,
                Study.organization_id == organization_id,
                holder_clause,
            )
            .values(**updates, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _fetch(self, organization_id: str, ids: list[str]) -> list[Study]:
        if not ids:
            return []
        result = await self._session.execute(
            select(Study)
            .where(Study.organization_id == organization_id, Study.id.in_(ids))
            .order_by(Study.created_at, Study.id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def _get_study_or_raise(self, organization_id: str, study_id: str) -> Study:
        result = await self._session.execute(
            select(Study).where(Study.organization_id == organization_id, Study.id == study_id)
        )
        study = result.scalar_one_or_none()
        if study is None:
            raise StudyNotFoundError(f"Study {study_id} not found")
        return study

    async def _record(self, actor, organization_id, action, study_id, before, after, details) -> None:
        if self._audit is None:
            return
        await self._audit.record_change(
            actor=actor,
            organization_id=organization_id,
            action=action,
            resource="study",
            resource_id=study_id,
            before=before,
            after=after,
            details=details,
        )
