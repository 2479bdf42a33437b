"""
Workflow Engine: stages, tracks and the transitions between them.

The engine is storage-free. Every function reads a study (an ORM ``Study`` or
a plain mapping with the same snake_case keys) and returns a partial update as
a dict of field -> new value. Callers apply the whole dict in one write.

Stage graph:

    TRIAGE_QUEUE_<track> -> ASSESSMENT_<track> -> DATA_ENTRY | REPORTING | COMPLETED
                                               -> TRIAGE_QUEUE_<other track>
    DATA_ENTRY -> MEDICAL_REVIEW (ICSR, optional) -> REPORTING -> COMPLETED
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping
import logging

from ..models import Classification, WorkflowStage, WorkflowTrack

logger = logging.getLogger(__name__)


class WorkflowError(Exception):
    """Base exception for workflow operations."""
    pass


class InvalidTransitionError(WorkflowError):
    """The requested move is not legal from the study's current stage."""
    pass


class StudyNotFoundError(WorkflowError):
    """Study does not exist in the organization."""
    pass


class NotAssignedError(WorkflowError):
    """Study is not held by the acting reviewer."""
    pass


class ConcurrencyError(WorkflowError):
    """Concurrent modification detected; the write was not applied."""
    pass


# =============================================================================
# VOCABULARY
# =============================================================================

# Human-readable status mirrors of the stage
STATUS_UNDER_TRIAGE = "Under Triage Review"
STATUS_UNDER_ASSESSMENT = "Under Assessment"
STATUS_DATA_ENTRY = "Data Entry"
STATUS_MEDICAL_REVIEW = "Medical Review"
STATUS_REPORTING = "Reporting"
STATUS_COMPLETED = "Completed"


class Decision(str, Enum):
    """Assessment decisions a reviewer can submit."""

    CONFIRM_ICSR = "Confirm ICSR"
    CONFIRM_AOI = "Confirm AOI"
    CONFIRM_NO_CASE = "Confirm No Case"
    UPGRADE_TO_ICSR = "Upgrade to ICSR"
    DOWNGRADE_TO_AOI = "Downgrade to AOI"
    DOWNGRADE_TO_NO_CASE = "Downgrade to No Case"
    REJECT = "Reject"


# Labels that place a study in a track
TRACK_LABELS: dict[WorkflowTrack, tuple[Classification, ...]] = {
    WorkflowTrack.ICSR: (
        Classification.PROBABLE_ICSR,
        Classification.PROBABLE_ICSR_AOI,
        Classification.MANUAL_REVIEW,
    ),
    WorkflowTrack.AOI: (Classification.PROBABLE_AOI,),
    WorkflowTrack.NO_CASE: (Classification.NO_CASE,),
}

# Canonical label written when a reviewer settles a study in a track
TRACK_CANONICAL_LABEL: dict[WorkflowTrack, Classification] = {
    WorkflowTrack.ICSR: Classification.PROBABLE_ICSR,
    WorkflowTrack.AOI: Classification.PROBABLE_AOI,
    WorkflowTrack.NO_CASE: Classification.NO_CASE,
}

QUEUE_STAGES: dict[WorkflowTrack, WorkflowStage] = {
    WorkflowTrack.ICSR: WorkflowStage.TRIAGE_QUEUE_ICSR,
    WorkflowTrack.AOI: WorkflowStage.TRIAGE_QUEUE_AOI,
    WorkflowTrack.NO_CASE: WorkflowStage.TRIAGE_QUEUE_NO_CASE,
}

ASSESSMENT_STAGES: dict[WorkflowTrack, WorkflowStage] = {
    WorkflowTrack.ICSR: WorkflowStage.ASSESSMENT_ICSR,
    WorkflowTrack.AOI: WorkflowStage.ASSESSMENT_AOI,
    WorkflowTrack.NO_CASE: WorkflowStage.ASSESSMENT_NO_CASE,
}

FINAL_STAGES = frozenset({
    WorkflowStage.DATA_ENTRY,
    WorkflowStage.MEDICAL_REVIEW,
    WorkflowStage.REPORTING,
    WorkflowStage.COMPLETED,
})

# Fields cleared whenever a reviewer lets go of a study
RELEASE_FIELDS: dict[str, Any] = {
    "assigned_to": None,
    "allocated_at": None,
    "batch_id": None,
}


@dataclass(frozen=True)
class Target:
    stage: WorkflowStage
    status: str
    sub_status: str
    classification: Classification
    track: WorkflowTrack


DECISION_TABLE: dict[Decision, Target] = {
    Decision.CONFIRM_ICSR: Target(
        WorkflowStage.DATA_ENTRY, STATUS_DATA_ENTRY, "processing",
        Classification.PROBABLE_ICSR, WorkflowTrack.ICSR,
    ),
    Decision.CONFIRM_AOI: Target(
        WorkflowStage.REPORTING, STATUS_REPORTING, "archived",
        Classification.PROBABLE_AOI, WorkflowTrack.AOI,
    ),
    Decision.CONFIRM_NO_CASE: Target(
        WorkflowStage.COMPLETED, STATUS_COMPLETED, "archived",
        Classification.NO_CASE, WorkflowTrack.NO_CASE,
    ),
    Decision.UPGRADE_TO_ICSR: Target(
        WorkflowStage.TRIAGE_QUEUE_ICSR, STATUS_UNDER_TRIAGE, "triage",
        Classification.PROBABLE_ICSR, WorkflowTrack.ICSR,
    ),
    Decision.DOWNGRADE_TO_AOI: Target(
        WorkflowStage.TRIAGE_QUEUE_AOI, STATUS_UNDER_TRIAGE, "triage",
        Classification.PROBABLE_AOI, WorkflowTrack.AOI,
    ),
    Decision.DOWNGRADE_TO_NO_CASE: Target(
        WorkflowStage.TRIAGE_QUEUE_NO_CASE, STATUS_UNDER_TRIAGE, "triage",
        Classification.NO_CASE, WorkflowTrack.NO_CASE,
    ),
}


@dataclass
class TransitionResult:
    """Partial update produced by a transition."""

    updates: dict[str, Any] = field(default_factory=dict)
    recognized: bool = True
    decision: str | None = None


# =============================================================================
# HELPERS
# =============================================================================


def read_field(study: Any, name: str, default: Any = None) -> Any:
    if isinstance(study, Mapping):
        return study.get(name, default)
    return getattr(study, name, default)


def parse_track(value: Any) -> WorkflowTrack | None:
    """Accept enum members, enum values and the human labels ("No Case", "NoCase")."""
    if value is None:
        return None
    if isinstance(value, WorkflowTrack):
        return value
    key = str(value).strip().upper().replace(" ", "_")
    if key == "NOCASE":
        key = "NO_CASE"
    try:
        return WorkflowTrack(key)
    except ValueError:
        return None


def parse_stage(value: Any) -> WorkflowStage | None:
    if value is None or isinstance(value, WorkflowStage):
        return value
    try:
        return WorkflowStage(str(value))
    except ValueError:
        return None


def parse_decision(value: Any) -> Decision | None:
    if isinstance(value, Decision):
        return value
    try:
        return Decision(value)
    except ValueError:
        return None


def track_for_classification(label: Any) -> WorkflowTrack | None:
    for track, labels in TRACK_LABELS.items():
        if label in labels:
            return track
    return None


def queue_stage_for_track(track: WorkflowTrack) -> WorkflowStage:
    return QUEUE_STAGES[track]


def assessment_stage_for_track(track: WorkflowTrack) -> WorkflowStage:
    return ASSESSMENT_STAGES[track]


def track_for_stage(stage: Any) -> WorkflowTrack | None:
    stage = parse_stage(stage)
    for mapping in (QUEUE_STAGES, ASSESSMENT_STAGES):
        for track, track_stage in mapping.items():
            if track_stage == stage:
                return track
    return None


def is_queue_stage(stage: Any) -> bool:
    return parse_stage(stage) in QUEUE_STAGES.values()


def is_assessment_stage(stage: Any) -> bool:
    return parse_stage(stage) in ASSESSMENT_STAGES.values()


def is_stage_consistent(stage: Any, track: Any) -> bool:
    """Queue and assessment stages belong to one track (or a track pending classification)."""
    stage = parse_stage(stage)
    track = parse_track(track)
    stage_track = track_for_stage(stage)
    if stage_track is not None:
        return track is None or track == stage_track
    if stage in (WorkflowStage.DATA_ENTRY, WorkflowStage.MEDICAL_REVIEW):
        return track in (None, WorkflowTrack.ICSR)
    return True


def default_queue(track: Any) -> WorkflowStage:
    """Home queue of a track; unknown tracks fall back to the No-Case queue."""
    return QUEUE_STAGES.get(parse_track(track), WorkflowStage.TRIAGE_QUEUE_NO_CASE)


def initial_placement(classification: Any) -> dict[str, Any]:
    """Fields for a newly classified study: the triage queue of its track."""
    track = track_for_classification(classification)
    return {
        "icsr_classification": classification,
        "workflow_track": track,
        "workflow_stage": default_queue(track) if track else None,
        "status": STATUS_UNDER_TRIAGE,
        "sub_status": "triage",
        **RELEASE_FIELDS,
    }


# =============================================================================
# ASSESSMENT DECISIONS
# =============================================================================


def process_assessment(study: Any, decision: Any) -> TransitionResult:
    """
    Compute the update for a reviewer's decision on an assessment desk.

    Every outcome releases the study. Upgrades and downgrades send it back to
    a queue; only a Confirm moves it past assessment. An unrecognized decision
    yields the release fields alone.
    """
    updates = dict(RELEASE_FIELDS)
    parsed = parse_decision(decision)

    if parsed is Decision.REJECT:
        # Return to sender using the breadcrumb
        return_stage = parse_stage(read_field(study, "last_queue_stage")) or default_queue(
            read_field(study, "workflow_track")
        )
        updates.update(
            workflow_stage=return_stage,
            status=STATUS_UNDER_TRIAGE,
            sub_status="rejected",
        )
        return TransitionResult(updates=updates, decision=parsed.value)

    target = DECISION_TABLE.get(parsed) if parsed else None
    if target is None:
        logger.warning(
            f"Unknown decision {decision!r} for study {read_field(study, 'id')}; releasing only"
        )
        return TransitionResult(updates=updates, recognized=False, decision=str(decision))

    updates.update(
        workflow_stage=target.stage,
        status=target.status,
        sub_status=target.sub_status,
        icsr_classification=target.classification.value,
        workflow_track=target.track,
    )
    return TransitionResult(updates=updates, decision=parsed.value)


# =============================================================================
# QUEUE CLASSIFICATION
# =============================================================================

# (queue stage, label track) -> (target stage, track written, label written)
_QUEUE_ROUTES: dict[tuple[WorkflowStage, WorkflowTrack], tuple[WorkflowStage, WorkflowTrack, Classification]] = {
    (WorkflowStage.TRIAGE_QUEUE_ICSR, WorkflowTrack.ICSR): (
        WorkflowStage.ASSESSMENT_ICSR, WorkflowTrack.ICSR, Classification.PROBABLE_ICSR),
    (WorkflowStage.TRIAGE_QUEUE_ICSR, WorkflowTrack.AOI): (
        WorkflowStage.ASSESSMENT_AOI, WorkflowTrack.AOI, Classification.PROBABLE_AOI),
    (WorkflowStage.TRIAGE_QUEUE_ICSR, WorkflowTrack.NO_CASE): (
        WorkflowStage.ASSESSMENT_NO_CASE, WorkflowTrack.NO_CASE, Classification.NO_CASE),
    # AOI queue escalates ICSR to the ICSR queue
    (WorkflowStage.TRIAGE_QUEUE_AOI, WorkflowTrack.ICSR): (
        WorkflowStage.TRIAGE_QUEUE_ICSR, WorkflowTrack.ICSR, Classification.PROBABLE_ICSR),
    (WorkflowStage.TRIAGE_QUEUE_AOI, WorkflowTrack.AOI): (
        WorkflowStage.ASSESSMENT_AOI, WorkflowTrack.AOI, Classification.PROBABLE_AOI),
    (WorkflowStage.TRIAGE_QUEUE_AOI, WorkflowTrack.NO_CASE): (
        WorkflowStage.ASSESSMENT_NO_CASE, WorkflowTrack.NO_CASE, Classification.NO_CASE),
    # No-Case queue: ICSR escalates, and an AOI label is routed to the ICSR queue as a safety net
    (WorkflowStage.TRIAGE_QUEUE_NO_CASE, WorkflowTrack.ICSR): (
        WorkflowStage.TRIAGE_QUEUE_ICSR, WorkflowTrack.ICSR, Classification.PROBABLE_ICSR),
    (WorkflowStage.TRIAGE_QUEUE_NO_CASE, WorkflowTrack.AOI): (
        WorkflowStage.TRIAGE_QUEUE_ICSR, WorkflowTrack.ICSR, Classification.PROBABLE_AOI),
    (WorkflowStage.TRIAGE_QUEUE_NO_CASE, WorkflowTrack.NO_CASE): (
        WorkflowStage.ASSESSMENT_NO_CASE, WorkflowTrack.NO_CASE, Classification.NO_CASE),
}


def process_queue_classification(
    study: Any,
    classification: Any,
    reviewer_id: str,
    now: datetime,
) -> TransitionResult:
    """
    Classify a study that is sitting in a triage queue.

    Routing to an assessment desk puts the study on the classifying reviewer's
    desk (assigned to them) and records the queue as the breadcrumb. Routing
    to another queue releases it.
    """
    updates = dict(RELEASE_FIELDS)
    current = parse_stage(read_field(study, "workflow_stage"))
    label_track = parse_track(classification)
    if label_track is None:
        label_track = track_for_classification(classification)

    route = _QUEUE_ROUTES.get((current, label_track)) if label_track else None
    if route is None:
        logger.warning(
            f"Unhandled queue classification {classification!r} at stage {current} "
            f"for study {read_field(study, 'id')}"
        )
        return TransitionResult(updates=updates, recognized=False, decision=str(classification))

    stage, track, label = route
    updates.update(
        workflow_stage=stage,
        workflow_track=track,
        icsr_classification=label.value,
    )
    if is_assessment_stage(stage):
        updates.update(
            status=STATUS_UNDER_ASSESSMENT,
            sub_status="assessment",
            assigned_to=reviewer_id,
            allocated_at=now,
            last_queue_stage=current,
        )
    else:
        updates.update(status=STATUS_UNDER_TRIAGE, sub_status="triage")

    return TransitionResult(updates=updates, decision=label_track.value)


# =============================================================================
# DOWNSTREAM PROGRESSION
# =============================================================================

_STAGE_STATUS: dict[WorkflowStage, tuple[str, str]] = {
    WorkflowStage.DATA_ENTRY: (STATUS_DATA_ENTRY, "processing"),
    WorkflowStage.MEDICAL_REVIEW: (STATUS_MEDICAL_REVIEW, "review"),
    WorkflowStage.REPORTING: (STATUS_REPORTING, "archived"),
    WorkflowStage.COMPLETED: (STATUS_COMPLETED, "archived"),
}


def next_stage(study: Any, medical_review_required: bool = False) -> WorkflowStage:
    """Successor of a post-assessment stage. Raises for any other stage."""
    stage = parse_stage(read_field(study, "workflow_stage"))
    track = parse_track(read_field(study, "workflow_track"))

    if stage == WorkflowStage.DATA_ENTRY:
        if medical_review_required and track in (None, WorkflowTrack.ICSR):
            return WorkflowStage.MEDICAL_REVIEW
        return WorkflowStage.REPORTING
    if stage == WorkflowStage.MEDICAL_REVIEW:
        return WorkflowStage.REPORTING
    if stage == WorkflowStage.REPORTING:
        return WorkflowStage.COMPLETED
    if stage == WorkflowStage.COMPLETED:
        raise InvalidTransitionError("Study is completed; no further transitions")
    raise InvalidTransitionError(f"Cannot advance a study from stage {stage}")


def advance_stage(study: Any, medical_review_required: bool = False) -> TransitionResult:
    """Move a study one step along DATA_ENTRY -> MEDICAL_REVIEW -> REPORTING -> COMPLETED."""
    target = next_stage(study, medical_review_required)
    status, sub_status = _STAGE_STATUS[target]
    updates = dict(RELEASE_FIELDS)
    updates.update(workflow_stage=target, status=status, sub_status=sub_status)
    return TransitionResult(updates=updates, decision=target.value)
