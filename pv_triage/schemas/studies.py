"""Pydantic schemas for study allocation and workflow transitions."""

from datetime import datetime

from pydantic import Field

from ..models import WorkflowStage, WorkflowTrack
from .base import TriageBaseModel


# =============================================================================
# STUDY
# =============================================================================


class StudyResponse(TriageBaseModel):
    """Workflow view of a study."""

    id: str
    organization_id: str
    pmid: str | None = None
    title: str | None = None
    icsr_classification: str | None = None
    workflow_track: WorkflowTrack | None = None
    workflow_stage: WorkflowStage | None = None
    status: str | None = None
    sub_status: str | None = None
    last_queue_stage: WorkflowStage | None = None
    assigned_to: str | None = None
    batch_id: str | None = None
    allocated_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


# =============================================================================
# ALLOCATION
# =============================================================================


class AllocateBatchRequest(TriageBaseModel):
    track: WorkflowTrack
    resume: bool = True


class AllocateBatchResponse(TriageBaseModel):
    batch_id: str | None
    track: WorkflowTrack
    studies: list[StudyResponse]
    resumed: bool = False
    lost_to_concurrency: int = 0


class ReleaseBatchRequest(TriageBaseModel):
    """Release by batch id, or everything the caller holds when omitted."""

    batch_id: str | None = None


class ReleaseBatchResponse(TriageBaseModel):
    released: int
    studies: list[StudyResponse]


# =============================================================================
# TRANSITIONS
# =============================================================================


class DecisionRequest(TriageBaseModel):
    decision: str = Field(..., min_length=1, max_length=100)


class ClassifyRequest(TriageBaseModel):
    classification: str = Field(..., min_length=1, max_length=100)


class AdvanceRequest(TriageBaseModel):
    medical_review_required: bool = False


class TransitionResponse(TriageBaseModel):
    study: StudyResponse
    decision: str | None = None
    recognized: bool = True


class TrackStatistics(TriageBaseModel):
    queued: int
    in_assessment: int
