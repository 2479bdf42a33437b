"""
Study API Routes: batch allocation and workflow transitions.

1. POST /studies/allocate-batch - Hand a batch of queued studies to the caller
2. POST /studies/release-batch - Return a batch to its queues
3. POST /studies/{id}/decision - Assessment decision (Confirm/Upgrade/Downgrade/Reject)
4. POST /studies/{id}/classify - Classify a study sitting in a triage queue
5. POST /studies/{id}/advance - Data entry -> medical review -> reporting -> completed
"""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from ..core import AuthorizationDep, CurrentUserDep, SessionDep, raise_http
from ..models import WorkflowTrack
from ..schemas import (
    AdvanceRequest,
    AllocateBatchRequest,
    AllocateBatchResponse,
    ClassifyRequest,
    DecisionRequest,
    ReleaseBatchRequest,
    ReleaseBatchResponse,
    StudyResponse,
    TrackStatistics,
    TransitionResponse,
)
from ..services import (
    AllocationService,
    AuditService,
    AuthorizationError,
    ConcurrencyError,
    InvalidTransitionError,
    NotAssignedError,
    StudyNotFoundError,
    StudyWorkflowService,
    TRACK_PERMISSIONS,
    WorkflowConfig,
)
from ..services.study_workflow import TransitionOutcome

router = APIRouter(prefix="/studies", tags=["studies"])


def get_workflow_config() -> WorkflowConfig:
    return WorkflowConfig.from_settings()


def get_allocation_service(
    session: SessionDep,
    config: Annotated[WorkflowConfig, Depends(get_workflow_config)],
) -> AllocationService:
    return AllocationService(session, config=config, audit=AuditService(session))


def get_workflow_service(session: SessionDep, engine: AuthorizationDep) -> StudyWorkflowService:
    return StudyWorkflowService(session, authorization=engine, audit=AuditService(session))


AllocationServiceDep = Annotated[AllocationService, Depends(get_allocation_service)]
WorkflowServiceDep = Annotated[StudyWorkflowService, Depends(get_workflow_service)]


def _transition_response(outcome: TransitionOutcome) -> TransitionResponse:
    return TransitionResponse(
        study=StudyResponse.model_validate(outcome.study),
        decision=outcome.result.decision,
        recognized=outcome.result.recognized,
    )


# =============================================================================
# ALLOCATION
# =============================================================================


@router.post("/allocate-batch", response_model=AllocateBatchResponse)
async def allocate_batch(
    request: AllocateBatchRequest,
    current_user: CurrentUserDep,
    engine: AuthorizationDep,
    service: AllocationServiceDep,
):
    """
    Allocate a batch of queued studies on a track to the caller.

    Returns the caller's in-progress batch when one exists. An empty batch is
    a normal response when the queue is empty.
    """
    track = WorkflowTrack(request.track)
    resource, action = TRACK_PERMISSIONS[track]
    try:
        engine.require_permission(current_user, resource, action)
    except AuthorizationError as e:
        raise_http(e)

    result = await service.allocate(
        organization_id=current_user.organization_id,
        track=track,
        reviewer=current_user,
        resume=request.resume,
    )

    return AllocateBatchResponse(
        batch_id=result.batch_id,
        track=result.track,
        studies=[StudyResponse.model_validate(s) for s in result.studies],
        resumed=result.resumed,
        lost_to_concurrency=result.lost_to_concurrency,
    )


@router.post("/release-batch", response_model=ReleaseBatchResponse)
async def release_batch(
    request: ReleaseBatchRequest,
    current_user: CurrentUserDep,
    service: AllocationServiceDep,
):
    """Release the caller's studies in a batch (or all they hold). Idempotent."""
    released = await service.release(
        organization_id=current_user.organization_id,
        actor=current_user,
        batch_id=request.batch_id,
        reviewer_id=current_user.id,
    )
    return ReleaseBatchResponse(
        released=len(released),
        studies=[StudyResponse.model_validate(s) for s in released],
    )


@router.post("/{study_id}/release", response_model=StudyResponse)
async def release_case(
    study_id: str,
    current_user: CurrentUserDep,
    service: AllocationServiceDep,
):
    """Release a single study. Only its holder may release it."""
    try:
        study = await service.release_case(
            organization_id=current_user.organization_id,
            study_id=study_id,
            reviewer=current_user,
        )
    except StudyNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Study {study_id} not found",
        )
    except NotAssignedError as e:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(e),
        )
    return StudyResponse.model_validate(study)


@router.get("/track-stats", response_model=dict[str, TrackStatistics])
async def get_track_statistics(
    current_user: CurrentUserDep,
    service: AllocationServiceDep,
):
    """Queued and in-assessment counts per track."""
    return await service.track_statistics(current_user.organization_id)


# =============================================================================
# TRANSITIONS
# =============================================================================


@router.post("/{study_id}/decision", response_model=TransitionResponse)
async def submit_decision(
    study_id: str,
    request: DecisionRequest,
    current_user: CurrentUserDep,
    service: WorkflowServiceDep,
):
    """
    Submit an assessment decision.

    An unrecognized decision is a 400 and leaves the study on the caller's desk.
    """
    try:
        outcome = await service.apply_decision(
            organization_id=current_user.organization_id,
            study_id=study_id,
            decision=request.decision,
            actor=current_user,
        )
    except AuthorizationError as e:
        raise_http(e)
    except StudyNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Study {study_id} not found",
        )
    except NotAssignedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ConcurrencyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return _transition_response(outcome)


@router.post("/{study_id}/classify", response_model=TransitionResponse)
async def classify_study(
    study_id: str,
    request: ClassifyRequest,
    current_user: CurrentUserDep,
    service: WorkflowServiceDep,
):
    """Classify a study from a triage queue (escalations stay in queues)."""
    try:
        outcome = await service.classify_from_queue(
            organization_id=current_user.organization_id,
            study_id=study_id,
            classification=request.classification,
            actor=current_user,
        )
    except AuthorizationError as e:
        raise_http(e)
    except StudyNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Study {study_id} not found",
        )
    except NotAssignedError as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ConcurrencyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return _transition_response(outcome)


@router.post("/{study_id}/advance", response_model=TransitionResponse)
async def advance_study(
    study_id: str,
    request: AdvanceRequest,
    current_user: CurrentUserDep,
    service: WorkflowServiceDep,
):
    """Move a study one step through data entry, medical review and reporting."""
    try:
        outcome = await service.advance(
            organization_id=current_user.organization_id,
            study_id=study_id,
            actor=current_user,
            medical_review_required=request.medical_review_required,
        )
    except AuthorizationError as e:
        raise_http(e)
    except StudyNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Study {study_id} not found",
        )
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except ConcurrencyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return _transition_response(outcome)
