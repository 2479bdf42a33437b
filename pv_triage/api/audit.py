"""API routes for the audit trail."""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from ..core import AuditReaderDep, SessionDep
from ..schemas import AuditLogEntry, AuditLogResponse
from ..services import AuditService

router = APIRouter(prefix="/audit", tags=["audit"])


def get_audit_service(session: SessionDep) -> AuditService:
    return AuditService(session)


AuditServiceDep = Annotated[AuditService, Depends(get_audit_service)]


@router.get("/logs", response_model=AuditLogResponse)
async def get_audit_log(
    current_user: AuditReaderDep,
    service: AuditServiceDep,
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    user_id: str | None = None,
    action: str | None = None,
    resource: str | None = None,
    resource_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
):
    """Query the audit log with filters. Requires audit:read."""
    offset = (page - 1) * page_size

    entries, total = await service.get_audit_log(
        organization_id=current_user.organization_id,
        user_id=user_id,
        action=action,
        resource=resource,
        resource_id=resource_id,
        start_date=start_date,
        end_date=end_date,
        limit=page_size,
        offset=offset,
    )

    return AuditLogResponse.create(
        items=[AuditLogEntry.model_validate(e) for e in entries],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{resource}/{resource_id}", response_model=list[AuditLogEntry])
async def get_resource_history(
    resource: str,
    resource_id: str,
    current_user: AuditReaderDep,
    service: AuditServiceDep,
):
    """Full change history of one resource, oldest first."""
    entries = await service.get_resource_history(
        organization_id=current_user.organization_id,
        resource=resource,
        resource_id=resource_id,
    )
    return [AuditLogEntry.model_validate(e) for e in entries]
