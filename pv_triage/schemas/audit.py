"""Pydantic schemas for the audit trail."""

from datetime import datetime
from typing import Any

from pydantic import Field

from .base import PaginatedResponse, TriageBaseModel


class ChangeEntry(TriageBaseModel):
    field: str
    before: str | None = None
    after: str | None = None


class AuditLogEntry(TriageBaseModel):
    """A single audit log entry."""

    id: str
    organization_id: str
    user_id: str | None = None  # None for system actions
    user_name: str | None = None
    action: str
    resource: str
    resource_id: str | None = None
    details: str = ""
    changes: list[ChangeEntry] = []
    before_value: dict[str, Any] | None = None
    after_value: dict[str, Any] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="meta")
    timestamp: datetime


class AuditLogResponse(PaginatedResponse):
    """Paginated audit log response."""

    items: list[AuditLogEntry]
