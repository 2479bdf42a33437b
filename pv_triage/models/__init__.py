"""SQLAlchemy ORM Models for PV Triage."""

from .base import Base, JSONDocument, StringIDMixin, TimestampMixin
from .models import (
    # Enums
    AuditAction,
    Classification,
    WorkflowStage,
    WorkflowTrack,
    # Workflow
    Study,
    # Access control
    Role,
    User,
    # Audit
    AuditLog,
)

__all__ = [
    # Base
    "Base",
    "JSONDocument",
    "StringIDMixin",
    "TimestampMixin",
    # Enums
    "AuditAction",
    "Classification",
    "WorkflowStage",
    "WorkflowTrack",
    # Workflow
    "Study",
    # Access control
    "Role",
    "User",
    # Audit
    "AuditLog",
]
