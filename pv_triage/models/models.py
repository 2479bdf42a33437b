"""SQLAlchemy ORM Models for the triage workflow.

Each table is partitioned by ``organization_id``; every query issued by the
services filters on it.
"""

from datetime import datetime
from enum import Enum as PyEnum

from sqlalchemy import Boolean, Enum, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONDocument, StringIDMixin, TimestampMixin, new_id, utcnow


# =============================================================================
# ENUMS
# =============================================================================


class WorkflowTrack(str, PyEnum):
    ICSR = "ICSR"
    AOI = "AOI"
    NO_CASE = "NO_CASE"


class WorkflowStage(str, PyEnum):
    # Queues (waiting for allocation)
    TRIAGE_QUEUE_ICSR = "TRIAGE_QUEUE_ICSR"
    TRIAGE_QUEUE_AOI = "TRIAGE_QUEUE_AOI"
    TRIAGE_QUEUE_NO_CASE = "TRIAGE_QUEUE_NO_CASE"

    # Allocated to a reviewer's desk
    ASSESSMENT_ICSR = "ASSESSMENT_ICSR"
    ASSESSMENT_AOI = "ASSESSMENT_AOI"
    ASSESSMENT_NO_CASE = "ASSESSMENT_NO_CASE"

    # Processing
    DATA_ENTRY = "DATA_ENTRY"
    MEDICAL_REVIEW = "MEDICAL_REVIEW"

    # Finalization
    REPORTING = "REPORTING"
    COMPLETED = "COMPLETED"


class Classification(str, PyEnum):
    """Classification labels exactly as persisted on a study."""

    PROBABLE_ICSR = "Probable ICSR"
    PROBABLE_ICSR_AOI = "Probable ICSR/AOI"
    MANUAL_REVIEW = "Article requires manual review"
    PROBABLE_AOI = "Probable AOI"
    NO_CASE = "No Case"


class AuditAction(str, PyEnum):
    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    ALLOCATE = "allocate"
    RELEASE = "release"
    DECIDE = "decide"
    CLASSIFY = "classify"
    ADVANCE = "advance"


def _enum_values(enum_cls) -> list[str]:
    return [e.value for e in enum_cls]


# =============================================================================
# STUDY
# =============================================================================


class Study(Base, StringIDMixin, TimestampMixin):
    """A literature article moving through the triage workflow."""

    __tablename__ = "studies"

    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    pmid: Mapped[str | None] = mapped_column(String(32))
    title: Mapped[str | None] = mapped_column(Text)

    # Classification
    icsr_classification: Mapped[str | None] = mapped_column(String(100))
    workflow_track: Mapped[WorkflowTrack | None] = mapped_column(
        Enum(WorkflowTrack, name="workflow_track", values_callable=_enum_values),
        nullable=True,
    )
    user_tag: Mapped[str | None] = mapped_column(String(50))

    # Workflow position
    workflow_stage: Mapped[WorkflowStage | None] = mapped_column(
        Enum(WorkflowStage, name="workflow_stage", values_callable=_enum_values),
        nullable=True,
    )
    status: Mapped[str | None] = mapped_column(String(100))
    sub_status: Mapped[str | None] = mapped_column(String(50))
    last_queue_stage: Mapped[WorkflowStage | None] = mapped_column(
        Enum(WorkflowStage, name="workflow_stage", values_callable=_enum_values),
        nullable=True,
    )

    # Allocation (assigned_to is set iff allocated_at is set)
    assigned_to: Mapped[str | None] = mapped_column(String(64))
    batch_id: Mapped[str | None] = mapped_column(String(64))
    allocated_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Downstream sub-state, tracked but not derived by the workflow engine
    qa_approval_status: Mapped[str | None] = mapped_column(String(50))
    r3_form_status: Mapped[str | None] = mapped_column(String(50))
    medical_review_status: Mapped[str | None] = mapped_column(String(50))
    revoked_by: Mapped[str | None] = mapped_column(String(64))
    revoked_at: Mapped[datetime | None] = mapped_column(nullable=True)
    revocation_reason: Mapped[str | None] = mapped_column(Text)

    created_by: Mapped[str | None] = mapped_column(String(64))

    __table_args__ = (
        Index("idx_studies_org_stage", "organization_id", "workflow_stage"),
        Index("idx_studies_org_assignee", "organization_id", "assigned_to"),
        Index("idx_studies_batch", "organization_id", "batch_id"),
    )

    def workflow_fields(self) -> dict:
        """Snapshot of the fields the workflow engines read and write."""
        return {
            "icsr_classification": self.icsr_classification,
            "workflow_track": self.workflow_track,
            "workflow_stage": self.workflow_stage,
            "status": self.status,
            "sub_status": self.sub_status,
            "last_queue_stage": self.last_queue_stage,
            "assigned_to": self.assigned_to,
            "batch_id": self.batch_id,
            "allocated_at": self.allocated_at,
        }


# =============================================================================
# ROLES & USERS
# =============================================================================


def _role_id() -> str:
    return f"role_{new_id()}"


class Role(Base, TimestampMixin):
    """Named permission matrix owned by an organization."""

    __tablename__ = "roles"

    id: Mapped[str] = mapped_column(String(80), primary_key=True, default=_role_id)
    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    permissions: Mapped[dict] = mapped_column(JSONDocument, default=dict)
    is_system_role: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by: Mapped[str | None] = mapped_column(String(64))

    __table_args__ = (
        Index("idx_roles_org_name", "organization_id", "name", unique=True),
    )


class User(Base, StringIDMixin, TimestampMixin):
    """Authenticated actor. Permissions are copied from the role or overridden."""

    __tablename__ = "users"

    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), default="")
    last_name: Mapped[str] = mapped_column(String(100), default="")
    role_id: Mapped[str | None] = mapped_column(String(80))
    role: Mapped[str | None] = mapped_column(String(100))
    role_display_name: Mapped[str | None] = mapped_column(String(255))
    permissions: Mapped[dict] = mapped_column(JSONDocument, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        Index("idx_users_org", "organization_id"),
    )

    @property
    def full_name(self) -> str:
        name = f"{self.first_name or ''} {self.last_name or ''}".strip()
        return name or self.email or "Unknown User"


# =============================================================================
# AUDIT
# =============================================================================


class AuditLog(Base, StringIDMixin):
    """Append-only audit trail with field-level changes."""

    __tablename__ = "audit_logs"

    organization_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(64))
    user_name: Mapped[str | None] = mapped_column(String(255))
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    resource: Mapped[str] = mapped_column(String(50), nullable=False)
    resource_id: Mapped[str | None] = mapped_column(String(80))
    details: Mapped[str] = mapped_column(Text, default="")
    changes: Mapped[list] = mapped_column(JSONDocument, default=list)
    before_value: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)
    after_value: Mapped[dict | None] = mapped_column(JSONDocument, nullable=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict] = mapped_column("metadata", JSONDocument, default=dict)
    timestamp: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_audit_logs_org_time", "organization_id", "timestamp"),
        Index("idx_audit_logs_resource", "resource", "resource_id"),
        Index("idx_audit_logs_user", "user_id", "timestamp"),
    )
