"""Business logic services for PV Triage."""

from .allocator import (
    AllocationResult,
    AllocationService,
    BatchAllocation,
    WorkflowConfig,
    allocate_batch,
    plan_release,
    release_updates,
)
from .audit import AuditService
from .audit_diff import (
    create_audit_description,
    extract_changes,
    format_field_name,
    format_value,
    generate_change_description,
    has_changed,
    sanitize_value,
)
from .authorization import (
    AccessDecision,
    AuthorizationEngine,
    AuthorizationError,
    AuthenticationRequiredError,
    InsufficientRoleError,
    PermissionDeniedError,
    PermissionHolder,
    SelfOrAdminRequiredError,
)
from .permissions import (
    ImmutableRoleError,
    PermissionModelError,
    UnknownRoleTemplateError,
    create_custom_role,
    create_from_system_role,
    update_role_permissions,
    validate_permissions,
)
from .study_workflow import StudyWorkflowService, TransitionOutcome, TRACK_PERMISSIONS
from .workflow_engine import (
    ConcurrencyError,
    Decision,
    InvalidTransitionError,
    NotAssignedError,
    StudyNotFoundError,
    TransitionResult,
    WorkflowError,
    advance_stage,
    process_assessment,
    process_queue_classification,
)

__all__ = [
    # Workflow State Machine
    "WorkflowError",
    "InvalidTransitionError",
    "StudyNotFoundError",
    "NotAssignedError",
    "ConcurrencyError",
    "Decision",
    "TransitionResult",
    "process_assessment",
    "process_queue_classification",
    "advance_stage",
    "StudyWorkflowService",
    "TransitionOutcome",
    "TRACK_PERMISSIONS",
    # Batch Allocator
    "WorkflowConfig",
    "BatchAllocation",
    "AllocationResult",
    "AllocationService",
    "allocate_batch",
    "plan_release",
    "release_updates",
    # Authorization
    "AccessDecision",
    "AuthorizationEngine",
    "AuthorizationError",
    "AuthenticationRequiredError",
    "InsufficientRoleError",
    "PermissionDeniedError",
    "SelfOrAdminRequiredError",
    "PermissionHolder",
    # Permission model
    "PermissionModelError",
    "UnknownRoleTemplateError",
    "ImmutableRoleError",
    "validate_permissions",
    "create_custom_role",
    "create_from_system_role",
    "update_role_permissions",
    # Audit
    "AuditService",
    "has_changed",
    "extract_changes",
    "format_value",
    "format_field_name",
    "generate_change_description",
    "create_audit_description",
    "sanitize_value",
]
