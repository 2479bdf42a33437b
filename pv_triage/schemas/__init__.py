"""PV Triage API Schemas.

Schemas are organized by domain:
- base: Base model, pagination, errors
- studies: Allocation and workflow transitions
- audit: Audit trail entries
- users: Effective permissions
"""

from .audit import AuditLogEntry, AuditLogResponse, ChangeEntry
from .base import (
    ErrorResponse,
    PaginatedResponse,
    TriageBaseModel,
)
from .studies import (
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
from .users import UserPermissionsResponse

__all__ = [
    # Base
    "TriageBaseModel",
    "PaginatedResponse",
    "ErrorResponse",
    # Studies
    "StudyResponse",
    "AllocateBatchRequest",
    "AllocateBatchResponse",
    "ReleaseBatchRequest",
    "ReleaseBatchResponse",
    "DecisionRequest",
    "ClassifyRequest",
    "AdvanceRequest",
    "TransitionResponse",
    "TrackStatistics",
    # Audit
    "ChangeEntry",
    "AuditLogEntry",
    "AuditLogResponse",
    # Users
    "UserPermissionsResponse",
]
