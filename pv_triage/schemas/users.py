"""Pydantic schemas for users and their effective permissions."""

from .base import TriageBaseModel


class UserPermissionsResponse(TriageBaseModel):
    user_id: str
    role: str | None = None
    role_display_name: str | None = None
    is_admin: bool
    permissions: dict[str, dict[str, bool]]
