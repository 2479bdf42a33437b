"""
Permission Model: the role -> resource -> action matrix.

A permission matrix is a plain mapping ``{resource: {action: bool}}``. Every
role stored by the system is normalized onto ``DEFAULT_PERMISSION_STRUCTURE``
so that a missing entry always reads as ``False``.
"""

from copy import deepcopy
from typing import Iterable, Mapping

from ..models import Role


class PermissionModelError(Exception):
    """Base exception for permission model operations."""
    pass


class UnknownRoleTemplateError(PermissionModelError):
    """Requested system role or permission template does not exist."""
    pass


class ImmutableRoleError(PermissionModelError):
    """System roles cannot be modified once created."""
    pass


# =============================================================================
# MATRIX STRUCTURE
# =============================================================================

DEFAULT_PERMISSION_STRUCTURE: dict[str, dict[str, bool]] = {
    "dashboard": {"read": False, "write": False},
    "users": {"read": False, "write": False, "delete": False},
    "roles": {"read": False, "write": False, "delete": False},
    "drugs": {"read": False, "write": False, "delete": False},
    "studies": {"read": False, "write": False, "delete": False},
    "audit": {"read": False, "write": False, "delete": False},
    "settings": {"read": False, "write": False},
    "organizations": {"read": False, "write": False, "delete": False},
    "reports": {"read": False, "write": False, "delete": False},
    "triage": {"read": False, "write": False, "classify": False, "manual_drug_test": False},
    "QA": {"read": False, "write": False, "approve": False, "reject": False},
    "QC": {"read": False, "write": False, "approve": False, "reject": False},
    "data_entry": {"read": False, "write": False, "r3_form": False},
    "medical_examiner": {
        "read": False,
        "write": False,
        "comment_fields": False,
        "edit_fields": False,
        "revoke_studies": False,
    },
    # Track roles: a single flag per workflow stage of a track
    "icsr_track": {"triage": False, "assessment": False},
    "aoi_track": {"triage": False, "assessment": False},
    "no_case_track": {"triage": False, "assessment": False},
}

TRACK_RESOURCES = ("icsr_track", "aoi_track", "no_case_track")

ALL = "*"


def build_matrix(grants: Mapping[str, Iterable[str] | str]) -> dict[str, dict[str, bool]]:
    """Build a full matrix from ``{resource: actions}``; ``"*"`` grants every action."""
    matrix = deepcopy(DEFAULT_PERMISSION_STRUCTURE)
    for resource, actions in grants.items():
        row = matrix.setdefault(resource, {})
        if actions == ALL:
            actions = list(row.keys())
        for action in actions:
            row[action] = True
    return matrix


def validate_permissions(permissions: Mapping | None) -> dict[str, dict[str, bool]]:
    """Merge provided permissions onto the default structure.

    Resources outside the known structure are dropped. Non-boolean action
    values are coerced with ``is True`` so that ``"yes"`` or ``1`` never grant.
    """
    validated = deepcopy(DEFAULT_PERMISSION_STRUCTURE)
    if not isinstance(permissions, Mapping):
        return validated

    for resource, actions in permissions.items():
        if resource not in validated or not isinstance(actions, Mapping):
            continue
        for action, value in actions.items():
            validated[resource][action] = value is True

    return validated


def has_matrix_permission(permissions: Mapping | None, resource: str, action: str) -> bool:
    """Strict matrix lookup: ``permissions[resource][action] is True``."""
    if not isinstance(permissions, Mapping):
        return False
    row = permissions.get(resource)
    if not isinstance(row, Mapping):
        return False
    return row.get(action) is True


# =============================================================================
# SYSTEM ROLES
# =============================================================================

SYSTEM_ROLES: dict[str, dict] = {
    "superadmin": {
        "display_name": "Super Administrator",
        "description": "Full system access with organization management capabilities",
        "permissions": build_matrix({
            "dashboard": ALL, "users": ALL, "roles": ALL, "drugs": ALL,
            "studies": ALL, "audit": ["read", "write"], "settings": ALL,
            "organizations": ALL, "reports": ALL, "triage": ALL, "QA": ALL,
            "QC": ALL, "data_entry": ALL, "medical_examiner": ALL,
        }),
    },
    "admin": {
        "display_name": "Administrator",
        "description": "Organization administrator with user and role management access",
        "permissions": build_matrix({
            "dashboard": ALL, "users": ALL, "roles": ALL, "drugs": ALL,
            "studies": ALL, "audit": ["read"], "settings": ALL,
            "reports": ["read", "write"], "triage": ALL, "QA": ALL, "QC": ALL,
            "data_entry": ALL, "medical_examiner": ALL,
        }),
    },
    "triage": {
        "display_name": "Triage Specialist",
        "description": "Can run manual drug tests and classify studies as ICSR, AOI, or No Case",
        "permissions": build_matrix({
            "dashboard": ["read"], "drugs": ["read", "write"],
            "studies": ["read", "write"], "triage": ALL,
        }),
    },
    "QA": {
        "display_name": "Quality Assurance",
        "description": "Can approve or reject triage classifications",
        "permissions": build_matrix({
            "dashboard": ["read"], "drugs": ["read"], "studies": ["read", "write"],
            "audit": ["read"], "triage": ["read"], "QA": ALL,
        }),
    },
    "QC": {
        "display_name": "Quality Control",
        "description": "Can approve or reject R3 XML forms before medical review",
        "permissions": build_matrix({
            "dashboard": ["read"], "drugs": ["read"], "studies": ["read", "write"],
            "audit": ["read"], "triage": ["read"], "QC": ALL,
        }),
    },
    "pharmacovigilance": {
        "display_name": "Pharmacovigilance",
        "description": "Standard pharmacovigilance user with drug and study access",
        "permissions": build_matrix({
            "dashboard": ["read"], "users": ["read"], "drugs": ["read", "write"],
            "studies": ["read", "write"], "audit": ["read"], "settings": ["read"],
            "reports": ["read"],
        }),
    },
    "sponsor_auditor": {
        "display_name": "Sponsor/Auditor",
        "description": "Read-only access for sponsors and auditors",
        "permissions": build_matrix({
            "dashboard": ["read"], "drugs": ["read"], "studies": ["read"],
            "audit": ["read"], "reports": ["read"],
        }),
    },
    "data_entry": {
        "display_name": "Data Entry Specialist",
        "description": "Access to QC-approved ICSR studies for R3 XML form completion",
        "permissions": build_matrix({
            "dashboard": ["read"], "drugs": ["read"], "studies": ["read", "write"],
            "data_entry": ALL,
        }),
    },
    "medical_examiner": {
        "display_name": "Medical Reviewer",
        "description": "Review completed ICSR studies, comment on fields, edit data, and manage revocations",
        "permissions": build_matrix({
            "dashboard": ["read"], "drugs": ["read"], "studies": ["read", "write"],
            "audit": ["read"], "reports": ["read", "write"], "data_entry": ["read"],
            "medical_examiner": ALL,
        }),
    },
}

# Templates for custom roles map onto the corresponding system role matrix
PERMISSION_TEMPLATES: dict[str, str] = {
    "triage_specialist": "triage",
    "QA_reviewer": "QA",
    "QC_reviewer": "QC",
    "data_entry_specialist": "data_entry",
    "medical_reviewer": "medical_examiner",
    "pharmacovigilance_user": "pharmacovigilance",
    "read_only_auditor": "sponsor_auditor",
}


def role_key(name: str) -> str:
    """Internal role key: lower-case, whitespace runs become underscores."""
    return "_".join(name.strip().lower().split())


# =============================================================================
# ROLE FACTORIES
# =============================================================================


def create_from_system_role(
    role_type: str,
    organization_id: str,
    created_by: str | None = None,
) -> Role:
    """Instantiate one of the built-in system roles for an organization."""
    definition = SYSTEM_ROLES.get(role_type)
    if definition is None:
        raise UnknownRoleTemplateError(f"Unknown system role: {role_type}")

    return Role(
        organization_id=organization_id,
        name=role_type,
        display_name=definition["display_name"],
        description=definition["description"],
        permissions=deepcopy(definition["permissions"]),
        is_system_role=True,
        is_active=True,
        created_by=created_by,
    )


def create_custom_role(
    name: str,
    display_name: str,
    permission_template: str,
    organization_id: str,
    description: str = "",
    created_by: str | None = None,
    overrides: Mapping | None = None,
) -> Role:
    """Create a non-system role from a permission template plus overrides."""
    system_role = PERMISSION_TEMPLATES.get(permission_template)
    if system_role is None:
        raise UnknownRoleTemplateError(
            f"Permission template '{permission_template}' not found. "
            f"Available templates: {', '.join(PERMISSION_TEMPLATES)}"
        )

    template = SYSTEM_ROLES[system_role]
    permissions = deepcopy(template["permissions"])
    for resource, actions in (overrides or {}).items():
        if isinstance(actions, Mapping):
            permissions.setdefault(resource, {}).update(actions)

    return Role(
        organization_id=organization_id,
        name=role_key(name),
        display_name=display_name,
        description=description or template["description"],
        permissions=validate_permissions(permissions),
        is_system_role=False,
        is_active=True,
        created_by=created_by,
    )


def update_role_permissions(role: Role, permissions: Mapping) -> Role:
    """Replace a custom role's matrix. System roles are immutable."""
    if role.is_system_role:
        raise ImmutableRoleError(f"System role '{role.name}' cannot be modified")
    role.permissions = validate_permissions(permissions)
    return role
