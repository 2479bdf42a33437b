"""
Authorization Engine: role and permission checks for actors.

Permission checks are the OR of a fixed list of named policy rules. Every rule
is evaluated on every check so that each one can be tested (and traced) on its
own; a grant from any rule is a grant.

    1. matrix            permissions[resource][action] is True
    2. admin_blanket     normalized role or display role is admin/superadmin
    3. studies_implicit  studies:read and studies:write for any authenticated actor
    4. track_fallback    *_track.triage -> triage:read/write,
                         *_track.assessment -> QA:read/write and QC:read/write
    5. super_org_admin   admin/superadmin member of the super-admin organization
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable
import logging
import re

from ..core.config import get_settings
from .permissions import TRACK_RESOURCES, has_matrix_permission

logger = logging.getLogger(__name__)

ADMIN_ROLES = frozenset({"admin", "superadmin"})
SUPERADMIN = "superadmin"

# Reason codes surfaced to the HTTP layer
AUTH_REQUIRED = "AUTH_REQUIRED"
INSUFFICIENT_PERMISSIONS = "INSUFFICIENT_PERMISSIONS"
PERMISSION_DENIED = "PERMISSION_DENIED"
SELF_OR_ADMIN_REQUIRED = "SELF_OR_ADMIN_REQUIRED"

_ROLE_STRIP = re.compile(r"[\s_]+")


# =============================================================================
# EXCEPTIONS
# =============================================================================


class AuthorizationError(Exception):
    """Base exception for a denied access check. Never retryable."""

    code = PERMISSION_DENIED

    def __init__(self, decision: "AccessDecision"):
        self.decision = decision
        super().__init__(decision.message)


class AuthenticationRequiredError(AuthorizationError):
    code = AUTH_REQUIRED


class InsufficientRoleError(AuthorizationError):
    code = INSUFFICIENT_PERMISSIONS


class PermissionDeniedError(AuthorizationError):
    code = PERMISSION_DENIED


class SelfOrAdminRequiredError(AuthorizationError):
    code = SELF_OR_ADMIN_REQUIRED


_ERRORS_BY_CODE = {
    AUTH_REQUIRED: AuthenticationRequiredError,
    INSUFFICIENT_PERMISSIONS: InsufficientRoleError,
    PERMISSION_DENIED: PermissionDeniedError,
    SELF_OR_ADMIN_REQUIRED: SelfOrAdminRequiredError,
}


# =============================================================================
# ACTOR CAPABILITY
# =============================================================================


@runtime_checkable
class PermissionHolder(Protocol):
    """Anything with the attributes an access check reads.

    ORM ``User`` rows satisfy this directly; plain mappings fetched from storage
    are adapted by ``as_permission_holder``.
    """

    id: Any
    organization_id: Any
    role: Any
    permissions: Any
    is_active: bool


@dataclass
class ActorRecord:
    """Plain-data actor, e.g. a user document decoded from storage."""

    id: str | None
    organization_id: str | None
    role: Any = None
    role_display_name: str | None = None
    permissions: Any = None
    is_active: bool = True


def as_permission_holder(actor: Any) -> PermissionHolder | None:
    """Adapt a mapping (camelCase or snake_case keys) to a ``PermissionHolder``."""
    if actor is None:
        return None
    if isinstance(actor, Mapping):
        def pick(*keys, default=None):
            for key in keys:
                if key in actor:
                    return actor[key]
            return default

        return ActorRecord(
            id=pick("id"),
            organization_id=pick("organization_id", "organizationId"),
            role=pick("role"),
            role_display_name=pick("role_display_name", "roleDisplayName"),
            permissions=pick("permissions", default={}),
            is_active=pick("is_active", "isActive", default=True) is not False,
        )
    return actor


def normalize_role(role: Any) -> str:
    """Lower-case and strip whitespace/underscores: "Super Admin" -> "superadmin"."""
    if role is None:
        return ""
    if isinstance(role, str):
        return _ROLE_STRIP.sub("", role.lower())
    # Embedded Role object or mapping
    name = role.get("name") if isinstance(role, Mapping) else getattr(role, "name", None)
    return normalize_role(name) if isinstance(name, str) else ""


def resolve_role_names(actor: PermissionHolder) -> set[str]:
    """Normalized role names of an actor, from ``role`` and ``role_display_name``."""
    names = {normalize_role(actor.role)}
    display = getattr(actor, "role_display_name", None)
    if display is None:
        role = actor.role
        display = (
            role.get("display_name") if isinstance(role, Mapping)
            else getattr(role, "display_name", None)
        )
    names.add(normalize_role(display))
    names.discard("")
    return names


def resolve_permissions(actor: PermissionHolder) -> Mapping:
    """The actor's effective matrix: its own copy, else its embedded role's."""
    permissions = getattr(actor, "permissions", None)
    if isinstance(permissions, Mapping) and permissions:
        return permissions
    role = actor.role
    role_permissions = (
        role.get("permissions") if isinstance(role, Mapping)
        else getattr(role, "permissions", None)
    )
    if isinstance(role_permissions, Mapping):
        return role_permissions
    return {}


def display_role(actor: PermissionHolder | None) -> str | None:
    if actor is None:
        return None
    role = actor.role
    if role is None or isinstance(role, str):
        return role
    return role.get("name") if isinstance(role, Mapping) else getattr(role, "name", None)


# =============================================================================
# DECISIONS
# =============================================================================


@dataclass
class AccessDecision:
    """Outcome of an access check, carrying what a denial needs for diagnostics."""

    granted: bool
    code: str | None = None
    message: str = ""
    resource: str | None = None
    action: str | None = None
    role: str | None = None
    required: list[str] = field(default_factory=list)
    matched_rules: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return self.granted

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"error": self.message, "code": self.code}
        if self.resource is not None:
            body.update(resource=self.resource, action=self.action, userRole=self.role)
        if self.required:
            body.update(required=self.required, current=self.role)
        return body

    def raise_for_denial(self) -> None:
        if not self.granted:
            raise _ERRORS_BY_CODE.get(self.code, AuthorizationError)(self)


@dataclass(frozen=True)
class PermissionRule:
    """A named policy rule; ``check`` answers for one (actor, resource, action)."""

    name: str
    check: Callable[["AuthorizationEngine", PermissionHolder, str, str], bool]


def _matrix_rule(engine, actor, resource, action) -> bool:
    return has_matrix_permission(resolve_permissions(actor), resource, action)


def _admin_blanket_rule(engine, actor, resource, action) -> bool:
    return bool(resolve_role_names(actor) & ADMIN_ROLES)


def _studies_implicit_rule(engine, actor, resource, action) -> bool:
    return resource == "studies" and action in ("read", "write")


def _track_fallback_rule(engine, actor, resource, action) -> bool:
    if action not in ("read", "write"):
        return False
    permissions = resolve_permissions(actor)
    if resource == "triage":
        flag = "triage"
    elif resource in ("QA", "QC"):
        flag = "assessment"
    else:
        return False
    return any(has_matrix_permission(permissions, track, flag) for track in TRACK_RESOURCES)


def _super_org_admin_rule(engine, actor, resource, action) -> bool:
    return engine.is_super_org_member(actor) and normalize_role(actor.role) in ADMIN_ROLES


DEFAULT_PERMISSION_RULES: tuple[PermissionRule, ...] = (
    PermissionRule("matrix", _matrix_rule),
    PermissionRule("admin_blanket", _admin_blanket_rule),
    PermissionRule("studies_implicit", _studies_implicit_rule),
    PermissionRule("track_fallback", _track_fallback_rule),
    PermissionRule("super_org_admin", _super_org_admin_rule),
)


# =============================================================================
# ENGINE
# =============================================================================


class AuthorizationEngine:
    """
    Answers "can actor X do action A on resource R" and "does actor X hold role R".

    The super-admin organization id is injected; when omitted it is read from
    settings. An inactive actor is denied every check.
    """

    def __init__(
        self,
        super_admin_org_id: str | None = None,
        rules: tuple[PermissionRule, ...] = DEFAULT_PERMISSION_RULES,
    ):
        if super_admin_org_id is None:
            super_admin_org_id = get_settings().super_admin_org_id
        self._super_admin_org_id = super_admin_org_id
        self._rules = rules

    @property
    def rules(self) -> tuple[PermissionRule, ...]:
        return self._rules

    def is_super_org_member(self, actor: PermissionHolder | None) -> bool:
        if actor is None or not self._super_admin_org_id:
            return False
        return str(actor.organization_id) == str(self._super_admin_org_id)

    def is_admin(self, actor: Any) -> bool:
        """Admin by normalized role, or any member of the super-admin organization."""
        holder = as_permission_holder(actor)
        if holder is None or not holder.is_active:
            return False
        return self.is_super_org_member(holder) or bool(resolve_role_names(holder) & ADMIN_ROLES)

    # -------------------------------------------------------------------------
    # ROLE CHECK
    # -------------------------------------------------------------------------

    def authorize_role(self, actor: Any, *allowed_roles: str) -> AccessDecision:
        holder = as_permission_holder(actor)
        if holder is None:
            return self._unauthenticated()

        required = list(allowed_roles)
        allowed = {normalize_role(r) for r in allowed_roles} - {""}

        if holder.is_active:
            if SUPERADMIN in allowed and self.is_super_org_member(holder):
                return AccessDecision(granted=True, role=display_role(holder), matched_rules=["super_org"])
            if resolve_role_names(holder) & allowed:
                return AccessDecision(granted=True, role=display_role(holder), matched_rules=["role"])

        return AccessDecision(
            granted=False,
            code=INSUFFICIENT_PERMISSIONS,
            message="Insufficient permissions",
            role=display_role(holder),
            required=required,
        )

    # -------------------------------------------------------------------------
    # PERMISSION CHECK
    # -------------------------------------------------------------------------

    def authorize_permission(self, actor: Any, resource: str, action: str) -> AccessDecision:
        holder = as_permission_holder(actor)
        if holder is None:
            return self._unauthenticated()

        denied = AccessDecision(
            granted=False,
            code=PERMISSION_DENIED,
            message=f"Permission denied for {action} on {resource}",
            resource=resource,
            action=action,
            role=display_role(holder),
        )

        if not isinstance(resource, str) or not isinstance(action, str) or not resource or not action:
            logger.warning(f"Malformed permission check: resource={resource!r} action={action!r}")
            return denied
        if not holder.is_active:
            return denied

        matched = []
        for rule in self._rules:
            try:
                if rule.check(self, holder, resource, action):
                    matched.append(rule.name)
            except (AttributeError, TypeError) as e:
                logger.warning(f"Permission rule '{rule.name}' failed on malformed actor: {e}")

        if not matched:
            logger.info(
                f"Denied {resource}:{action} for user={holder.id} role={display_role(holder)}"
            )
            return denied

        return AccessDecision(
            granted=True,
            resource=resource,
            action=action,
            role=display_role(holder),
            matched_rules=matched,
        )

    # -------------------------------------------------------------------------
    # SELF OR ADMIN
    # -------------------------------------------------------------------------

    def authorize_self_or_admin(self, actor: Any, target_user_id: Any) -> AccessDecision:
        holder = as_permission_holder(actor)
        if holder is None:
            return self._unauthenticated()

        if holder.is_active and (
            (holder.id is not None and str(holder.id) == str(target_user_id))
            or self.is_admin(holder)
        ):
            return AccessDecision(granted=True, role=display_role(holder))

        return AccessDecision(
            granted=False,
            code=SELF_OR_ADMIN_REQUIRED,
            message="Can only access own resources or admin required",
            role=display_role(holder),
        )

    # -------------------------------------------------------------------------
    # RAISING VARIANTS
    # -------------------------------------------------------------------------

    def require_role(self, actor: Any, *allowed_roles: str) -> None:
        self.authorize_role(actor, *allowed_roles).raise_for_denial()

    def require_permission(self, actor: Any, resource: str, action: str) -> None:
        self.authorize_permission(actor, resource, action).raise_for_denial()

    def require_self_or_admin(self, actor: Any, target_user_id: Any) -> None:
        self.authorize_self_or_admin(actor, target_user_id).raise_for_denial()

    @staticmethod
    def _unauthenticated() -> AccessDecision:
        return AccessDecision(
            granted=False,
            code=AUTH_REQUIRED,
            message="Authentication required",
        )
