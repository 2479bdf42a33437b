"""Audit service: change records and audit trail queries."""

from datetime import datetime
from typing import Any, Mapping, Sequence
import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.config import get_settings
from ..models import AuditAction, AuditLog
from ..models.base import utcnow
from .audit_diff import (
    create_audit_description,
    extract_changes,
    sanitize_value,
    to_jsonable,
)

logger = logging.getLogger(__name__)

def _actor_field(actor: Any, *names: str) -> Any:
    for name in names:
        value = actor.get(name) if isinstance(actor, Mapping) else getattr(actor, name, None)
        if value:
            return value
    return None


def actor_identity(actor: Any) -> tuple[str | None, str | None]:
    """(user_id, display name) for an ORM user, a mapping, or ``None``."""
    if actor is None:
        return None, None
    user_id = _actor_field(actor, "id", "user_id", "userId")
    name = _actor_field(actor, "full_name", "user_name", "userName", "name", "email")
    if name is None:
        first = _actor_field(actor, "first_name", "firstName") or ""
        last = _actor_field(actor, "last_name", "lastName") or ""
        name = f"{first} {last}".strip() or None
    return (str(user_id) if user_id is not None else None), name


class AuditService:
    """Service for audit logging and compliance."""

    def __init__(self, session: AsyncSession):
        self.session = session
        settings = get_settings()
        self._sensitive_fields = tuple(settings.audit_sensitive_fields)
        self._marker = settings.audit_redaction_marker

    # =========================================================================
    # RECORDING
    # =========================================================================

    def build_entry(
        self,
        organization_id: str,
        action: AuditAction | str,
        resource: str,
        resource_id: str | None = None,
        actor: Any = None,
        before: Mapping | None = None,
        after: Mapping | None = None,
        details: str | None = None,
        metadata: Mapping | None = None,
        fields: list[str] | None = None,
    ) -> AuditLog:
        """Build an unsaved entry from sanitized snapshots."""
        safe_before = self._sanitize(before)
        safe_after = self._sanitize(after)
        changes = extract_changes(safe_before, safe_after, fields)
        action_value = action.value if isinstance(action, AuditAction) else str(action)
        user_id, user_name = actor_identity(actor)

        return AuditLog(
            organization_id=organization_id,
            user_id=user_id,
            user_name=user_name,
            action=action_value,
            resource=resource,
            resource_id=resource_id,
            details=details or create_audit_description(action_value, resource, resource_id, changes),
            changes=changes,
            before_value=safe_before,
            after_value=safe_after,
            meta=to_jsonable(dict(metadata or {})),
            timestamp=utcnow(),
        )

    async def record_change(self, **kwargs: Any) -> AuditLog | None:
        """
        Write an entry into the caller's session inside a savepoint.

        The entry commits with the change it describes. Failures are logged
        and swallowed; the caller's transaction survives.
        """
        try:
            entry = self.build_entry(**kwargs)
            async with self.session.begin_nested():
                self.session.add(entry)
            return entry
        except Exception as e:
            logger.error(f"Failed to record audit entry: {e}")
            return None

    def _sanitize(self, snapshot: Mapping | None) -> dict | None:
        if snapshot is None:
            return None
        try:
            return sanitize_value(to_jsonable(dict(snapshot)), self._sensitive_fields, self._marker)
        except (TypeError, ValueError, RecursionError) as e:
            logger.warning(f"Unable to snapshot audit value: {e}")
            return None

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_audit_log(
        self,
        organization_id: str,
        user_id: str | None = None,
        action: AuditAction | str | None = None,
        resource: str | None = None,
        resource_id: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[Sequence[AuditLog], int]:
        """Query the audit log with filters."""
        query = select(AuditLog).where(AuditLog.organization_id == organization_id)

        if user_id:
            query = query.where(AuditLog.user_id == user_id)
        if action:
            action_value = action.value if isinstance(action, AuditAction) else action
            query = query.where(AuditLog.action == action_value)
        if resource:
            query = query.where(AuditLog.resource == resource)
        if resource_id:
            query = query.where(AuditLog.resource_id == resource_id)
        if start_date:
            query = query.where(AuditLog.timestamp >= start_date)
        if end_date:
            query = query.where(AuditLog.timestamp <= end_date)

        # Count total
        count_query = select(func.count()).select_from(query.subquery())
        total = (await self.session.execute(count_query)).scalar_one()

        # Get results
        query = (
            query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self.session.execute(query)

        return result.scalars().all(), total

    async def get_resource_history(
        self,
        organization_id: str,
        resource: str,
        resource_id: str,
    ) -> Sequence[AuditLog]:
        """Every entry for one resource, oldest first."""
        result = await self.session.execute(
            select(AuditLog)
            .where(
                AuditLog.organization_id == organization_id,
                AuditLog.resource == resource,
                AuditLog.resource_id == resource_id,
            )
            .order_by(AuditLog.timestamp, AuditLog.id)
        )
        return result.scalars().all()
