"""
Audit Differ: before/after change extraction and human-readable summaries.

Nothing here raises on malformed input; unexpected shapes are formatted as
plain values.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Mapping
import json
import logging
import re

logger = logging.getLogger(__name__)

DEFAULT_SENSITIVE_FIELDS = ("password", "token", "secret", "apiKey")
REDACTED = "***REDACTED***"
CIRCULAR = "[Circular]"


def _is_empty(snapshot: Any) -> bool:
    return not snapshot or (isinstance(snapshot, Mapping) and len(snapshot) == 0)


def _as_mapping(snapshot: Any) -> Mapping:
    return snapshot if isinstance(snapshot, Mapping) else {}


def _plain(value: Any, _seen: frozenset = frozenset()) -> Any:
    """JSON-friendly form of a value; enums become their value, dates ISO strings."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (Mapping, list, tuple, set)):
        if id(value) in _seen:
            return CIRCULAR
        _seen = _seen | {id(value)}
        if isinstance(value, Mapping):
            return {str(k): _plain(v, _seen) for k, v in value.items()}
        return [_plain(v, _seen) for v in value]
    return value


def to_jsonable(value: Any) -> Any:
    """Public alias used when persisting raw snapshots."""
    return _plain(value)


# =============================================================================
# COMPARISON
# =============================================================================


def has_changed(before: Any, after: Any) -> bool:
    """Structural comparison for containers, strict comparison otherwise."""
    if before is None:
        return after is not None
    if after is None:
        return True

    if isinstance(before, (Mapping, list, tuple)) and isinstance(after, (Mapping, list, tuple)):
        try:
            return json.dumps(_plain(before), default=str) != json.dumps(_plain(after), default=str)
        except (TypeError, ValueError, RecursionError):
            return before != after

    if isinstance(before, bool) != isinstance(after, bool):
        return True
    return _plain(before) != _plain(after)


def extract_changes(
    before: Mapping | None,
    after: Mapping | None,
    fields: Iterable[str] | None = None,
) -> list[dict[str, Any]]:
    """
    Ordered ``{field, before, after}`` entries between two snapshots.

    An empty mapping counts as absent. Absent ``before`` is a creation, absent
    ``after`` a deletion; otherwise the union of keys is compared.
    """
    changes: list[dict[str, Any]] = []
    before_empty = _is_empty(before)
    after_empty = _is_empty(after)

    if before_empty and after_empty:
        return changes

    old = _as_mapping(before)
    new = _as_mapping(after)
    tracked = list(fields) if fields is not None else None

    if before_empty:
        for key in tracked if tracked is not None else list(new):
            value = new.get(key)
            if value is not None and value != "":
                changes.append({"field": key, "before": None, "after": format_value(value)})
        return changes

    if after_empty:
        for key in tracked if tracked is not None else list(old):
            value = old.get(key)
            if value is not None:
                changes.append({"field": key, "before": format_value(value), "after": None})
        return changes

    if tracked is None:
        tracked = list(old) + [key for key in new if key not in old]

    for key in tracked:
        if has_changed(old.get(key), new.get(key)):
            changes.append({
                "field": key,
                "before": format_value(old.get(key)),
                "after": format_value(new.get(key)),
            })

    logger.debug(f"Extracted {len(changes)} changes from {len(tracked)} keys")
    return changes


# =============================================================================
# FORMATTING
# =============================================================================


def format_value(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (list, tuple)):
        if not value:
            return "[]"
        return _dumps(value)
    if isinstance(value, Mapping):
        return _dumps(value)
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    try:
        return str(value)
    except Exception:
        return repr(value)


def _dumps(value: Any) -> str:
    try:
        return json.dumps(_plain(value), default=str, separators=(",", ":"))
    except (TypeError, ValueError, RecursionError):
        return str(value)


_CAMEL_BOUNDARY = re.compile(r"([A-Z])")


def format_field_name(field: Any) -> str:
    """``assignedTo`` -> ``Assigned To``; ``sub_status`` -> ``Sub status``."""
    name = _CAMEL_BOUNDARY.sub(r" \1", str(field)).replace("_", " ").strip()
    name = " ".join(name.split())
    return name[:1].upper() + name[1:]


def generate_change_description(changes: list[Mapping] | None) -> str:
    if not changes:
        return "No changes detected"

    if len(changes) == 1:
        change = changes[0]
        field = format_field_name(change.get("field", ""))
        if change.get("before") is None:
            return f'Set {field} to "{change.get("after")}"'
        if change.get("after") is None:
            return f'Cleared {field} (was "{change.get("before")}")'
        return f'Changed {field} from "{change.get("before")}" to "{change.get("after")}"'

    names = ", ".join(format_field_name(c.get("field", "")) for c in changes)
    return f"Updated {len(changes)} fields: {names}"


def create_audit_description(
    action: Any,
    resource: str,
    resource_id: Any,
    changes: list[Mapping] | None = None,
) -> str:
    base = f"{format_value(action)} {resource} {resource_id}"
    if not changes:
        return base
    return f"{base}: {generate_change_description(changes)}"


# =============================================================================
# REDACTION
# =============================================================================


def is_sensitive(key: Any, sensitive_fields: Iterable[str] = DEFAULT_SENSITIVE_FIELDS) -> bool:
    lowered = str(key).lower()
    return any(field.lower() in lowered for field in sensitive_fields)


def sanitize_value(
    value: Any,
    sensitive_fields: Iterable[str] = DEFAULT_SENSITIVE_FIELDS,
    marker: str = REDACTED,
    _seen: frozenset = frozenset(),
) -> Any:
    """Replace values under sensitive keys with ``marker`` at every depth."""
    sensitive_fields = tuple(sensitive_fields)

    if isinstance(value, (Mapping, list, tuple)):
        if id(value) in _seen:
            return CIRCULAR
        _seen = _seen | {id(value)}
    if isinstance(value, Mapping):
        return {
            key: marker if is_sensitive(key, sensitive_fields)
            else sanitize_value(item, sensitive_fields, marker, _seen)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [sanitize_value(item, sensitive_fields, marker, _seen) for item in value]
    return value
