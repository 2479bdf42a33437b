"""Core application utilities."""

from .config import Settings, get_settings
from .database import (
    async_session_factory,
    close_db,
    engine,
    get_session,
    init_db,
)
from .dependencies import (
    AuditReaderDep,
    AuthorizationDep,
    CurrentUserDep,
    SessionDep,
    get_authorization_engine,
    get_current_user,
    http_error_for,
    raise_http,
    require_permission,
)
from .security import create_access_token, decode_token

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "engine",
    "async_session_factory",
    "get_session",
    "init_db",
    "close_db",
    # Dependencies
    "get_current_user",
    "get_authorization_engine",
    "require_permission",
    "http_error_for",
    "raise_http",
    "CurrentUserDep",
    "AuthorizationDep",
    "AuditReaderDep",
    "SessionDep",
    # Security
    "create_access_token",
    "decode_token",
]
