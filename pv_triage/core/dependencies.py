"""FastAPI dependencies for authentication, authorization, and context."""

import logging
from typing import Annotated, Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import User
from ..services.authorization import (
    AUTH_REQUIRED,
    AccessDecision,
    AuthorizationEngine,
    AuthorizationError,
)
from .database import get_session
from .security import decode_token

logger = logging.getLogger(__name__)

# Security scheme
bearer_scheme = HTTPBearer(auto_error=False)


def http_error_for(decision: AccessDecision) -> HTTPException:
    """401 for missing authentication, 403 for every other denial."""
    if decision.code == AUTH_REQUIRED:
        return HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=decision.to_dict(),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=decision.to_dict())


def raise_http(exc: AuthorizationError) -> None:
    raise http_error_for(exc.decision) from exc


def get_authorization_engine() -> AuthorizationEngine:
    """Engine with the configured super-admin organization."""
    return AuthorizationEngine()


async def get_current_user(
    credentials: Annotated[
        HTTPAuthorizationCredentials | None, Depends(bearer_scheme)
    ],
    session: Annotated[AsyncSession, Depends(get_session)],
) -> User:
    """Dependency to get the current authenticated user."""
    unauthenticated = http_error_for(AuthorizationEngine._unauthenticated())

    if not credentials:
        raise unauthenticated

    payload = decode_token(credentials.credentials)
    if not payload or payload.type != "access":
        logger.warning("Rejected bearer token that failed validation")
        raise unauthenticated

    result = await session.execute(select(User).where(User.id == payload.sub))
    user = result.scalar_one_or_none()

    if not user:
        raise unauthenticated

    return user


# Type aliases for cleaner dependency injection
SessionDep = Annotated[AsyncSession, Depends(get_session)]
CurrentUserDep = Annotated[User, Depends(get_current_user)]
AuthorizationDep = Annotated[AuthorizationEngine, Depends(get_authorization_engine)]


def require_permission(resource: str, action: str) -> Callable:
    """Dependency factory: the current user must hold ``resource:action``."""

    def dependency(user: CurrentUserDep, engine: AuthorizationDep) -> User:
        decision = engine.authorize_permission(user, resource, action)
        if not decision:
            raise http_error_for(decision)
        return user

    return dependency


AuditReaderDep = Annotated[User, Depends(require_permission("audit", "read"))]
