"""API routes for users' effective permissions."""

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import select

from ..core import AuthorizationDep, CurrentUserDep, SessionDep, raise_http
from ..models import User
from ..schemas import UserPermissionsResponse
from ..services import AuthorizationError
from ..services.authorization import resolve_permissions
from ..services.permissions import validate_permissions

router = APIRouter(prefix="/users", tags=["users"])


@router.get("/{user_id}/permissions", response_model=UserPermissionsResponse)
async def get_user_permissions(
    user_id: str,
    current_user: CurrentUserDep,
    engine: AuthorizationDep,
    session: SessionDep,
):
    """A user's resolved permission matrix. Self or admin only."""
    try:
        engine.require_self_or_admin(current_user, user_id)
    except AuthorizationError as e:
        raise_http(e)

    query = select(User).where(User.id == user_id)
    if not engine.is_super_org_member(current_user):
        query = query.where(User.organization_id == current_user.organization_id)

    user = (await session.execute(query)).scalar_one_or_none()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="User not found",
        )

    return UserPermissionsResponse(
        user_id=user.id,
        role=user.role,
        role_display_name=user.role_display_name,
        is_admin=engine.is_admin(user),
        permissions=validate_permissions(resolve_permissions(user)),
    )
