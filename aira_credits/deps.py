"""Shared FastAPI dependencies."""

from beanie import PydanticObjectId
from bson.errors import InvalidId
from fastapi import Request

from aira_credits.core.exceptions import ForbiddenError, UnauthorizedError
from aira_credits.core.logging import bind_user_id
from aira_credits.core.security import load_access_token, parse_bearer
from aira_credits.models.user import User


async def get_current_user(request: Request) -> User:
    """Dependency: resolve the bearer token to a User. The caller never names its own identity."""
    token = parse_bearer(request.headers.get("Authorization"))
    if not token:
        raise UnauthorizedError("Missing authorization")
    payload = load_access_token(token)
    if not payload:
        raise UnauthorizedError("Invalid or expired token")
    user_id = payload.get("user_id")
    if not user_id:
        raise UnauthorizedError("Invalid token")
    try:
        user = await User.get(PydanticObjectId(user_id))
    except (InvalidId, TypeError):
        raise UnauthorizedError("Invalid token") from None
    if not user:
        raise UnauthorizedError("User not found")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Session invalidated")
    bind_user_id(str(user.id))
    return user


async def require_admin(request: Request) -> User:
    """Dependency: require current user to have role admin."""
    user = await get_current_user(request)
    if user.role != "admin":
        raise ForbiddenError("Admin only")
    return user
