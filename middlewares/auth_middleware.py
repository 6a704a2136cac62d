"""
Authentication and role-based access control for the API.
"""
import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import User, UserRole
from middlewares.db_middleware import get_session
from services.auth import decode_access_token
from services.exceptions import AuthenticationException, PermissionDeniedException

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    session: AsyncSession = Depends(get_session),
) -> User:
    """User behind the bearer token; the role comes from the DB row, not the token."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationException()

    payload = decode_access_token(credentials.credentials, request.app.state.config)
    user = await session.get(User, payload.user_id)
    if user is None:
        logger.warning("Token for unknown user %s", payload.user_id)
        raise AuthenticationException("User not found")

    request.state.user_id = user.id
    return user


def require_roles(*roles: UserRole):
    """
    Dependency factory restricting a route to some roles.

    Usage:
        @router.post("/x", dependencies=[Depends(require_roles(UserRole.ADMIN))])
    """
    allowed = frozenset(roles)

    async def checker(user: User = Depends(get_current_user)) -> User:
        if user.role not in allowed:
            logger.warning(
                "User %s (role: %s) attempted to access a %s resource",
                user.id, user.role.value, "/".join(sorted(r.value for r in allowed)),
            )
            raise PermissionDeniedException(
                f"Access denied. Required role: {', '.join(sorted(r.value for r in allowed))}"
            )
        return user

    return checker
