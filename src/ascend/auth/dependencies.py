"""FastAPI authentication dependencies."""

from __future__ import annotations

import jwt
from fastapi import Depends, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from ascend.auth.jwt import user_id_from_token
from ascend.database import get_session
from ascend.db.models import User
from ascend.exceptions import NotAuthenticated

_bearer = HTTPBearer(auto_error=False)


async def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> int:
    """Return the signed-in user's id. Raises NotAuthenticated without a valid session."""
    if credentials is None:
        raise NotAuthenticated()
    try:
        return user_id_from_token(credentials.credentials)
    except jwt.InvalidTokenError as e:
        raise NotAuthenticated(str(e)) from e


async def get_current_user(
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_session),
) -> User:
    """Resolve the session to its User row."""
    user = await db.get(User, user_id)
    if user is None:
        raise NotAuthenticated("User not found")
    return user


async def get_optional_user_id(
    credentials: HTTPAuthorizationCredentials | None = Security(_bearer),
) -> int | None:
    """Like get_current_user_id, but anonymous callers get None instead of a 401."""
    if credentials is None:
        return None
    try:
        return user_id_from_token(credentials.credentials)
    except jwt.InvalidTokenError:
        return None
