"""
HS256 session tokens.

Tokens are issued by the auth provider with the user id in ``sub`` and the
provider's audience. ``create_access_token`` exists for local development
and tests.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from ascend.config import get_settings


def create_access_token(user_id: int, expires_in: timedelta | None = None) -> str:
    """
    Create a signed access token for a user.

    Args:
        user_id: The user's database ID.
        expires_in: Lifetime override; defaults to the configured expiry.

    Returns:
        Encoded JWT string.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    lifetime = expires_in or timedelta(minutes=settings.jwt_access_token_expire_minutes)
    payload: dict[str, Any] = {
        "sub": str(user_id),
        "aud": settings.jwt_audience,
        "iat": now,
        "exp": now + lifetime,
        "type": "access",
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> dict[str, Any]:
    """
    Verify and decode an access token.

    Raises:
        jwt.InvalidTokenError: If the token is invalid, expired, or has no subject.
    """
    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
        )
    except jwt.ExpiredSignatureError:
        msg = "Token has expired"
        raise jwt.InvalidTokenError(msg) from None

    if payload.get("type", "access") != "access":
        msg = f"Expected an access token, got '{payload.get('type')}'"
        raise jwt.InvalidTokenError(msg)
    subject = payload.get("sub")
    if subject is None or not str(subject).isdigit():
        msg = "Token subject is not a user id"
        raise jwt.InvalidTokenError(msg)
    return payload


def user_id_from_token(token: str) -> int:
    return int(verify_token(token)["sub"])
