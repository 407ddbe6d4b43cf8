"""
Password hashing and JWT helpers.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Optional

import jwt
from passlib.context import CryptContext

from marketplace.config import get_settings


class InvalidTokenError(Exception):
    """Raised when a bearer token cannot be decoded or has expired."""


@dataclass(frozen=True)
class CurrentUser:
    """Identity carried by a verified bearer token."""

    id: int
    username: str


@lru_cache(maxsize=4)
def _pwd_context(rounds: int) -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


def hash_password(password: str) -> str:
    """Hash a plain password with a per-password salt."""
    return _pwd_context(get_settings().bcrypt_rounds).hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plain password against its hash."""
    return _pwd_context(get_settings().bcrypt_rounds).verify(
        plain_password, hashed_password
    )


def create_access_token(
    user_id: int,
    username: str,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a signed access token.

    Args:
        user_id: The user's ID
        username: The user's username
        expires_delta: Optional lifetime. Defaults to JWT_EXPIRE_MINUTES.

    Returns:
        Encoded JWT string
    """
    settings = get_settings()
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.jwt_expire_minutes)
    payload = {
        "id": user_id,
        "username": username,
        "exp": datetime.now(timezone.utc) + expires_delta,
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> CurrentUser:
    """
    Verify a token and return the identity it carries.

    Raises:
        InvalidTokenError: If the token is malformed, expired, signed with
            another secret, or missing the user id.
    """
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp"]},
        )
    except jwt.PyJWTError as exc:
        raise InvalidTokenError(str(exc)) from exc

    user_id = payload.get("id")
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        raise InvalidTokenError("Token is missing the user id")
    return CurrentUser(id=user_id, username=str(payload.get("username") or ""))
