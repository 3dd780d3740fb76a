"""Portal access tokens (JWT) issued at login."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

ALGORITHM = "HS256"


class TokenError(Exception):
    """Raised when a token is missing, malformed, expired or forged."""


@dataclass
class TokenClaims:
    username: str
    role: str
    expires_at: datetime


def create_token(
    username: str,
    role: str,
    secret: str,
    issuer: str,
    duration: timedelta,
    now: Optional[datetime] = None,
) -> str:
    """Create a signed token for ``username`` valid for ``duration``."""
    now = now or datetime.now(timezone.utc)
    payload = {
        "username": username,
        "role": role,
        "iss": issuer,
        "iat": now,
        "nbf": now,
        "exp": now + duration,
    }
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def decode_token(token: str, secret: str, issuer: str) -> TokenClaims:
    """
    Verify a token and return its claims.

    Raises TokenError if the signature, issuer or validity window is wrong.
    """
    if not token:
        raise TokenError("Token is required")
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[ALGORITHM],
            issuer=issuer,
            options={"require": ["exp", "iss", "username"]},
        )
    except jwt.PyJWTError as e:
        raise TokenError("Invalid or expired token") from e

    username = payload.get("username")
    if not username:
        raise TokenError("Invalid or expired token")
    return TokenClaims(
        username=username,
        role=payload.get("role", "user"),
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )
