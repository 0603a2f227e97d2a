from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

ALGORITHM = "HS256"
KNOWN_ROLES = frozenset({"student", "coach", "admin"})


@dataclass(frozen=True)
class AccessClaims:
    user_id: str
    role: str
    expires_at: datetime


def issue_access_token(user_id: str, role: str, *, secret: str, ttl_minutes: int) -> str:
    issued_at = datetime.now(tz=timezone.utc)
    return jwt.encode(
        {"sub": user_id, "role": role, "iat": issued_at, "exp": issued_at + timedelta(minutes=ttl_minutes)},
        secret,
        algorithm=ALGORITHM,
    )


def read_access_token(token: str, secret: str) -> AccessClaims:
    """Decode and check a bearer token; failures raise jwt.InvalidTokenError subclasses."""
    payload = jwt.decode(token, secret, algorithms=[ALGORITHM], options={"require": ["sub", "exp"]})
    role = payload.get("role")
    if role not in KNOWN_ROLES:
        raise jwt.InvalidTokenError(f"unknown role: {role}")
    return AccessClaims(
        user_id=str(payload["sub"]),
        role=role,
        expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
    )
