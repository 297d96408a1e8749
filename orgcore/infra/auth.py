from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

from orgcore.domain.models import Role

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))


def create_access_token(
    *,
    user_id: str,
    role: Role,
    expires_minutes: int | None = None,
) -> str:
    """Sign a caller token. Real logins are issued upstream; this serves dev tooling and tests."""
    now = datetime.now(UTC)
    expire_delta = timedelta(minutes=expires_minutes or JWT_EXPIRES_MIN)
    payload: dict[str, Any] = {
        "sub": user_id,
        "role": str(role),
        "iat": int(now.timestamp()),
        "exp": int((now + expire_delta).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict[str, Any]:
    decoded = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    if not isinstance(decoded, dict):
        raise ValueError("Invalid token payload")
    if not isinstance(decoded.get("sub"), str):
        raise ValueError("Token has no subject")
    decoded["role"] = Role(decoded.get("role"))
    return decoded
