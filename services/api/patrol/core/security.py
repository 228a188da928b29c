from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from patrol.core.config import settings


def create_access_token(subject: str, role: str, *, expires_minutes: int | None = None) -> str:
    # Credentials are issued by the platform's auth service; this mints tokens for dev tools and tests.
    minutes = expires_minutes if expires_minutes is not None else settings.access_token_expire_minutes
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "role": role,
        "iat": now,
        "exp": now + timedelta(minutes=minutes),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
