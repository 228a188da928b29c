from __future__ import annotations

from dataclasses import dataclass

import jwt
from starlette.exceptions import HTTPException
from starlette.requests import HTTPConnection
from starlette.status import HTTP_401_UNAUTHORIZED, HTTP_403_FORBIDDEN

from patrol.core.security import decode_token

ROLE_GUARD = "guard"
ROLE_SUPERVISOR = "supervisor"
ROLE_ADMIN = "admin"
ROLES = (ROLE_GUARD, ROLE_SUPERVISOR, ROLE_ADMIN)
OVERSIGHT_ROLES = (ROLE_SUPERVISOR, ROLE_ADMIN)


@dataclass(frozen=True)
class Identity:
    """Caller identity taken from the bearer token. For guards ``subject`` is the guard id."""

    subject: str
    role: str

    @property
    def is_oversight(self) -> bool:
        return self.role in OVERSIGHT_ROLES


def identity_from_token(token: str | None) -> Identity:
    if not token:
        raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        payload = decode_token(token)
    except jwt.PyJWTError as exc:
        raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    subject = payload.get("sub")
    role = payload.get("role")
    if not subject or role not in ROLES:
        raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return Identity(subject=str(subject), role=role)


def get_current_identity(conn: HTTPConnection) -> Identity:
    auth = conn.headers.get("authorization")
    if not auth or not auth.lower().startswith("bearer "):
        raise HTTPException(status_code=HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return identity_from_token(auth.split(" ", 1)[1].strip())


def require_roles(conn: HTTPConnection, *roles: str) -> Identity:
    identity = get_current_identity(conn)
    if roles and identity.role not in roles:
        raise HTTPException(status_code=HTTP_403_FORBIDDEN, detail="Forbidden")
    return identity
