from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError

from app.core.config import IDENTITY_AUDIENCE, IDENTITY_JWT_ALG, IDENTITY_JWT_SECRET

bearer = HTTPBearer(auto_error=False)

ROLE_ADMIN = "Admin"
ROLE_MANAGER = "Manager"
ROLE_VENDOR = "Vendor"

ADMIN_ROLES = (ROLE_ADMIN, ROLE_MANAGER)


@dataclass
class Actor:
    """Who is performing an operation, as asserted by the identity service."""
    name: str
    role: str = "Staff"
    vendor_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def is_vendor(self) -> bool:
        return self.role == ROLE_VENDOR


SYSTEM_ACTOR = Actor(name="system", role=ROLE_ADMIN)


def decode_actor(token: str) -> Actor:
    payload = jwt.decode(
        token,
        IDENTITY_JWT_SECRET,
        algorithms=[IDENTITY_JWT_ALG],
        audience=IDENTITY_AUDIENCE,
    )
    name = payload.get("name") or payload.get("sub")
    if not name:
        raise JWTError("token carries no subject")
    return Actor(name=str(name), role=str(payload.get("role") or "Staff"), vendor_id=payload.get("vendor_id"))


def get_actor(creds: HTTPAuthorizationCredentials | None = Depends(bearer)) -> Actor:
    if not creds or not creds.credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return decode_actor(creds.credentials)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")


def require_roles(required: Iterable[str]) -> Callable:
    required_set = set(required)

    def _dep(actor: Actor = Depends(get_actor)) -> Actor:
        if actor.role not in required_set:
            detail = {
                "error": "missing_roles",
                "required": sorted(required_set),
                "role": actor.role,
            }
            raise HTTPException(status_code=403, detail=detail)
        return actor

    return _dep


require_admin = require_roles(ADMIN_ROLES)
