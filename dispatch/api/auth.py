"""
Request authorization boundary.

Bearer tokens are issued elsewhere; this module only decodes them into an
``Actor`` (id + roles).  The lifecycle engine trusts that pair as-is.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import jwt
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from dispatch.config import settings
from dispatch.domain.enums import Role

bearer = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Actor:
    actor_id: str
    roles: frozenset[str]

    def has_role(self, role: Role) -> bool:
        return role.value in self.roles


def get_current_actor(
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> Actor:
    if creds is None:
        raise HTTPException(
            status_code=401,
            detail="Authentication token required (Authorization: Bearer <token>)",
        )
    try:
        payload = jwt.decode(
            creds.credentials, settings.jwt_secret, algorithms=[settings.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    actor_id = payload.get("userId") or payload.get("sub")
    roles = payload.get("roles") or []
    if not actor_id or not isinstance(roles, list):
        raise HTTPException(status_code=401, detail="Invalid token")
    return Actor(actor_id=str(actor_id), roles=frozenset(str(r) for r in roles))


def require_roles(*allowed: Role):
    """Route guard: the actor must hold at least one of *allowed*."""

    def _guard(actor: Actor = Depends(get_current_actor)) -> Actor:
        if not any(actor.has_role(role) for role in allowed):
            names = ", ".join(role.value for role in allowed)
            raise HTTPException(
                status_code=403, detail=f"Requires one of these roles: {names}"
            )
        return actor

    return _guard


def issue_token(
    actor_id: str, roles: Iterable[Role | str], expires_minutes: int = 60
) -> str:
    """Mint a token the boundary accepts.  Used by the seed script and tests."""
    now = datetime.now(timezone.utc)
    payload = {
        "userId": actor_id,
        "roles": [getattr(r, "value", r) for r in roles],
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_minutes)).timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
