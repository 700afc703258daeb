"""Bearer token verification for workspace-scoped API calls.

Tokens are issued by the identity service; this module only decodes them into
an :class:`AuthContext`. ``create_access_token`` exists for tooling and tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import HTTPException, status

from src.auth.roles import WORKSPACE_ROLES, normalize_role
from src.core.config import get_settings
from src.storage.tenant import TenantContext


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    workspace_id: str
    role: str
    email: str = ""

    def tenant(self) -> TenantContext:
        return TenantContext(workspace_id=self.workspace_id, actor_id=self.user_id)


def create_access_token(context: AuthContext, *, expires_minutes: Optional[int] = None) -> tuple[str, int]:
    settings = get_settings()
    expires_in = (expires_minutes or settings.access_token_exp_minutes) * 60
    now = datetime.now(timezone.utc)
    payload = {
        "sub": context.user_id,
        "email": context.email,
        "workspace_id": context.workspace_id,
        "role": normalize_role(context.role),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
    }
    token = jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)
    return token, expires_in


def decode_access_token(token: str) -> AuthContext:
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
        role = normalize_role(payload["role"])
        if role not in WORKSPACE_ROLES:
            raise ValueError(f"unknown role {role!r}")
        return AuthContext(
            user_id=str(payload["sub"]),
            workspace_id=str(payload["workspace_id"]),
            role=role,
            email=str(payload.get("email", "")),
        )
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        ) from exc
