"""FastAPI dependencies for auth, role gates and tenant scoping."""

from __future__ import annotations

from collections.abc import Callable
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from src.auth.jwt import AuthContext
from src.auth.middleware import AUTH_CONTEXT_KEY
from src.auth.roles import WORKSPACE_ROLES, normalize_role
from src.storage.tenant import TenantContext


def get_optional_auth_context(request: Request) -> Optional[AuthContext]:
    return getattr(request.state, AUTH_CONTEXT_KEY, None)


def require_auth_context(auth: Optional[AuthContext] = Depends(get_optional_auth_context)) -> AuthContext:
    if auth is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return auth


def require_workspace_role(*allowed_roles: str) -> Callable[[AuthContext], AuthContext]:
    """Gate a route on the caller's workspace role; no roles means any member."""

    allowed = {normalize_role(role) for role in allowed_roles} or set(WORKSPACE_ROLES)

    def dependency(auth: AuthContext = Depends(require_auth_context)) -> AuthContext:
        if normalize_role(auth.role) not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role",
            )
        return auth

    return dependency


def enforce_workspace_scope(auth: AuthContext, workspace_id: Optional[str]) -> None:
    if workspace_id is not None and auth.workspace_id != workspace_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token workspace scope mismatch")


def require_tenant_context(
    auth: AuthContext = Depends(require_auth_context),
    workspace_id: Optional[str] = Header(default=None, alias="X-Workspace-Id"),
) -> TenantContext:
    enforce_workspace_scope(auth, workspace_id)
    return auth.tenant()
