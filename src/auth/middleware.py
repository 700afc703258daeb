"""Resolve the bearer token on each request into an optional AuthContext."""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from src.auth.jwt import AuthContext, decode_access_token


AUTH_CONTEXT_KEY = "auth_context"


def _extract_bearer_token(request: Request) -> Optional[str]:
    authorization = request.headers.get("authorization")
    if not authorization:
        return None

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


def resolve_request_auth_context(request: Request) -> Optional[AuthContext]:
    """Invalid tokens resolve to ``None``; protected routes then answer 401."""

    token = _extract_bearer_token(request)
    if not token:
        return None

    try:
        return decode_access_token(token)
    except Exception:
        return None


def attach_auth_context(request: Request) -> Optional[AuthContext]:
    auth_context = resolve_request_auth_context(request)
    setattr(request.state, AUTH_CONTEXT_KEY, auth_context)
    return auth_context
