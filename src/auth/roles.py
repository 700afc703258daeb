"""Workspace member roles and role-group helpers."""

from __future__ import annotations

from typing import FrozenSet, Tuple


ROLE_ADMIN = "ADMIN"
ROLE_EDITOR = "EDITOR"
ROLE_VIEWER = "VIEWER"

WORKSPACE_ROLES: Tuple[str, ...] = (ROLE_ADMIN, ROLE_EDITOR, ROLE_VIEWER)
REVIEWER_ROLES: FrozenSet[str] = frozenset({ROLE_ADMIN, ROLE_EDITOR})


def normalize_role(role: str | None) -> str:
    return str(role or "").strip().upper()


def is_reviewer(role: str | None) -> bool:
    return normalize_role(role) in REVIEWER_ROLES


def is_admin(role: str | None) -> bool:
    return normalize_role(role) == ROLE_ADMIN
