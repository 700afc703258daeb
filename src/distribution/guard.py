"""Scheduling preconditions and distribution payload construction."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.approvals.states import STATE_APPROVED
from src.core.errors import PreconditionFailed
from src.distribution.channels import ACTIVE_JOB_STATUSES
from src.storage.models import ApprovalRequest, ContentItem, DistributionJob
from src.storage.tenant import require_tenant


PAYLOAD_FIELDS = ("headline", "caption", "link_url", "media_url", "cta_label")

NOT_APPROVED_MESSAGE = "Content must be fully approved before scheduling distribution."
JOB_ACTIVE_MESSAGE = "A distribution job is already queued for this content."


def job_already_active() -> PreconditionFailed:
    return PreconditionFailed("job already active", JOB_ACTIVE_MESSAGE)


def assert_schedulable(
    session: Session,
    content_item_id: str,
    *,
    exclude_job_id: Optional[str] = None,
) -> None:
    """Check, inside the caller's tenant transaction, that a job may be created.

    ``exclude_job_id`` lets an active job be rescheduled in place without
    tripping over itself.
    """

    context = require_tenant(session)
    approval_state = session.scalar(
        select(ApprovalRequest.state).where(
            ApprovalRequest.workspace_id == context.workspace_id,
            ApprovalRequest.content_item_id == content_item_id,
        )
    )
    if approval_state != STATE_APPROVED:
        raise PreconditionFailed("not approved", NOT_APPROVED_MESSAGE)

    active_query = select(DistributionJob.id).where(
        DistributionJob.workspace_id == context.workspace_id,
        DistributionJob.content_item_id == content_item_id,
        DistributionJob.status.in_(sorted(ACTIVE_JOB_STATUSES)),
    )
    if exclude_job_id is not None:
        active_query = active_query.where(DistributionJob.id != exclude_job_id)
    if session.scalar(active_query.limit(1)) is not None:
        raise job_already_active()


def sanitize(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Drop missing, empty and whitespace-only fields; strip string values."""

    cleaned: Dict[str, Any] = {}
    for key, value in payload.items():
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        elif not str(value).strip():
            continue
        cleaned[key] = value
    return cleaned


def build_payload(content: ContentItem, overrides: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    overrides = sanitize(overrides or {})
    payload: Dict[str, Any] = {
        "headline": overrides.get("headline") or content.ai_headline or content.title,
        "caption": overrides.get("caption") or content.description or content.ai_outline,
    }
    for key in PAYLOAD_FIELDS[2:]:
        payload[key] = overrides.get(key)
    return sanitize(payload)
