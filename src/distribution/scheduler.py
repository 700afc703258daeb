"""Distribution job scheduling: create or reschedule the single active job per content item."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.core.config import get_settings
from src.core.errors import NotFoundError, PreconditionFailed, ValidationError
from src.core.logger import get_logger
from src.core.metrics import record_distribution_job
from src.distribution.channels import (
    CHANNEL_DEFINITIONS,
    DISTRIBUTION_CHANNELS,
    JOB_STATUS_QUEUED,
    JOB_STATUS_SCHEDULED,
    JOB_STATUS_SENT,
    MODE_IMMEDIATE,
    MODE_SCHEDULED,
    SCHEDULE_MODES,
    UPCOMING_JOB_STATUSES,
    normalize_channel,
)
from src.distribution.guard import assert_schedulable, build_payload, job_already_active
from src.storage.models import ContentItem, DistributionJob, DistributionProfile
from src.storage.tenant import TenantContext, tenant_transaction


logger = get_logger("contentos.distribution")

ACTIVE_JOB_INDEX_NAME = "uq_distribution_jobs_active_content_item"
SIMULATED_PUBLISH_MESSAGE = "Simulated publish"


class JobPayloadFields(BaseModel):
    """Caller-supplied payload overrides."""

    model_config = ConfigDict(extra="forbid")

    headline: Optional[str] = Field(default=None, max_length=200)
    caption: Optional[str] = Field(default=None, max_length=2000)
    link_url: Optional[str] = Field(default=None, max_length=2048)
    media_url: Optional[str] = Field(default=None, max_length=2048)
    cta_label: Optional[str] = Field(default=None, max_length=60)

    @field_validator("link_url", "media_url")
    @classmethod
    def _require_http_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return value
        if not value.strip().startswith(("https://", "http://")):
            raise ValueError("must be an http(s) URL")
        return value


@dataclass(frozen=True)
class ScheduleCommand:
    content_item_id: str
    channel: str
    mode: str
    job_id: Optional[str] = None
    approval_request_id: Optional[str] = None
    scheduled_for: Optional[Union[str, datetime]] = None
    headline: Optional[str] = None
    caption: Optional[str] = None
    link_url: Optional[str] = None
    media_url: Optional[str] = None
    cta_label: Optional[str] = None

    def payload_overrides(self) -> Dict[str, Optional[str]]:
        return {
            "headline": self.headline,
            "caption": self.caption,
            "link_url": self.link_url,
            "media_url": self.media_url,
            "cta_label": self.cta_label,
        }


@dataclass(frozen=True)
class ScheduleResult:
    job: DistributionJob
    created: bool
    message: str


def _json_dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def _normalize_dt(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_schedule_time(
    value: Optional[Union[str, datetime]],
    *,
    now: Optional[datetime] = None,
    clock_skew_seconds: Optional[int] = None,
) -> datetime:
    """Parse an ISO-8601 instant that must be now or later.

    Naive values are read as UTC. "Now" carries a clock-skew grace of
    ``clock_skew_seconds`` (``SCHEDULE_CLOCK_SKEW_SECONDS``, 60 by default):
    an instant up to that many seconds behind ``now`` counts as present and is
    accepted. Anything earlier raises ``ValidationError`` on ``scheduled_for``
    with "Schedule date must be in the future." Missing or unparseable values
    raise ``ValidationError`` on the same field.
    """

    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError.for_field("scheduled_for", "Provide a valid schedule date.")

    if isinstance(value, datetime):
        parsed = value
    else:
        raw = value.strip()
        if raw.endswith(("Z", "z")):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError as exc:
            raise ValidationError.for_field("scheduled_for", "Provide a valid schedule date.") from exc

    parsed = _normalize_dt(parsed)
    now = _normalize_dt(now or datetime.now(timezone.utc))
    skew = clock_skew_seconds if clock_skew_seconds is not None else get_settings().schedule_clock_skew_seconds
    if parsed < now - timedelta(seconds=skew):
        raise ValidationError.for_field("scheduled_for", "Schedule date must be in the future.")
    return parsed


def _validate_command(command: ScheduleCommand) -> tuple[str, str, Dict[str, Any]]:
    channel = normalize_channel(command.channel)
    if channel not in DISTRIBUTION_CHANNELS:
        raise ValidationError.for_field("channel", f"Unsupported distribution channel: {command.channel}")
    mode = str(command.mode or "").strip().upper()
    if mode not in SCHEDULE_MODES:
        raise ValidationError.for_field("mode", f"Unsupported schedule mode: {command.mode}")
    if not command.content_item_id:
        raise ValidationError.for_field("content_item_id", "Content item id is required.")

    try:
        overrides = JobPayloadFields.model_validate(command.payload_overrides())
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc) from exc
    return channel, mode, overrides.model_dump()


def _check_channel_limits(channel: str, payload: Dict[str, Any]) -> None:
    limit = CHANNEL_DEFINITIONS[channel].max_characters
    caption = payload.get("caption")
    if limit is not None and caption and len(caption) > limit:
        raise ValidationError.for_field(
            "caption",
            f"{CHANNEL_DEFINITIONS[channel].label} captions are limited to {limit} characters.",
        )


def _is_active_job_conflict(exc: IntegrityError) -> bool:
    message = str(exc.orig) if exc.orig is not None else str(exc)
    return ACTIVE_JOB_INDEX_NAME in message or "distribution_jobs.content_item_id" in message


def schedule_or_update(session: Session, context: TenantContext, command: ScheduleCommand) -> ScheduleResult:
    """Create or reschedule the distribution job for an approved content item.

    IMMEDIATE jobs are flipped straight to SENT with a simulated publish
    result; SCHEDULED jobs stay SCHEDULED for an external publisher to pick up.
    """

    channel, mode, overrides = _validate_command(command)
    now = datetime.now(timezone.utc)
    if mode == MODE_SCHEDULED:
        scheduled_for = parse_schedule_time(command.scheduled_for, now=now)
    else:
        scheduled_for = now

    try:
        with tenant_transaction(session, context):
            content = session.scalar(select(ContentItem).where(ContentItem.id == command.content_item_id))
            if content is None:
                raise NotFoundError("Content not found in this workspace.")

            profile = session.scalar(select(DistributionProfile).where(DistributionProfile.channel == channel))
            if profile is None:
                raise PreconditionFailed("channel not connected", "Connect this channel before scheduling.")

            job: Optional[DistributionJob] = None
            if command.job_id:
                job = session.scalar(select(DistributionJob).where(DistributionJob.id == command.job_id))
                if job is None:
                    raise NotFoundError("Distribution job not found.")
                if job.content_item_id != content.id:
                    raise ValidationError.for_field("job_id", "Job belongs to a different content item.")

            assert_schedulable(session, content.id, exclude_job_id=job.id if job is not None else None)

            payload = build_payload(content, overrides)
            _check_channel_limits(channel, payload)
            status = JOB_STATUS_QUEUED if mode == MODE_IMMEDIATE else JOB_STATUS_SCHEDULED

            created = job is None
            if job is None:
                job = DistributionJob(
                    workspace_id=context.workspace_id,
                    content_item_id=content.id,
                    created_at=now,
                )
                session.add(job)
            job.approval_request_id = command.approval_request_id
            job.profile_id = profile.id
            job.channel = channel
            job.payload_json = _json_dumps(payload)
            job.scheduled_for = scheduled_for
            job.status = status
            job.updated_at = now
            session.flush()

            if mode == MODE_IMMEDIATE:
                delivered_at = datetime.now(timezone.utc)
                job.status = JOB_STATUS_SENT
                job.last_attempt_at = delivered_at
                job.result_json = _json_dumps(
                    {"message": SIMULATED_PUBLISH_MESSAGE, "delivered_at": delivered_at.isoformat()}
                )
                job.updated_at = delivered_at
                session.flush()
    except IntegrityError as exc:
        if _is_active_job_conflict(exc):
            raise job_already_active() from exc
        raise

    record_distribution_job(mode=mode, status=job.status)
    logger.info(
        "distribution_job_saved",
        job_id=job.id,
        content_item_id=job.content_item_id,
        channel=channel,
        mode=mode,
        status=job.status,
        created=created,
    )
    message = "Published immediately." if mode == MODE_IMMEDIATE else "Scheduled."
    return ScheduleResult(job=job, created=created, message=message)


def list_upcoming_jobs(session: Session, context: TenantContext, *, limit: int = 50) -> List[DistributionJob]:
    with tenant_transaction(session, context):
        jobs = list(
            session.scalars(
                select(DistributionJob)
                .where(DistributionJob.status.in_(UPCOMING_JOB_STATUSES))
                .order_by(DistributionJob.scheduled_for.asc(), DistributionJob.created_at.asc())
                .limit(limit)
            ).all()
        )
        for job in jobs:
            _ = job.content_item
        return jobs


def load_job_payload(job: DistributionJob) -> Dict[str, Any]:
    return json.loads(job.payload_json or "{}")


def load_job_result(job: DistributionJob) -> Optional[Dict[str, Any]]:
    if not job.result_json:
        return None
    return json.loads(job.result_json)
