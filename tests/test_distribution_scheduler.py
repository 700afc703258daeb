from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json

import pytest
from sqlalchemy import select

import src.distribution.scheduler as scheduler
from src.core.errors import NotFoundError, PreconditionFailed, ValidationError
from src.core.metrics import render_prometheus_metrics
from src.distribution.scheduler import (
    ScheduleCommand,
    list_upcoming_jobs,
    load_job_payload,
    load_job_result,
    parse_schedule_time,
    schedule_or_update,
)
from src.storage.models import DistributionJob
from src.storage.tenant import tenant_transaction
from tests.conftest import add_content_item, add_job, approve_content, connect_channel


FUTURE = "2099-01-01T10:00:00Z"


def _schedule(session, seeded, **kwargs):
    values = {"content_item_id": seeded.content_item_id, "channel": "LINKEDIN", "mode": "IMMEDIATE"}
    values.update(kwargs)
    return schedule_or_update(session, seeded.context(seeded.requester_id), ScheduleCommand(**values))


def _jobs(session, seeded):
    with tenant_transaction(session, seeded.context()):
        return list(session.scalars(select(DistributionJob).order_by(DistributionJob.created_at.asc())).all())


def test_immediate_publish_creates_sent_job(session, session_factory, seeded) -> None:
    request_id = approve_content(session_factory, seeded)
    profile_id = connect_channel(session_factory, seeded, "LINKEDIN")

    result = _schedule(session, seeded, approval_request_id=request_id)

    job = result.job
    assert result.created is True
    assert result.message == "Published immediately."
    assert job.status == "SENT"
    assert job.profile_id == profile_id
    assert job.approval_request_id == request_id
    assert job.last_attempt_at is not None
    assert load_job_result(job)["message"] == "Simulated publish"
    assert load_job_result(job)["delivered_at"]
    assert load_job_payload(job) == {
        "headline": "Spring is here: five launches in one week",
        "caption": "Everything shipping this spring.",
    }


def test_second_job_for_same_content_is_rejected_across_channels(session, session_factory, seeded) -> None:
    approve_content(session_factory, seeded)
    linkedin_id = connect_channel(session_factory, seeded, "LINKEDIN")
    connect_channel(session_factory, seeded, "FACEBOOK")
    add_job(session_factory, seeded, profile_id=linkedin_id, channel="LINKEDIN", status="QUEUED")

    with pytest.raises(PreconditionFailed) as exc_info:
        _schedule(session, seeded, channel="FACEBOOK")

    assert exc_info.value.reason == "job already active"
    assert exc_info.value.message == "A distribution job is already queued for this content."
    assert len(_jobs(session, seeded)) == 1


def test_scheduled_job_waits_and_blocks_new_jobs(session, session_factory, seeded) -> None:
    approve_content(session_factory, seeded)
    connect_channel(session_factory, seeded, "LINKEDIN")

    result = _schedule(session, seeded, mode="SCHEDULED", scheduled_for=FUTURE, headline="Launch week")

    assert result.message == "Scheduled."
    assert result.job.status == "SCHEDULED"
    assert result.job.scheduled_for == datetime(2099, 1, 1, 10, 0, tzinfo=timezone.utc)
    assert result.job.result_json is None
    assert load_job_payload(result.job)["headline"] == "Launch week"

    with pytest.raises(PreconditionFailed, match="already queued"):
        _schedule(session, seeded, mode="SCHEDULED", scheduled_for=FUTURE)


def test_reschedule_existing_job_in_place(session, session_factory, seeded) -> None:
    approve_content(session_factory, seeded)
    connect_channel(session_factory, seeded, "LINKEDIN")
    connect_channel(session_factory, seeded, "SUBSTACK")
    first = _schedule(session, seeded, mode="SCHEDULED", scheduled_for=FUTURE)

    second = _schedule(
        session,
        seeded,
        job_id=first.job.id,
        channel="substack",
        mode="SCHEDULED",
        scheduled_for="2099-02-01T08:30:00+02:00",
    )

    assert second.created is False
    assert second.job.id == first.job.id
    assert second.job.channel == "SUBSTACK"
    assert second.job.scheduled_for == datetime(2099, 2, 1, 6, 30, tzinfo=timezone.utc)
    assert len(_jobs(session, seeded)) == 1


def test_reschedule_rejects_job_from_other_content(session, session_factory, seeded) -> None:
    other_content = add_content_item(session_factory, seeded)
    approve_content(session_factory, seeded)
    approve_content(session_factory, seeded, other_content)
    profile_id = connect_channel(session_factory, seeded, "LINKEDIN")
    other_job = add_job(
        session_factory,
        seeded,
        profile_id=profile_id,
        channel="LINKEDIN",
        status="SCHEDULED",
        content_item_id=other_content,
    )

    with pytest.raises(ValidationError) as exc_info:
        _schedule(session, seeded, job_id=other_job)
    assert "job_id" in exc_info.value.field_errors

    with pytest.raises(NotFoundError):
        _schedule(session, seeded, job_id="missing-job")


def test_sent_job_does_not_block_next_publish(session, session_factory, seeded) -> None:
    approve_content(session_factory, seeded)
    connect_channel(session_factory, seeded, "LINKEDIN")

    _schedule(session, seeded)
    again = _schedule(session, seeded)

    assert again.created is True
    assert [job.status for job in _jobs(session, seeded)] == ["SENT", "SENT"]


def test_unapproved_content_cannot_be_scheduled(session, session_factory, seeded) -> None:
    connect_channel(session_factory, seeded, "LINKEDIN")

    with pytest.raises(PreconditionFailed) as exc_info:
        _schedule(session, seeded)

    assert exc_info.value.reason == "not approved"
    assert exc_info.value.message == "Content must be fully approved before scheduling distribution."
    assert _jobs(session, seeded) == []


def test_channel_must_be_connected(session, session_factory, seeded) -> None:
    approve_content(session_factory, seeded)

    with pytest.raises(PreconditionFailed) as exc_info:
        _schedule(session, seeded, channel="REDDIT")

    assert exc_info.value.reason == "channel not connected"
    assert exc_info.value.message == "Connect this channel before scheduling."


def test_unknown_content_is_not_found(session, session_factory, seeded) -> None:
    connect_channel(session_factory, seeded, "LINKEDIN")

    with pytest.raises(NotFoundError, match="Content not found in this workspace."):
        _schedule(session, seeded, content_item_id="missing-content")


@pytest.mark.parametrize(
    ("overrides", "field"),
    [
        ({"channel": "MYSPACE"}, "channel"),
        ({"mode": "LATER"}, "mode"),
        ({"link_url": "ftp://example.com/file"}, "link_url"),
        ({"cta_label": "x" * 61}, "cta_label"),
        ({"mode": "SCHEDULED", "scheduled_for": None}, "scheduled_for"),
    ],
)
def test_invalid_commands_are_rejected_before_storage(session, seeded, overrides, field) -> None:
    with pytest.raises(ValidationError) as exc_info:
        _schedule(session, seeded, **overrides)

    assert field in exc_info.value.field_errors


def test_caption_must_fit_channel_limit(session, session_factory, seeded) -> None:
    content_id = add_content_item(session_factory, seeded, title="Long read", description="word " * 500)
    approve_content(session_factory, seeded, content_id)
    connect_channel(session_factory, seeded, "INSTAGRAM")

    with pytest.raises(ValidationError) as exc_info:
        _schedule(session, seeded, content_item_id=content_id, channel="INSTAGRAM")

    assert exc_info.value.field_errors["caption"] == ["Instagram captions are limited to 2200 characters."]


def test_unique_index_violation_maps_to_job_already_active(session, session_factory, seeded, monkeypatch) -> None:
    approve_content(session_factory, seeded)
    profile_id = connect_channel(session_factory, seeded, "LINKEDIN")
    add_job(session_factory, seeded, profile_id=profile_id, channel="LINKEDIN", status="SCHEDULED")
    # Simulate a concurrent caller that passed the guard before the other insert committed.
    monkeypatch.setattr(scheduler, "assert_schedulable", lambda *args, **kwargs: None)

    with pytest.raises(PreconditionFailed) as exc_info:
        _schedule(session, seeded)

    assert exc_info.value.reason == "job already active"
    assert len(_jobs(session, seeded)) == 1


def test_parse_schedule_time_accepts_small_clock_skew() -> None:
    now = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    parsed = parse_schedule_time("2026-10-19T11:59:30Z", now=now, clock_skew_seconds=60)
    naive = parse_schedule_time(datetime(2026, 10, 20, 9, 0), now=now, clock_skew_seconds=60)

    assert parsed == now - timedelta(seconds=30)
    assert naive == datetime(2026, 10, 20, 9, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    ("value", "message"),
    [
        ("", "Provide a valid schedule date."),
        ("next tuesday", "Provide a valid schedule date."),
        ("2026-10-19T11:57:00Z", "Schedule date must be in the future."),
    ],
)
def test_parse_schedule_time_rejects_invalid_values(value, message) -> None:
    now = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

    with pytest.raises(ValidationError) as exc_info:
        parse_schedule_time(value, now=now, clock_skew_seconds=60)

    assert exc_info.value.field_errors == {"scheduled_for": [message]}


def test_list_upcoming_jobs_returns_waiting_jobs_only(session, session_factory, seeded) -> None:
    approve_content(session_factory, seeded)
    connect_channel(session_factory, seeded, "LINKEDIN")
    _schedule(session, seeded)
    second_content = add_content_item(session_factory, seeded, title="Second launch")
    approve_content(session_factory, seeded, second_content)
    scheduled = _schedule(session, seeded, content_item_id=second_content, mode="SCHEDULED", scheduled_for=FUTURE)

    jobs = list_upcoming_jobs(session, seeded.context())

    assert [job.id for job in jobs] == [scheduled.job.id]
    assert jobs[0].content_item.title == "Second launch"


def test_distribution_metrics_are_recorded(session, session_factory, seeded) -> None:
    approve_content(session_factory, seeded)
    connect_channel(session_factory, seeded, "LINKEDIN")
    _schedule(session, seeded)

    body = render_prometheus_metrics(app_name="contentos_workflow", app_version="0.1.0", env="test")
    assert 'contentos_distribution_jobs_total{mode="IMMEDIATE",status="SENT"} 1' in body


def test_job_payload_is_stored_as_compact_json(session, session_factory, seeded) -> None:
    approve_content(session_factory, seeded)
    connect_channel(session_factory, seeded, "LINKEDIN")

    result = _schedule(session, seeded, link_url=" https://contentos.test/spring ", cta_label="Read more")

    assert json.loads(result.job.payload_json)["link_url"] == "https://contentos.test/spring"
    assert '": "' not in result.job.payload_json
    assert load_job_payload(result.job)["cta_label"] == "Read more"
