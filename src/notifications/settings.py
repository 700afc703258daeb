"""Workspace notification settings: seeding defaults, reading and updating."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.notifications.config import (
    CHANNEL_EMAIL,
    CHANNEL_SLACK,
    NOTIFICATION_CHANNELS,
    EmailNotificationConfig,
    SlackNotificationConfig,
    default_config,
    dump_config,
    merge_config,
    parse_stored_config,
)
from src.storage.models import NotificationSetting
from src.storage.tenant import require_tenant


@dataclass(frozen=True)
class NotificationSettings:
    email: EmailNotificationConfig
    slack: SlackNotificationConfig


def ensure_notification_defaults(session: Session) -> Dict[str, NotificationSetting]:
    """Seed one row per channel for the bound workspace; existing rows are left alone."""

    context = require_tenant(session)
    rows = {
        row.channel: row
        for row in session.scalars(
            select(NotificationSetting).where(NotificationSetting.workspace_id == context.workspace_id)
        ).all()
    }
    for channel in NOTIFICATION_CHANNELS:
        if channel in rows:
            continue
        row = NotificationSetting(
            workspace_id=context.workspace_id,
            channel=channel,
            config_json=dump_config(default_config(channel)),
        )
        session.add(row)
        rows[channel] = row
    session.flush()
    return rows


def get_notification_settings(session: Session) -> NotificationSettings:
    rows = ensure_notification_defaults(session)
    return NotificationSettings(
        email=parse_stored_config(CHANNEL_EMAIL, rows[CHANNEL_EMAIL].config_json),  # type: ignore[arg-type]
        slack=parse_stored_config(CHANNEL_SLACK, rows[CHANNEL_SLACK].config_json),  # type: ignore[arg-type]
    )


def get_slack_config(session: Session) -> SlackNotificationConfig:
    return get_notification_settings(session).slack


def update_notification_settings(
    session: Session,
    *,
    email: Dict[str, Any] | None = None,
    slack: Dict[str, Any] | None = None,
) -> NotificationSettings:
    rows = ensure_notification_defaults(session)
    current = get_notification_settings(session)
    now = datetime.now(timezone.utc)

    email_config = merge_config(current.email, email or {})
    slack_config = merge_config(current.slack, slack or {})

    rows[CHANNEL_EMAIL].config_json = dump_config(email_config)
    rows[CHANNEL_EMAIL].updated_at = now
    rows[CHANNEL_SLACK].config_json = dump_config(slack_config)
    rows[CHANNEL_SLACK].updated_at = now
    session.flush()

    return NotificationSettings(email=email_config, slack=slack_config)  # type: ignore[arg-type]
