"""Typed per-channel notification configuration stored in ``notification_settings``."""

from __future__ import annotations

import json
from typing import Any, Dict, Literal, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from src.core.errors import ConfigurationError, ValidationError


CHANNEL_EMAIL = "EMAIL"
CHANNEL_SLACK = "SLACK"
NOTIFICATION_CHANNELS: Tuple[str, ...] = (CHANNEL_EMAIL, CHANNEL_SLACK)

STATUS_PENDING = "PENDING"
STATUS_SENT = "SENT"
STATUS_FAILED = "FAILED"


class EmailNotificationConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["EMAIL"] = CHANNEL_EMAIL
    editor_alerts: bool = True
    manager_alerts: bool = True
    digest_hour: int = Field(default=8, ge=0, le=23)


class SlackNotificationConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: Literal["SLACK"] = CHANNEL_SLACK
    webhook_url: str = ""
    mention_role: str = Field(default="here", max_length=50)

    @field_validator("webhook_url", mode="before")
    @classmethod
    def _normalize_webhook_url(cls, value: Any) -> str:
        normalized = str(value or "").strip()
        if normalized and not normalized.startswith(("https://", "http://")):
            raise ValueError("webhook_url must be an http(s) URL")
        return normalized

    @field_validator("mention_role", mode="before")
    @classmethod
    def _normalize_mention_role(cls, value: Any) -> str:
        return str(value or "").strip().lstrip("@")


NotificationConfig = Union[EmailNotificationConfig, SlackNotificationConfig]

_CONFIG_TYPES: Dict[str, Type[BaseModel]] = {
    CHANNEL_EMAIL: EmailNotificationConfig,
    CHANNEL_SLACK: SlackNotificationConfig,
}


def _config_type(channel: str) -> Type[BaseModel]:
    try:
        return _CONFIG_TYPES[channel]
    except KeyError as exc:
        raise ValidationError.for_field("channel", f"Unsupported notification channel: {channel}") from exc


def default_config(channel: str) -> NotificationConfig:
    return _config_type(channel)()  # type: ignore[return-value]


def parse_stored_config(channel: str, raw_json: str | None) -> NotificationConfig:
    """Load a persisted config, filling defaults for keys that were never set."""

    try:
        raw = json.loads(raw_json or "{}")
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Stored {channel} notification settings are not valid JSON.") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Stored {channel} notification settings must be an object.")
    raw.pop("kind", None)
    try:
        return _config_type(channel).model_validate(raw)  # type: ignore[return-value]
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Stored {channel} notification settings are invalid.") from exc


def merge_config(current: NotificationConfig, updates: Dict[str, Any]) -> NotificationConfig:
    """Apply caller-supplied updates, validating them against the channel schema."""

    merged = current.model_dump()
    merged.update({key: value for key, value in updates.items() if value is not None})
    try:
        return type(current).model_validate(merged)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc) from exc


def dump_config(config: NotificationConfig) -> str:
    payload = config.model_dump(exclude={"kind"})
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True)
