"""Pydantic schemas for workspace notification settings."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class EmailSettingsUpdate(BaseModel):
    editor_alerts: Optional[bool] = None
    manager_alerts: Optional[bool] = None
    digest_hour: Optional[int] = Field(default=None, ge=0, le=23)


class SlackSettingsUpdate(BaseModel):
    webhook_url: Optional[str] = Field(default=None, max_length=500)
    mention_role: Optional[str] = Field(default=None, max_length=50)


class NotificationSettingsUpdateRequest(BaseModel):
    email: EmailSettingsUpdate = Field(default_factory=EmailSettingsUpdate)
    slack: SlackSettingsUpdate = Field(default_factory=SlackSettingsUpdate)


class EmailSettingsResponse(BaseModel):
    editor_alerts: bool
    manager_alerts: bool
    digest_hour: int


class SlackSettingsResponse(BaseModel):
    webhook_configured: bool
    mention_role: str


class NotificationSettingsResponse(BaseModel):
    email: EmailSettingsResponse
    slack: SlackSettingsResponse
