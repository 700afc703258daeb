"""Pydantic schemas for distribution profile and job endpoints."""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ProfileUpsertRequest(BaseModel):
    channel: str = Field(min_length=3, max_length=32)
    label: str = Field(min_length=2, max_length=60)
    access_token: Optional[str] = Field(default=None, max_length=256)
    external_id: Optional[str] = Field(default=None, max_length=120)
    space_id: Optional[str] = Field(default=None, max_length=120)


class ProfileResponse(BaseModel):
    id: str
    channel: str
    label: str
    has_token: bool
    external_id: str
    space_id: str
    updated_at: Optional[str] = None


class ChannelDefinitionResponse(BaseModel):
    channel: str
    label: str
    description: str
    max_characters: Optional[int] = None
    media_hint: Optional[str] = None
    connected: bool = False


class ScheduleJobRequest(BaseModel):
    content_item_id: str = Field(min_length=1, max_length=36)
    channel: str = Field(min_length=3, max_length=32)
    mode: Literal["IMMEDIATE", "SCHEDULED"]
    job_id: Optional[str] = Field(default=None, max_length=36)
    approval_request_id: Optional[str] = Field(default=None, max_length=36)
    scheduled_for: Optional[str] = Field(default=None, max_length=64)
    headline: Optional[str] = Field(default=None, max_length=200)
    caption: Optional[str] = Field(default=None, max_length=2000)
    link_url: Optional[str] = Field(default=None, max_length=2048)
    media_url: Optional[str] = Field(default=None, max_length=2048)
    cta_label: Optional[str] = Field(default=None, max_length=60)


class JobResponse(BaseModel):
    id: str
    content_item_id: str
    content_title: Optional[str] = None
    approval_request_id: Optional[str] = None
    channel: str
    status: str
    scheduled_for: Optional[str] = None
    last_attempt_at: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    created_at: str


class ScheduleJobResponse(BaseModel):
    job: JobResponse
    created: bool
    message: str


class UpcomingJobsResponse(BaseModel):
    items: List[JobResponse]
