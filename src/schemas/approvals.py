"""Pydantic schemas for the approval workflow API."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class ApprovalCreateRequest(BaseModel):
    content_item_id: str = Field(min_length=1, max_length=36)
    editor_reviewer_id: Optional[str] = Field(default=None, max_length=36)
    manager_reviewer_id: Optional[str] = Field(default=None, max_length=36)
    note: Optional[str] = Field(default=None, max_length=1000)
    auto_submit: bool = False


class ApprovalTransitionRequest(BaseModel):
    intent: Literal["submit", "advance", "reject", "reopen"]
    rejection_reason: Optional[str] = Field(default=None, max_length=500)


class ReviewerAssignmentRequest(BaseModel):
    editor_reviewer_id: Optional[str] = Field(default=None, max_length=36)
    manager_reviewer_id: Optional[str] = Field(default=None, max_length=36)


class ApprovalCommentRequest(BaseModel):
    comment: str = Field(min_length=3, max_length=1000)


class ApprovalEventResponse(BaseModel):
    id: str
    type: str
    author_id: str
    comment: Optional[str] = None
    sequence: int
    created_at: str


class NotificationOutcomeResponse(BaseModel):
    notification_id: str
    channel: str
    status: str
    error: Optional[str] = None


class ApprovalRequestResponse(BaseModel):
    id: str
    content_item_id: str
    content_title: str
    content_status: str
    state: str
    requested_by_id: str
    editor_reviewer_id: Optional[str] = None
    manager_reviewer_id: Optional[str] = None
    rejection_reason: Optional[str] = None
    submitted_at: Optional[str] = None
    editor_reviewed_at: Optional[str] = None
    manager_reviewed_at: Optional[str] = None
    approved_at: Optional[str] = None
    created_at: str
    updated_at: str
    allowed_intents: List[str] = Field(default_factory=list)


class ApprovalDetailResponse(ApprovalRequestResponse):
    events: List[ApprovalEventResponse] = Field(default_factory=list)


class ApprovalTransitionResponse(BaseModel):
    request: ApprovalRequestResponse
    previous_state: str
    event: ApprovalEventResponse
    notifications: List[NotificationOutcomeResponse] = Field(default_factory=list)


class ApprovalSummaryResponse(BaseModel):
    total_open: int
    pending_editor: int
    pending_manager: int
    approved_awaiting_publish: int
    rejected: int


class ApprovalQueueResponse(BaseModel):
    summary: ApprovalSummaryResponse
    items: List[ApprovalRequestResponse]
