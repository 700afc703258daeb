"""Approval workflow API routes."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from src.approvals.service import Actor, ApprovalWorkflow, TransitionResult, summarize_queue
from src.approvals.states import legal_intents
from src.auth.dependencies import require_tenant_context, require_workspace_role
from src.auth.jwt import AuthContext
from src.schemas.approvals import (
    ApprovalCommentRequest,
    ApprovalCreateRequest,
    ApprovalDetailResponse,
    ApprovalEventResponse,
    ApprovalQueueResponse,
    ApprovalRequestResponse,
    ApprovalSummaryResponse,
    ApprovalTransitionRequest,
    ApprovalTransitionResponse,
    NotificationOutcomeResponse,
    ReviewerAssignmentRequest,
)
from src.storage.db import get_session
from src.storage.models import ApprovalEvent, ApprovalRequest
from src.storage.tenant import TenantContext, tenant_transaction


router = APIRouter(prefix="/approvals", tags=["approvals"])


def get_approval_workflow() -> ApprovalWorkflow:
    return ApprovalWorkflow()


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if isinstance(value, datetime) else None


def _actor(auth: AuthContext) -> Actor:
    return Actor(id=auth.user_id, role=auth.role)


def _event_response(event: ApprovalEvent) -> ApprovalEventResponse:
    return ApprovalEventResponse(
        id=event.id,
        type=event.type,
        author_id=event.author_id,
        comment=event.comment,
        sequence=event.sequence,
        created_at=_iso(event.created_at) or "",
    )


def _request_response(request: ApprovalRequest) -> ApprovalRequestResponse:
    content = request.content_item
    return ApprovalRequestResponse(
        id=request.id,
        content_item_id=request.content_item_id,
        content_title=content.title,
        content_status=content.status,
        state=request.state,
        requested_by_id=request.requested_by_id,
        editor_reviewer_id=request.editor_reviewer_id,
        manager_reviewer_id=request.manager_reviewer_id,
        rejection_reason=request.rejection_reason,
        submitted_at=_iso(request.submitted_at),
        editor_reviewed_at=_iso(request.editor_reviewed_at),
        manager_reviewed_at=_iso(request.manager_reviewed_at),
        approved_at=_iso(request.approved_at),
        created_at=_iso(request.created_at) or "",
        updated_at=_iso(request.updated_at) or "",
        allowed_intents=list(legal_intents(request.state)),
    )


def _transition_response(result: TransitionResult) -> ApprovalTransitionResponse:
    return ApprovalTransitionResponse(
        request=_request_response(result.request),
        previous_state=result.previous_state,
        event=_event_response(result.event),
        notifications=[
            NotificationOutcomeResponse(
                notification_id=outcome.notification_id,
                channel=outcome.channel,
                status=outcome.status,
                error=outcome.error,
            )
            for outcome in result.notifications
        ],
    )


@router.post("", response_model=ApprovalDetailResponse, status_code=201)
def create_approval_request(
    payload: ApprovalCreateRequest,
    auth: AuthContext = Depends(require_workspace_role()),
    tenant: TenantContext = Depends(require_tenant_context),
    session: Session = Depends(get_session),
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
) -> ApprovalDetailResponse:
    result = workflow.create_or_update_request(
        session,
        tenant,
        actor=_actor(auth),
        content_item_id=payload.content_item_id,
        editor_reviewer_id=payload.editor_reviewer_id,
        manager_reviewer_id=payload.manager_reviewer_id,
        note=payload.note,
        auto_submit=payload.auto_submit,
    )
    events = workflow.list_timeline(session, tenant, result.request.id)
    with tenant_transaction(session, tenant):
        return ApprovalDetailResponse(
            **_request_response(result.request).model_dump(),
            events=[_event_response(event) for event in events],
        )


@router.get("", response_model=ApprovalQueueResponse)
def list_approval_queue(
    tenant: TenantContext = Depends(require_tenant_context),
    session: Session = Depends(get_session),
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
) -> ApprovalQueueResponse:
    requests = workflow.list_queue(session, tenant)
    summary = summarize_queue(requests)
    with tenant_transaction(session, tenant):
        items: List[ApprovalRequestResponse] = [_request_response(request) for request in requests]
    return ApprovalQueueResponse(
        summary=ApprovalSummaryResponse(
            total_open=summary.total_open,
            pending_editor=summary.pending_editor,
            pending_manager=summary.pending_manager,
            approved_awaiting_publish=summary.approved_awaiting_publish,
            rejected=summary.rejected,
        ),
        items=items,
    )


@router.get("/{request_id}", response_model=ApprovalDetailResponse)
def get_approval_request(
    request_id: str,
    tenant: TenantContext = Depends(require_tenant_context),
    session: Session = Depends(get_session),
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
) -> ApprovalDetailResponse:
    request = workflow.get_request(session, tenant, request_id)
    events = workflow.list_timeline(session, tenant, request_id)
    with tenant_transaction(session, tenant):
        return ApprovalDetailResponse(
            **_request_response(request).model_dump(),
            events=[_event_response(event) for event in events],
        )


@router.post("/{request_id}/transitions", response_model=ApprovalTransitionResponse)
def transition_approval_request(
    request_id: str,
    payload: ApprovalTransitionRequest,
    auth: AuthContext = Depends(require_workspace_role()),
    tenant: TenantContext = Depends(require_tenant_context),
    session: Session = Depends(get_session),
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
) -> ApprovalTransitionResponse:
    result = workflow.transition(
        session,
        tenant,
        request_id=request_id,
        intent=payload.intent,
        actor=_actor(auth),
        rejection_reason=payload.rejection_reason,
    )
    with tenant_transaction(session, tenant):
        return _transition_response(result)


@router.put("/{request_id}/reviewers", response_model=ApprovalRequestResponse)
def assign_approval_reviewers(
    request_id: str,
    payload: ReviewerAssignmentRequest,
    auth: AuthContext = Depends(require_workspace_role()),
    tenant: TenantContext = Depends(require_tenant_context),
    session: Session = Depends(get_session),
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
) -> ApprovalRequestResponse:
    request = workflow.assign_reviewers(
        session,
        tenant,
        actor=_actor(auth),
        request_id=request_id,
        editor_reviewer_id=payload.editor_reviewer_id,
        manager_reviewer_id=payload.manager_reviewer_id,
    )
    with tenant_transaction(session, tenant):
        return _request_response(request)


@router.post("/{request_id}/comments", response_model=ApprovalEventResponse, status_code=201)
def comment_on_approval_request(
    request_id: str,
    payload: ApprovalCommentRequest,
    auth: AuthContext = Depends(require_workspace_role()),
    tenant: TenantContext = Depends(require_tenant_context),
    session: Session = Depends(get_session),
    workflow: ApprovalWorkflow = Depends(get_approval_workflow),
) -> ApprovalEventResponse:
    event = workflow.add_comment(
        session,
        tenant,
        actor=_actor(auth),
        request_id=request_id,
        comment=payload.comment,
    )
    return _event_response(event)
