from __future__ import annotations

import json

import pytest
from sqlalchemy import select

import src.approvals.service as approval_service
from src.approvals.service import Actor, ApprovalWorkflow, summarize_queue
from src.core.errors import AuthorizationError, InvalidTransition, NotFoundError, PreconditionFailed, ValidationError
from src.core.metrics import render_prometheus_metrics
from src.storage.models import ApprovalEvent, ApprovalRequest, ContentItem, WorkflowNotification
from src.storage.tenant import tenant_transaction
from tests.conftest import APP_BASE_URL, add_content_item, seed_workspace


def _create_request(session, workflow, seeded, *, auto_submit: bool = False, manager: bool = True):
    result = workflow.create_or_update_request(
        session,
        seeded.context(seeded.requester_id),
        actor=seeded.requester,
        content_item_id=seeded.content_item_id,
        editor_reviewer_id=seeded.editor_id,
        manager_reviewer_id=seeded.admin_id if manager else None,
        auto_submit=auto_submit,
    )
    return result.request.id


def _transition(session, workflow, seeded, request_id, intent, actor: Actor, reason=None):
    return workflow.transition(
        session,
        seeded.context(actor.id),
        request_id=request_id,
        intent=intent,
        actor=actor,
        rejection_reason=reason,
    )


def _to_manager_review(session, workflow, seeded) -> str:
    request_id = _create_request(session, workflow, seeded)
    _transition(session, workflow, seeded, request_id, "submit", seeded.requester)
    _transition(session, workflow, seeded, request_id, "advance", seeded.editor)
    return request_id


def _snapshot(session, seeded, request_id):
    with tenant_transaction(session, seeded.context()):
        request = session.scalar(select(ApprovalRequest).where(ApprovalRequest.id == request_id))
        content = session.scalar(select(ContentItem).where(ContentItem.id == request.content_item_id))
        events = session.scalars(
            select(ApprovalEvent)
            .where(ApprovalEvent.approval_request_id == request_id)
            .order_by(ApprovalEvent.sequence.asc())
        ).all()
        notifications = session.scalars(
            select(WorkflowNotification)
            .where(WorkflowNotification.approval_request_id == request_id)
            .order_by(WorkflowNotification.created_at.asc())
        ).all()
        return request, content, list(events), list(notifications)


def test_submit_moves_request_to_editor_review_and_notifies_editor(session, workflow, seeded, fake_email) -> None:
    request_id = _create_request(session, workflow, seeded)

    result = _transition(session, workflow, seeded, request_id, "submit", seeded.requester)

    request, content, events, notifications = _snapshot(session, seeded, request_id)
    assert result.previous_state == "DRAFT"
    assert request.state == "EDITOR_REVIEW"
    assert request.submitted_at is not None
    assert content.status == "IN_REVIEW"
    assert [event.type for event in events] == ["SUBMITTED"]

    assert sorted(row.channel for row in notifications) == ["EMAIL", "SLACK"]
    email_row = next(row for row in notifications if row.channel == "EMAIL")
    slack_row = next(row for row in notifications if row.channel == "SLACK")
    assert email_row.recipient_id == seeded.editor_id
    assert email_row.status == "SENT"
    email_payload = json.loads(email_row.payload_json)
    assert email_payload["subject"] == "New content awaiting Editor review: Spring launch announcement"
    assert email_payload["body"] == "Wren Writer submitted content for your review."
    assert email_payload["action_url"] == f"{APP_BASE_URL}/app/approvals?request={request_id}"
    assert "Eli Editor" in json.loads(slack_row.payload_json)["body"]

    # No webhook configured: the chat row fails on its own without touching the email.
    assert slack_row.status == "FAILED"
    assert slack_row.error == "Slack webhook URL missing"
    assert fake_email.sent[0]["to"] == [seeded.emails["editor"]]


def test_submit_without_editor_reviewer_sends_nothing(session, workflow, seeded) -> None:
    result = workflow.create_or_update_request(
        session,
        seeded.context(seeded.requester_id),
        actor=seeded.requester,
        content_item_id=seeded.content_item_id,
    )
    transition = _transition(session, workflow, seeded, result.request.id, "submit", seeded.requester)

    assert transition.notifications == []
    _, _, _, notifications = _snapshot(session, seeded, result.request.id)
    assert notifications == []


def test_viewer_cannot_submit(session, workflow, seeded) -> None:
    request_id = _create_request(session, workflow, seeded)

    with pytest.raises(AuthorizationError, match="Viewers cannot submit approvals."):
        _transition(session, workflow, seeded, request_id, "submit", seeded.viewer)

    request, content, events, _ = _snapshot(session, seeded, request_id)
    assert request.state == "DRAFT"
    assert content.status == "READY"
    assert events == []


def test_editor_advances_to_manager_review_and_notifies_manager(session, workflow, seeded, fake_email) -> None:
    request_id = _to_manager_review(session, workflow, seeded)

    request, content, events, notifications = _snapshot(session, seeded, request_id)
    assert request.state == "MANAGER_REVIEW"
    assert request.editor_reviewed_at is not None
    assert content.status == "IN_REVIEW"
    assert [event.type for event in events] == ["SUBMITTED", "MOVED_TO_MANAGER"]
    manager_rows = [row for row in notifications if row.recipient_id == seeded.admin_id]
    assert len(manager_rows) == 1
    assert json.loads(manager_rows[0].payload_json)["subject"] == "Manager review needed - Spring launch announcement"
    assert fake_email.sent[-1]["to"] == [seeded.emails["admin"]]


def test_advance_requires_manager_reviewer(session, workflow, seeded) -> None:
    request_id = _create_request(session, workflow, seeded, manager=False)
    _transition(session, workflow, seeded, request_id, "submit", seeded.requester)

    with pytest.raises(PreconditionFailed) as exc_info:
        _transition(session, workflow, seeded, request_id, "advance", seeded.editor)

    assert exc_info.value.reason == "missing manager reviewer"
    assert exc_info.value.message == "Assign a manager reviewer before advancing."
    request, _, events, _ = _snapshot(session, seeded, request_id)
    assert request.state == "EDITOR_REVIEW"
    assert len(events) == 1


def test_editor_cannot_finalize_approval(session, workflow, seeded) -> None:
    request_id = _to_manager_review(session, workflow, seeded)
    _, _, events_before, notifications_before = _snapshot(session, seeded, request_id)

    with pytest.raises(AuthorizationError, match="Only Admins can finalize approvals."):
        _transition(session, workflow, seeded, request_id, "advance", seeded.editor)

    request, _, events_after, notifications_after = _snapshot(session, seeded, request_id)
    assert request.state == "MANAGER_REVIEW"
    assert len(events_after) == len(events_before)
    assert len(notifications_after) == len(notifications_before)


def test_admin_approval_marks_content_approved_and_notifies_requester(session, workflow, seeded, fake_email) -> None:
    request_id = _to_manager_review(session, workflow, seeded)

    _transition(session, workflow, seeded, request_id, "advance", seeded.admin)

    request, content, events, _ = _snapshot(session, seeded, request_id)
    assert request.state == "APPROVED"
    assert request.approved_at is not None
    assert request.manager_reviewed_at is not None
    assert content.status == "APPROVED"
    assert events[-1].type == "APPROVED"
    assert fake_email.sent[-1]["subject"] == "Approved for publishing - Spring launch announcement"
    assert fake_email.sent[-1]["to"] == [seeded.emails["requester"]]


def test_approved_request_cannot_advance_further(session, workflow, seeded) -> None:
    request_id = _to_manager_review(session, workflow, seeded)
    _transition(session, workflow, seeded, request_id, "advance", seeded.admin)

    with pytest.raises(InvalidTransition) as exc_info:
        _transition(session, workflow, seeded, request_id, "advance", seeded.admin)

    assert exc_info.value.state == "APPROVED"
    assert exc_info.value.intent == "advance"


def test_reject_stores_reason_and_emails_requester(session, workflow, seeded, fake_email) -> None:
    request_id = _create_request(session, workflow, seeded)
    _transition(session, workflow, seeded, request_id, "submit", seeded.requester)
    sent_before = len(fake_email.sent)

    _transition(session, workflow, seeded, request_id, "reject", seeded.admin, reason="Needs more detail")

    request, content, events, notifications = _snapshot(session, seeded, request_id)
    assert request.state == "REJECTED"
    assert request.rejection_reason == "Needs more detail"
    assert content.status == "READY"
    assert events[-1].type == "REJECTED"
    assert events[-1].comment == "Needs more detail"

    requester_rows = [row for row in notifications if row.recipient_id == seeded.requester_id]
    assert len(requester_rows) == 1
    assert requester_rows[0].channel == "EMAIL"
    assert json.loads(requester_rows[0].payload_json)["body"] == "Needs more detail"
    assert len(fake_email.sent) == sent_before + 1


@pytest.mark.parametrize("reason", [None, "", "   "])
def test_reject_requires_reason(session, workflow, seeded, reason) -> None:
    request_id = _create_request(session, workflow, seeded)
    _transition(session, workflow, seeded, request_id, "submit", seeded.requester)

    with pytest.raises(ValidationError) as exc_info:
        _transition(session, workflow, seeded, request_id, "reject", seeded.editor, reason=reason)

    assert exc_info.value.field_errors == {"rejection_reason": ["Provide a rejection reason."]}
    request, _, _, _ = _snapshot(session, seeded, request_id)
    assert request.state == "EDITOR_REVIEW"


def test_viewer_cannot_reject(session, workflow, seeded) -> None:
    request_id = _create_request(session, workflow, seeded)
    _transition(session, workflow, seeded, request_id, "submit", seeded.requester)

    with pytest.raises(AuthorizationError, match="Only Editors or Admins can reject requests."):
        _transition(session, workflow, seeded, request_id, "reject", seeded.viewer, reason="no")


def test_reject_draft_is_invalid(session, workflow, seeded) -> None:
    request_id = _create_request(session, workflow, seeded)

    with pytest.raises(InvalidTransition, match="Only in-review items can be rejected."):
        _transition(session, workflow, seeded, request_id, "reject", seeded.admin, reason="Too early")


def test_reopen_returns_to_editor_review_without_notifications(session, workflow, seeded, fake_email, fake_chat) -> None:
    request_id = _create_request(session, workflow, seeded)
    _transition(session, workflow, seeded, request_id, "submit", seeded.requester)
    _transition(session, workflow, seeded, request_id, "reject", seeded.admin, reason="Needs more detail")
    request_before, _, _, notifications_before = _snapshot(session, seeded, request_id)
    emails_before = len(fake_email.sent)

    result = _transition(session, workflow, seeded, request_id, "reopen", seeded.editor)

    request, content, events, notifications = _snapshot(session, seeded, request_id)
    assert result.notifications == []
    assert request.state == "EDITOR_REVIEW"
    assert request.rejection_reason is None
    assert request.submitted_at is not None
    assert request.submitted_at >= request_before.submitted_at
    assert content.status == "IN_REVIEW"
    assert [event.type for event in events].count("MOVED_TO_EDITOR") == 1
    assert events[-1].type == "MOVED_TO_EDITOR"
    assert events[-1].comment == "Reopened after changes."
    assert len(notifications) == len(notifications_before)
    assert len(fake_email.sent) == emails_before
    assert fake_chat.posts == []


def test_reopen_requires_rejected_state(session, workflow, seeded) -> None:
    request_id = _create_request(session, workflow, seeded)

    with pytest.raises(InvalidTransition, match="Only rejected requests can be reopened."):
        _transition(session, workflow, seeded, request_id, "reopen", seeded.editor)


def test_unknown_intent_is_validation_error(session, workflow, seeded) -> None:
    request_id = _create_request(session, workflow, seeded)

    with pytest.raises(ValidationError):
        _transition(session, workflow, seeded, request_id, "publish", seeded.admin)


def test_actor_must_match_tenant_context(session, workflow, seeded) -> None:
    request_id = _create_request(session, workflow, seeded)

    with pytest.raises(AuthorizationError):
        workflow.transition(
            session,
            seeded.context(seeded.viewer_id),
            request_id=request_id,
            intent="submit",
            actor=seeded.requester,
        )


def test_delivery_failures_do_not_undo_transition(session, workflow, seeded, fake_email) -> None:
    fake_email.fail_with = "email_provider_timeout"
    request_id = _create_request(session, workflow, seeded)

    result = _transition(session, workflow, seeded, request_id, "submit", seeded.requester)

    assert {outcome.status for outcome in result.notifications} == {"FAILED"}
    request, _, _, notifications = _snapshot(session, seeded, request_id)
    assert request.state == "EDITOR_REVIEW"
    email_row = next(row for row in notifications if row.channel == "EMAIL")
    assert email_row.status == "FAILED"
    assert email_row.error == "email_provider_timeout"


def test_create_or_update_is_idempotent_per_content_item(session, workflow, seeded) -> None:
    first = workflow.create_or_update_request(
        session,
        seeded.context(seeded.requester_id),
        actor=seeded.requester,
        content_item_id=seeded.content_item_id,
        editor_reviewer_id=seeded.editor_id,
    )
    second = workflow.create_or_update_request(
        session,
        seeded.context(seeded.requester_id),
        actor=seeded.requester,
        content_item_id=seeded.content_item_id,
        manager_reviewer_id=seeded.admin_id,
        note="Please check the CTA copy.",
    )

    assert first.created is True
    assert second.created is False
    assert second.request.id == first.request.id
    request, _, events, _ = _snapshot(session, seeded, first.request.id)
    assert request.editor_reviewer_id == seeded.editor_id
    assert request.manager_reviewer_id == seeded.admin_id
    assert [(event.type, event.comment) for event in events] == [("COMMENT", "Please check the CTA copy.")]
    with tenant_transaction(session, seeded.context()):
        count = len(session.scalars(select(ApprovalRequest)).all())
    assert count == 1


def test_create_with_auto_submit_runs_submit(session, workflow, seeded) -> None:
    result = workflow.create_or_update_request(
        session,
        seeded.context(seeded.requester_id),
        actor=seeded.requester,
        content_item_id=seeded.content_item_id,
        editor_reviewer_id=seeded.editor_id,
        note="Ready when you are.",
        auto_submit=True,
    )

    assert result.transition is not None
    assert result.request.state == "EDITOR_REVIEW"
    _, content, events, _ = _snapshot(session, seeded, result.request.id)
    assert content.status == "IN_REVIEW"
    assert [event.type for event in events] == ["COMMENT", "SUBMITTED"]


def test_create_rejects_unknown_content_and_non_member_reviewers(session, workflow, seeded, session_factory) -> None:
    with pytest.raises(NotFoundError, match="Content not found in this workspace."):
        workflow.create_or_update_request(
            session,
            seeded.context(seeded.requester_id),
            actor=seeded.requester,
            content_item_id="missing-content",
        )

    other = seed_workspace(session_factory)
    with pytest.raises(ValidationError) as exc_info:
        workflow.create_or_update_request(
            session,
            seeded.context(seeded.requester_id),
            actor=seeded.requester,
            content_item_id=seeded.content_item_id,
            editor_reviewer_id=other.editor_id,
        )
    assert "editor_reviewer_id" in exc_info.value.field_errors


def test_assign_reviewers_replaces_and_clears_slots(session, workflow, seeded) -> None:
    request_id = _create_request(session, workflow, seeded)

    request = workflow.assign_reviewers(
        session,
        seeded.context(seeded.viewer_id),
        actor=seeded.viewer,
        request_id=request_id,
        editor_reviewer_id=seeded.admin_id,
        manager_reviewer_id=None,
    )

    assert request.editor_reviewer_id == seeded.admin_id
    assert request.manager_reviewer_id is None


def test_add_comment_appends_event_with_length_limits(session, workflow, seeded) -> None:
    request_id = _create_request(session, workflow, seeded)

    event = workflow.add_comment(
        session,
        seeded.context(seeded.viewer_id),
        actor=seeded.viewer,
        request_id=request_id,
        comment="  Looks good to me.  ",
    )
    assert event.type == "COMMENT"
    assert event.comment == "Looks good to me."
    assert event.sequence == 1

    with pytest.raises(ValidationError):
        workflow.add_comment(
            session,
            seeded.context(seeded.viewer_id),
            actor=seeded.viewer,
            request_id=request_id,
            comment="ok",
        )


def test_timeline_is_ordered_and_replays_cleanly(session, workflow, seeded) -> None:
    request_id = _create_request(session, workflow, seeded)
    _transition(session, workflow, seeded, request_id, "submit", seeded.requester)
    workflow.add_comment(
        session,
        seeded.context(seeded.editor_id),
        actor=seeded.editor,
        request_id=request_id,
        comment="Tighten the intro.",
    )
    _transition(session, workflow, seeded, request_id, "reject", seeded.editor, reason="Intro too long")
    _transition(session, workflow, seeded, request_id, "reopen", seeded.requester)
    _transition(session, workflow, seeded, request_id, "advance", seeded.editor)
    _transition(session, workflow, seeded, request_id, "advance", seeded.admin)

    timeline = workflow.list_timeline(session, seeded.context(), request_id)

    assert [event.type for event in timeline] == [
        "SUBMITTED",
        "COMMENT",
        "REJECTED",
        "MOVED_TO_EDITOR",
        "MOVED_TO_MANAGER",
        "APPROVED",
    ]
    assert [event.sequence for event in timeline] == [1, 2, 3, 4, 5, 6]
    assert workflow.verify_event_log(session, seeded.context(), request_id) is None


def test_queue_summary_counts_states(session, workflow, seeded, session_factory) -> None:
    approved_id = _to_manager_review(session, workflow, seeded)
    _transition(session, workflow, seeded, approved_id, "advance", seeded.admin)

    second_content = add_content_item(session_factory, seeded, title="Second post")
    second = workflow.create_or_update_request(
        session,
        seeded.context(seeded.requester_id),
        actor=seeded.requester,
        content_item_id=second_content,
        editor_reviewer_id=seeded.editor_id,
        auto_submit=True,
    )
    third_content = add_content_item(session_factory, seeded, title="Third post")
    third = workflow.create_or_update_request(
        session,
        seeded.context(seeded.requester_id),
        actor=seeded.requester,
        content_item_id=third_content,
        editor_reviewer_id=seeded.editor_id,
        auto_submit=True,
    )
    _transition(session, workflow, seeded, third.request.id, "reject", seeded.editor, reason="Off brand")

    requests = workflow.list_queue(session, seeded.context())
    summary = summarize_queue(requests)

    assert {request.id for request in requests} == {approved_id, second.request.id, third.request.id}
    assert summary.total_open == 2
    assert summary.pending_editor == 1
    assert summary.pending_manager == 0
    assert summary.approved_awaiting_publish == 1
    assert summary.rejected == 1


def test_transition_metrics_are_recorded(session, workflow, seeded) -> None:
    request_id = _create_request(session, workflow, seeded)
    _transition(session, workflow, seeded, request_id, "submit", seeded.requester)

    body = render_prometheus_metrics(app_name="contentos_workflow", app_version="0.1.0", env="test")
    assert 'contentos_approval_transitions_total{intent="submit",to_state="EDITOR_REVIEW"} 1' in body
    assert 'contentos_workflow_notifications_total{channel="EMAIL",status="SENT"} 1' in body
    assert 'contentos_workflow_notifications_total{channel="SLACK",status="FAILED"} 1' in body


def test_concurrent_transition_on_same_request_is_rejected(session, session_factory, seeded, workflow, monkeypatch) -> None:
    request_id = _create_request(session, workflow, seeded)
    load_request = ApprovalWorkflow._load_request
    competitor = session_factory()
    raced = []

    def load_then_race(db, request_id, **kwargs):
        request = load_request(db, request_id, **kwargs)
        if not raced:
            raced.append(request.state)
            _transition(competitor, workflow, seeded, request_id, "submit", seeded.requester)
        return request

    monkeypatch.setattr(ApprovalWorkflow, "_load_request", staticmethod(load_then_race))
    try:
        with pytest.raises(InvalidTransition, match="changed while this action was running"):
            _transition(session, workflow, seeded, request_id, "submit", seeded.requester)
    finally:
        competitor.close()

    assert raced == ["DRAFT"]
    request, _, events, _ = _snapshot(session, seeded, request_id)
    assert request.state == "EDITOR_REVIEW"
    assert [event.type for event in events] == ["SUBMITTED"]
    assert workflow.verify_event_log(session, seeded.context(), request_id) is None


def test_concurrent_comment_with_same_sequence_is_rejected(session, session_factory, seeded, workflow, monkeypatch) -> None:
    request_id = _create_request(session, workflow, seeded)
    utcnow = approval_service._utcnow
    competitor = session_factory()
    raced = []

    def now_after_competing_comment():
        if not raced:
            raced.append(True)
            workflow.add_comment(
                competitor,
                seeded.context(seeded.viewer_id),
                actor=seeded.viewer,
                request_id=request_id,
                comment="Looks good from here.",
            )
        return utcnow()

    monkeypatch.setattr(approval_service, "_utcnow", now_after_competing_comment)
    try:
        with pytest.raises(PreconditionFailed, match="changed while this action was running"):
            workflow.add_comment(
                session,
                seeded.context(seeded.editor_id),
                actor=seeded.editor,
                request_id=request_id,
                comment="Tighten the intro.",
            )
    finally:
        competitor.close()

    _, _, events, _ = _snapshot(session, seeded, request_id)
    assert [(event.sequence, event.comment) for event in events] == [(1, "Looks good from here.")]
