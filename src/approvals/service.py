"""Approval workflow engine: role-gated transitions, audit trail and notification fan-out."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from src.approvals.states import (
    EVENT_COMMENT,
    INTENT_ADVANCE,
    INTENT_REJECT,
    INTENT_REOPEN,
    INTENT_SUBMIT,
    REOPEN_COMMENT,
    STATE_APPROVED,
    STATE_DRAFT,
    STATE_EDITOR_REVIEW,
    STATE_MANAGER_REVIEW,
    STATE_REJECTED,
    TRANSITION_INTENTS,
    Edge,
    LogViolation,
    content_status_for,
    find_edge,
    invalid_transition_message,
    replay_event_log,
)
from src.auth.roles import ROLE_ADMIN, ROLE_VIEWER, is_reviewer, normalize_role
from src.core.config import get_settings
from src.core.errors import (
    AuthorizationError,
    InvalidTransition,
    NotFoundError,
    PreconditionFailed,
    ValidationError,
)
from src.core.logger import get_logger
from src.core.metrics import record_approval_transition
from src.notifications.config import CHANNEL_EMAIL, CHANNEL_SLACK
from src.notifications.dispatcher import (
    DeliveryOutcome,
    NotificationDispatcher,
    NotificationPayload,
    NotificationRequest,
)
from src.storage.models import ApprovalEvent, ApprovalRequest, ContentItem, User, WorkspaceUser
from src.storage.tenant import TenantContext, tenant_transaction


logger = get_logger("contentos.approvals")

MAX_REJECTION_REASON_CHARS = 500
MIN_COMMENT_CHARS = 3
MAX_COMMENT_CHARS = 1000
MAX_NOTE_CHARS = 1000
CONCURRENT_CHANGE_MESSAGE = "The approval request changed while this action was running. Reload and try again."
EVENT_SEQUENCE_CONSTRAINT = "uq_approval_events_request_sequence"


@dataclass(frozen=True)
class Actor:
    id: str
    role: str


@dataclass
class TransitionResult:
    request: ApprovalRequest
    previous_state: str
    event: ApprovalEvent
    notifications: List[DeliveryOutcome] = field(default_factory=list)


@dataclass
class RequestWriteResult:
    request: ApprovalRequest
    created: bool
    transition: Optional[TransitionResult] = None


@dataclass(frozen=True)
class ApprovalSummary:
    total_open: int = 0
    pending_editor: int = 0
    pending_manager: int = 0
    approved_awaiting_publish: int = 0
    rejected: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _is_event_sequence_conflict(exc: IntegrityError) -> bool:
    message = str(exc.orig) if exc.orig is not None else str(exc)
    return EVENT_SEQUENCE_CONSTRAINT in message or "approval_events.sequence" in message


def _concurrent_change(state: str, intent: Optional[str]) -> Exception:
    if intent is None:
        return PreconditionFailed("request changed", CONCURRENT_CHANGE_MESSAGE)
    return InvalidTransition(state, intent, CONCURRENT_CHANGE_MESSAGE)


class ApprovalWorkflow:
    """Owns the ApprovalRequest lifecycle.

    Every mutating call runs in one tenant transaction covering the request,
    the content status projection, the audit event and the PENDING outbox rows.
    Delivery of those rows happens after commit and never affects the outcome
    of the call.
    """

    def __init__(
        self,
        *,
        dispatcher: Optional[NotificationDispatcher] = None,
        app_base_url: Optional[str] = None,
    ) -> None:
        self._dispatcher = dispatcher or NotificationDispatcher()
        self._app_base_url = app_base_url

    # -- public operations -------------------------------------------------

    def transition(
        self,
        session: Session,
        context: TenantContext,
        *,
        request_id: str,
        intent: str,
        actor: Actor,
        rejection_reason: Optional[str] = None,
    ) -> TransitionResult:
        if intent not in TRANSITION_INTENTS:
            raise ValidationError.for_field("intent", f"Unsupported transition intent: {intent}")
        self._check_actor(context, actor)

        with tenant_transaction(session, context):
            request = self._load_request(session, request_id, for_update=True)
            result, notification_ids = self._perform(session, request, intent, actor, rejection_reason)

        result.notifications = self._deliver(session, context, notification_ids)
        return result

    def create_or_update_request(
        self,
        session: Session,
        context: TenantContext,
        *,
        actor: Actor,
        content_item_id: str,
        editor_reviewer_id: Optional[str] = None,
        manager_reviewer_id: Optional[str] = None,
        note: Optional[str] = None,
        auto_submit: bool = False,
    ) -> RequestWriteResult:
        """Create the request for a content item, or update reviewers on the existing one."""

        self._check_actor(context, actor)
        note = _clean(note)
        if note is not None and len(note) > MAX_NOTE_CHARS:
            raise ValidationError.for_field("note", f"Note must be at most {MAX_NOTE_CHARS} characters.")

        notification_ids: List[str] = []
        with tenant_transaction(session, context):
            content = session.scalar(select(ContentItem).where(ContentItem.id == content_item_id))
            if content is None:
                raise NotFoundError("Content not found in this workspace.")
            self._require_members(session, editor_reviewer_id=editor_reviewer_id, manager_reviewer_id=manager_reviewer_id)

            request = session.scalar(
                select(ApprovalRequest)
                .where(ApprovalRequest.content_item_id == content_item_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            created = request is None
            if request is None:
                now = _utcnow()
                request = ApprovalRequest(
                    workspace_id=context.workspace_id,
                    content_item_id=content_item_id,
                    requested_by_id=actor.id,
                    editor_reviewer_id=editor_reviewer_id,
                    manager_reviewer_id=manager_reviewer_id,
                    state=STATE_DRAFT,
                    created_at=now,
                    updated_at=now,
                )
                session.add(request)
                try:
                    session.flush()
                except IntegrityError as exc:
                    raise PreconditionFailed(
                        "approval request exists",
                        "An approval request was created concurrently for this content; retry to update it.",
                    ) from exc
            else:
                request.editor_reviewer_id = editor_reviewer_id or request.editor_reviewer_id
                request.manager_reviewer_id = manager_reviewer_id or request.manager_reviewer_id
                request.updated_at = _utcnow()
                self._flush_guarded(session, state=request.state, intent=None)

            if note is not None:
                self._append_event(session, request, author_id=actor.id, event_type=EVENT_COMMENT, comment=note)

            transition_result: Optional[TransitionResult] = None
            if auto_submit:
                transition_result, notification_ids = self._perform(session, request, INTENT_SUBMIT, actor, None)

        logger.info(
            "approval_request_saved",
            approval_request_id=request.id,
            content_item_id=content_item_id,
            created=created,
            auto_submit=auto_submit,
        )
        if transition_result is not None:
            transition_result.notifications = self._deliver(session, context, notification_ids)
        return RequestWriteResult(request=request, created=created, transition=transition_result)

    def assign_reviewers(
        self,
        session: Session,
        context: TenantContext,
        *,
        actor: Actor,
        request_id: str,
        editor_reviewer_id: Optional[str] = None,
        manager_reviewer_id: Optional[str] = None,
    ) -> ApprovalRequest:
        """Replace both reviewer slots; ``None`` clears a slot.

        Any workspace member may reassign reviewers; only the assignees are
        checked for membership.
        """

        self._check_actor(context, actor)
        with tenant_transaction(session, context):
            request = self._load_request(session, request_id, for_update=True)
            self._require_members(session, editor_reviewer_id=editor_reviewer_id, manager_reviewer_id=manager_reviewer_id)
            request.editor_reviewer_id = editor_reviewer_id
            request.manager_reviewer_id = manager_reviewer_id
            request.updated_at = _utcnow()
            self._flush_guarded(session, state=request.state, intent=None)

        logger.info(
            "approval_reviewers_assigned",
            approval_request_id=request.id,
            editor_reviewer_id=editor_reviewer_id,
            manager_reviewer_id=manager_reviewer_id,
        )
        return request

    def add_comment(
        self,
        session: Session,
        context: TenantContext,
        *,
        actor: Actor,
        request_id: str,
        comment: str,
    ) -> ApprovalEvent:
        self._check_actor(context, actor)
        text = _clean(comment) or ""
        if len(text) < MIN_COMMENT_CHARS or len(text) > MAX_COMMENT_CHARS:
            raise ValidationError.for_field(
                "comment",
                f"Comment must be between {MIN_COMMENT_CHARS} and {MAX_COMMENT_CHARS} characters.",
            )

        with tenant_transaction(session, context):
            request = self._load_request(session, request_id)
            event = self._append_event(session, request, author_id=actor.id, event_type=EVENT_COMMENT, comment=text)
        return event

    # -- reads ---------------------------------------------------------------

    def get_request(self, session: Session, context: TenantContext, request_id: str) -> ApprovalRequest:
        with tenant_transaction(session, context):
            return self._load_request(session, request_id)

    def list_timeline(self, session: Session, context: TenantContext, request_id: str) -> List[ApprovalEvent]:
        with tenant_transaction(session, context):
            self._load_request(session, request_id)
            return _timeline(session, request_id)

    def list_queue(self, session: Session, context: TenantContext) -> List[ApprovalRequest]:
        with tenant_transaction(session, context):
            requests = list(
                session.scalars(select(ApprovalRequest).order_by(ApprovalRequest.created_at.desc())).all()
            )
            for request in requests:
                # Load while the tenant context is bound.
                list(request.distribution_jobs)
                list(request.events)
                _ = request.content_item
            return requests

    def verify_event_log(self, session: Session, context: TenantContext, request_id: str) -> Optional[LogViolation]:
        """Replay the stored timeline; returns the first illegal step, if any."""

        with tenant_transaction(session, context):
            request = self._load_request(session, request_id)
            events = _timeline(session, request_id)
            final_state, violation = replay_event_log(event.type for event in events)
        if violation is None and final_state != request.state:
            return LogViolation(index=len(events), state=final_state, event_type=f"state:{request.state}")
        return violation

    # -- internals -----------------------------------------------------------

    @staticmethod
    def _check_actor(context: TenantContext, actor: Actor) -> None:
        if not actor.id:
            raise ValidationError.for_field("actor", "Actor id is required.")
        if context.actor_id is not None and context.actor_id != actor.id:
            raise AuthorizationError("Actor does not match the tenant context.")

    @staticmethod
    def _load_request(session: Session, request_id: str, *, for_update: bool = False) -> ApprovalRequest:
        statement = select(ApprovalRequest).where(ApprovalRequest.id == request_id)
        if for_update:
            statement = statement.with_for_update().execution_options(populate_existing=True)
        request = session.scalar(statement)
        if request is None:
            raise NotFoundError("Approval request not found.")
        return request

    @staticmethod
    def _require_members(session: Session, **reviewers: Optional[str]) -> None:
        field_errors = {}
        for field_name, user_id in reviewers.items():
            if user_id is None:
                continue
            membership = session.scalar(select(WorkspaceUser).where(WorkspaceUser.user_id == user_id))
            if membership is None:
                field_errors[field_name] = ["Reviewer must be a member of this workspace."]
        if field_errors:
            raise ValidationError("Please fix the highlighted fields.", field_errors=field_errors)

    @staticmethod
    def _append_event(
        session: Session,
        request: ApprovalRequest,
        *,
        author_id: str,
        event_type: str,
        comment: Optional[str] = None,
        state: Optional[str] = None,
        intent: Optional[str] = None,
    ) -> ApprovalEvent:
        last_sequence = session.scalar(
            select(func.max(ApprovalEvent.sequence)).where(ApprovalEvent.approval_request_id == request.id)
        )
        event = ApprovalEvent(
            workspace_id=request.workspace_id,
            approval_request_id=request.id,
            author_id=author_id,
            type=event_type,
            comment=comment,
            sequence=(last_sequence or 0) + 1,
            created_at=_utcnow(),
        )
        session.add(event)
        ApprovalWorkflow._flush_guarded(session, state=state or request.state, intent=intent)
        return event

    @staticmethod
    def _flush_guarded(session: Session, *, state: str, intent: Optional[str]) -> None:
        """Flush pending writes, turning a lost race on the request into a domain error."""

        try:
            session.flush()
        except StaleDataError as exc:
            raise _concurrent_change(state, intent) from exc
        except IntegrityError as exc:
            if _is_event_sequence_conflict(exc):
                raise _concurrent_change(state, intent) from exc
            raise

    def _perform(
        self,
        session: Session,
        request: ApprovalRequest,
        intent: str,
        actor: Actor,
        rejection_reason: Optional[str],
    ) -> tuple[TransitionResult, List[str]]:
        role = normalize_role(actor.role)
        state = request.state

        if intent == INTENT_SUBMIT:
            if role == ROLE_VIEWER:
                raise AuthorizationError("Viewers cannot submit approvals.")
            edge = self._require_edge(state, intent)
        elif intent == INTENT_ADVANCE:
            edge = self._require_edge(state, intent)
            if state == STATE_EDITOR_REVIEW:
                if not is_reviewer(role):
                    raise AuthorizationError("Only Editors or Admins can move requests to manager review.")
                if not request.manager_reviewer_id:
                    raise PreconditionFailed(
                        "missing manager reviewer",
                        "Assign a manager reviewer before advancing.",
                    )
            elif state == STATE_MANAGER_REVIEW and role != ROLE_ADMIN:
                raise AuthorizationError("Only Admins can finalize approvals.")
        elif intent == INTENT_REJECT:
            if not is_reviewer(role):
                raise AuthorizationError("Only Editors or Admins can reject requests.")
            edge = self._require_edge(state, intent)
            rejection_reason = _clean(rejection_reason)
            if rejection_reason is None:
                raise ValidationError.for_field("rejection_reason", "Provide a rejection reason.")
            if len(rejection_reason) > MAX_REJECTION_REASON_CHARS:
                raise ValidationError.for_field(
                    "rejection_reason",
                    f"Rejection reason must be at most {MAX_REJECTION_REASON_CHARS} characters.",
                )
        else:
            if not is_reviewer(role):
                raise AuthorizationError("Only Editors or Admins can reopen requests.")
            edge = self._require_edge(state, intent)

        now = _utcnow()
        request.state = edge.target
        request.updated_at = now
        comment: Optional[str] = None

        if intent == INTENT_SUBMIT:
            request.submitted_at = now
        elif intent == INTENT_ADVANCE and edge.target == STATE_MANAGER_REVIEW:
            request.editor_reviewed_at = now
        elif intent == INTENT_ADVANCE and edge.target == STATE_APPROVED:
            request.manager_reviewed_at = now
            request.approved_at = now
        elif intent == INTENT_REJECT:
            request.rejection_reason = rejection_reason
            comment = rejection_reason
        elif intent == INTENT_REOPEN:
            request.rejection_reason = None
            request.submitted_at = now
            comment = REOPEN_COMMENT

        content_status = content_status_for(edge.target)
        content = request.content_item
        if content_status is not None and content is not None:
            content.status = content_status
            content.updated_at = now

        self._flush_guarded(session, state=state, intent=intent)
        event = self._append_event(
            session,
            request,
            author_id=actor.id,
            event_type=edge.event_type,
            comment=comment,
            state=state,
            intent=intent,
        )
        notification_ids = [
            self._dispatcher.enqueue(session, notification).id
            for notification in self._notifications_for(session, request, edge, rejection_reason)
        ]

        record_approval_transition(intent=intent, to_state=edge.target)
        logger.info(
            "approval_transition",
            approval_request_id=request.id,
            intent=intent,
            from_state=state,
            to_state=edge.target,
            actor_id=actor.id,
            notifications=len(notification_ids),
        )
        return TransitionResult(request=request, previous_state=state, event=event), notification_ids

    @staticmethod
    def _require_edge(state: str, intent: str) -> Edge:
        edge = find_edge(state, intent)
        if edge is None:
            raise InvalidTransition(state, intent, invalid_transition_message(state, intent))
        return edge

    def _action_url(self, request: ApprovalRequest) -> Optional[str]:
        base_url = (self._app_base_url if self._app_base_url is not None else get_settings().app_public_base_url).strip()
        if not base_url:
            return None
        return f"{base_url.rstrip('/')}/app/approvals?request={request.id}"

    def _notifications_for(
        self,
        session: Session,
        request: ApprovalRequest,
        edge: Edge,
        rejection_reason: Optional[str],
    ) -> Sequence[NotificationRequest]:
        title = request.content_item.title if request.content_item is not None else "Untitled content"
        action_url = self._action_url(request)

        def email(recipient_id: Optional[str], subject: str, body: str) -> NotificationRequest:
            return NotificationRequest(
                workspace_id=request.workspace_id,
                approval_request_id=request.id,
                recipient_id=recipient_id,
                channel=CHANNEL_EMAIL,
                payload=NotificationPayload(subject=subject, body=body, action_url=action_url),
            )

        if edge.intent == INTENT_SUBMIT:
            if not request.editor_reviewer_id:
                return []
            requester = _display_name(session, request.requested_by_id)
            reviewer = _display_name(session, request.editor_reviewer_id)
            return [
                email(
                    request.editor_reviewer_id,
                    f"New content awaiting Editor review: {title}",
                    f"{requester} submitted content for your review.",
                ),
                NotificationRequest(
                    workspace_id=request.workspace_id,
                    approval_request_id=request.id,
                    channel=CHANNEL_SLACK,
                    payload=NotificationPayload(
                        subject=f"Editor review needed - {title}",
                        body=f"{requester} requested a review from {reviewer}.",
                        action_url=action_url,
                    ),
                ),
            ]
        if edge.intent == INTENT_ADVANCE and edge.target == STATE_MANAGER_REVIEW:
            return [
                email(
                    request.manager_reviewer_id,
                    f"Manager review needed - {title}",
                    "Editor approved this request. Please complete manager review.",
                )
            ]
        if edge.intent == INTENT_ADVANCE and edge.target == STATE_APPROVED:
            return [
                email(
                    request.requested_by_id,
                    f"Approved for publishing - {title}",
                    "Content cleared all approval gates and is ready for distribution.",
                )
            ]
        if edge.intent == INTENT_REJECT:
            return [email(request.requested_by_id, f"Changes requested - {title}", rejection_reason or "")]
        # Reopen stays silent so rapid edit/reopen cycles do not spam reviewers.
        return []

    def _deliver(self, session: Session, context: TenantContext, notification_ids: Iterable[str]) -> List[DeliveryOutcome]:
        ids = list(notification_ids)
        if not ids:
            return []
        try:
            return self._dispatcher.deliver(session, context, ids)
        except Exception:
            # Rows stay PENDING for the outbox worker.
            logger.exception("notification_delivery_deferred", notification_ids=ids)
            return []


def _display_name(session: Session, user_id: Optional[str]) -> str:
    if not user_id:
        return "Someone"
    user = session.scalar(select(User).where(User.id == user_id))
    return user.display_name if user is not None else "Someone"


def _timeline(session: Session, request_id: str) -> List[ApprovalEvent]:
    return list(
        session.scalars(
            select(ApprovalEvent)
            .where(ApprovalEvent.approval_request_id == request_id)
            .order_by(ApprovalEvent.created_at.asc(), ApprovalEvent.sequence.asc())
        ).all()
    )


def summarize_queue(requests: Iterable[ApprovalRequest]) -> ApprovalSummary:
    """Dashboard counters; APPROVED counts as awaiting publish until a job is SENT."""

    total_open = pending_editor = pending_manager = awaiting_publish = rejected = 0
    for request in requests:
        if request.state != STATE_APPROVED:
            total_open += 1
        if request.state == STATE_EDITOR_REVIEW:
            pending_editor += 1
        elif request.state == STATE_MANAGER_REVIEW:
            pending_manager += 1
        elif request.state == STATE_APPROVED:
            if not any(job.status == "SENT" for job in request.distribution_jobs):
                awaiting_publish += 1
        elif request.state == STATE_REJECTED:
            rejected += 1
    return ApprovalSummary(
        total_open=total_open,
        pending_editor=pending_editor,
        pending_manager=pending_manager,
        approved_awaiting_publish=awaiting_publish,
        rejected=rejected,
    )
