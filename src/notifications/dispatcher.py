"""Workflow notification dispatch backed by a durable outbox.

A dispatch writes a PENDING ``workflow_notifications`` row first. Delivery then
claims the row by stamping ``attempted_at``, resolves the destination, performs
the outbound call outside any open transaction and records SENT or FAILED.
Delivery errors never propagate to the caller: the persisted row is the only
place they surface. A row claimed by another deliverer is reported back as
PENDING and left alone until its claim expires.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import json
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from src.core.config import get_settings
from src.core.errors import ConfigurationError, NotFoundError, ValidationError
from src.core.logger import get_logger
from src.core.metrics import record_notification
from src.integrations.chat import ChatWebhookClient, get_chat_webhook_client
from src.integrations.chat.webhook_client import format_chat_message
from src.integrations.email import ResendClient, get_resend_client, render_notification_html
from src.notifications.config import (
    CHANNEL_EMAIL,
    CHANNEL_SLACK,
    NOTIFICATION_CHANNELS,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_SENT,
)
from src.notifications.settings import get_slack_config
from src.storage.models import User, WorkflowNotification
from src.storage.tenant import TenantContext, require_tenant, tenant_transaction


logger = get_logger("contentos.notifications")

_MAX_ERROR_CHARS = 500
_MAX_PARALLEL_SENDS = 4
IN_FLIGHT_MESSAGE = "Notification delivery already in progress."


@dataclass(frozen=True)
class NotificationPayload:
    subject: str
    body: str
    action_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"subject": self.subject, "body": self.body}
        if self.action_url:
            payload["action_url"] = self.action_url
        return payload

    @classmethod
    def from_json(cls, raw_json: str) -> "NotificationPayload":
        raw = json.loads(raw_json or "{}")
        return cls(
            subject=str(raw.get("subject", "")),
            body=str(raw.get("body", "")),
            action_url=raw.get("action_url") or None,
        )


@dataclass(frozen=True)
class NotificationRequest:
    workspace_id: str
    channel: str
    payload: NotificationPayload
    approval_request_id: Optional[str] = None
    recipient_id: Optional[str] = None


@dataclass(frozen=True)
class DeliveryOutcome:
    notification_id: str
    channel: str
    status: str
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class _DeliveryTarget:
    notification_id: str
    channel: str
    payload: NotificationPayload
    email_address: Optional[str] = None
    webhook_url: Optional[str] = None
    mention_role: Optional[str] = None
    error: Optional[str] = None
    in_flight: bool = False


def _json_dumps(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


def _truncate_error(message: str) -> str:
    message = message.strip() or "Failed to send"
    return message[:_MAX_ERROR_CHARS]


def claim_expiry_cutoff(now: Optional[datetime] = None) -> datetime:
    """Claims stamped before this instant are treated as abandoned and may be retried."""

    now = now or datetime.now(timezone.utc)
    return now - timedelta(seconds=get_settings().notification_claim_timeout_seconds)


class NotificationDispatcher:
    def __init__(
        self,
        *,
        email_client: Optional[ResendClient] = None,
        chat_client: Optional[ChatWebhookClient] = None,
        from_address: Optional[str] = None,
    ) -> None:
        self._email_client = email_client
        self._chat_client = chat_client
        self._from_address = from_address

    def _resolve_email_client(self) -> ResendClient:
        if self._email_client is not None:
            return self._email_client
        return get_resend_client()

    def _resolve_chat_client(self) -> ChatWebhookClient:
        if self._chat_client is not None:
            return self._chat_client
        return get_chat_webhook_client()

    def _resolve_from_address(self) -> str:
        return (self._from_address or get_settings().email_from_address).strip()

    def enqueue(self, session: Session, request: NotificationRequest) -> WorkflowNotification:
        """Write the PENDING outbox row inside the caller's open transaction."""

        context = require_tenant(session)
        if request.workspace_id != context.workspace_id:
            raise ValidationError.for_field("workspace_id", "Notification workspace does not match tenant context.")
        if request.channel not in NOTIFICATION_CHANNELS:
            raise ValidationError.for_field("channel", f"Unsupported notification channel: {request.channel}")

        record = WorkflowNotification(
            workspace_id=request.workspace_id,
            approval_request_id=request.approval_request_id,
            recipient_id=request.recipient_id,
            channel=request.channel,
            payload_json=_json_dumps(request.payload.to_dict()),
            status=STATUS_PENDING,
            created_at=datetime.now(timezone.utc),
        )
        session.add(record)
        session.flush()
        return record

    def dispatch(self, session: Session, context: TenantContext, request: NotificationRequest) -> DeliveryOutcome:
        """Record then deliver a single notification; never raises on delivery failure."""

        with tenant_transaction(session, context):
            record = self.enqueue(session, request)
        return self.deliver(session, context, [record.id])[0]

    def deliver(
        self,
        session: Session,
        context: TenantContext,
        notification_ids: Iterable[str],
    ) -> List[DeliveryOutcome]:
        """Deliver committed PENDING rows; each one succeeds or fails independently.

        Rows another deliverer is still sending come back as PENDING outcomes.
        """

        ids = list(notification_ids)
        if not ids:
            return []

        with tenant_transaction(session, context):
            targets = [self._prepare(session, notification_id) for notification_id in ids]

        pending = [target for target in targets if target.error is None]
        if len(pending) > 1:
            with ThreadPoolExecutor(max_workers=min(_MAX_PARALLEL_SENDS, len(pending))) as executor:
                sent = list(executor.map(self._send, pending))
        else:
            sent = [self._send(target) for target in pending]
        sent_by_id = {outcome.notification_id: outcome for outcome in sent}

        outcomes: List[DeliveryOutcome] = []
        for target in targets:
            if target.error is not None:
                outcomes.append(
                    DeliveryOutcome(
                        notification_id=target.notification_id,
                        channel=target.channel,
                        status=STATUS_PENDING if target.in_flight else STATUS_FAILED,
                        error=target.error,
                    )
                )
            else:
                outcomes.append(sent_by_id[target.notification_id])

        with tenant_transaction(session, context):
            for outcome in outcomes:
                self._record_outcome(session, outcome)
        return outcomes

    @staticmethod
    def _claim(session: Session, notification_id: str) -> bool:
        """Stamp ``attempted_at`` on an unclaimed PENDING row; False when someone else holds it."""

        now = datetime.now(timezone.utc)
        result = session.execute(
            update(WorkflowNotification)
            .where(
                WorkflowNotification.id == notification_id,
                WorkflowNotification.workspace_id == require_tenant(session).workspace_id,
                WorkflowNotification.status == STATUS_PENDING,
                or_(
                    WorkflowNotification.attempted_at.is_(None),
                    WorkflowNotification.attempted_at < claim_expiry_cutoff(now),
                ),
            )
            .values(attempted_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def _prepare(self, session: Session, notification_id: str) -> _DeliveryTarget:
        claimed = self._claim(session, notification_id)
        record = session.scalar(
            select(WorkflowNotification)
            .where(WorkflowNotification.id == notification_id)
            .execution_options(populate_existing=True)
        )
        if record is None:
            raise NotFoundError(f"Notification {notification_id} not found.")

        payload = NotificationPayload.from_json(record.payload_json)
        if not claimed and record.status == STATUS_PENDING:
            return _DeliveryTarget(
                notification_id=record.id,
                channel=record.channel,
                payload=payload,
                error=IN_FLIGHT_MESSAGE,
                in_flight=True,
            )
        try:
            if record.status != STATUS_PENDING:
                raise ValidationError(f"Notification already {record.status.lower()}.")
            if record.channel == CHANNEL_EMAIL:
                if not record.recipient_id:
                    raise ValidationError.for_field("recipient_id", "Email notifications require recipientId")
                recipient = session.scalar(select(User).where(User.id == record.recipient_id))
                if recipient is None:
                    raise NotFoundError("Recipient not found")
                return _DeliveryTarget(
                    notification_id=record.id,
                    channel=record.channel,
                    payload=payload,
                    email_address=recipient.email,
                )
            if record.channel == CHANNEL_SLACK:
                config = get_slack_config(session)
                if not config.webhook_url:
                    raise ConfigurationError("Slack webhook URL missing")
                return _DeliveryTarget(
                    notification_id=record.id,
                    channel=record.channel,
                    payload=payload,
                    webhook_url=config.webhook_url,
                    mention_role=config.mention_role or None,
                )
            raise ConfigurationError(f"Unsupported notification channel: {record.channel}")
        except Exception as exc:
            return _DeliveryTarget(
                notification_id=record.id,
                channel=record.channel,
                payload=payload,
                error=_truncate_error(str(exc)),
            )

    def _send(self, target: _DeliveryTarget) -> DeliveryOutcome:
        try:
            if target.channel == CHANNEL_EMAIL:
                metadata = self._send_email(target)
            else:
                self._resolve_chat_client().post_message(
                    webhook_url=target.webhook_url or "",
                    text=format_chat_message(
                        subject=target.payload.subject,
                        body=target.payload.body,
                        action_url=target.payload.action_url,
                        mention_role=target.mention_role,
                    ),
                )
                metadata = {}
        except Exception as exc:
            return DeliveryOutcome(
                notification_id=target.notification_id,
                channel=target.channel,
                status=STATUS_FAILED,
                error=_truncate_error(str(exc)),
            )
        return DeliveryOutcome(
            notification_id=target.notification_id,
            channel=target.channel,
            status=STATUS_SENT,
            metadata=metadata,
        )

    def _send_email(self, target: _DeliveryTarget) -> Dict[str, Any]:
        client = self._resolve_email_client()
        if not client.configured:
            logger.info(
                "notification_simulated",
                notification_id=target.notification_id,
                recipient=target.email_address,
                subject=target.payload.subject,
            )
            return {"simulated": True}

        response = client.send_email(
            from_address=self._resolve_from_address(),
            to=[target.email_address or ""],
            subject=target.payload.subject,
            html=render_notification_html(target.payload.body, target.payload.action_url),
            tags={"notification_id": target.notification_id},
        )
        return {"provider_id": response.get("id")}

    def _record_outcome(self, session: Session, outcome: DeliveryOutcome) -> None:
        record = session.scalar(
            select(WorkflowNotification).where(WorkflowNotification.id == outcome.notification_id)
        )
        if record is None:  # pragma: no cover
            return

        if outcome.status == STATUS_SENT:
            record.status = STATUS_SENT
            record.sent_at = datetime.now(timezone.utc)
            record.error = None
            logger.info(
                "notification_sent",
                notification_id=record.id,
                channel=record.channel,
                approval_request_id=record.approval_request_id,
            )
        elif outcome.status == STATUS_FAILED and record.status == STATUS_PENDING:
            record.status = STATUS_FAILED
            record.error = outcome.error
            logger.warning(
                "notification_failed",
                notification_id=record.id,
                channel=record.channel,
                approval_request_id=record.approval_request_id,
                error=outcome.error,
            )
        else:
            return
        record_notification(channel=record.channel, status=record.status)
