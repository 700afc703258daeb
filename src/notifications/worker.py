"""Outbox delivery worker: drains PENDING workflow notifications per workspace."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional
import uuid

from redis import Redis
from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from src.core.config import get_settings
from src.core.logger import get_logger
from src.notifications.config import STATUS_FAILED, STATUS_PENDING, STATUS_SENT
from src.notifications.dispatcher import NotificationDispatcher, claim_expiry_cutoff
from src.storage.models import Workspace, WorkflowNotification
from src.storage.tenant import TenantContext, tenant_transaction


logger = get_logger("contentos.notifications.worker")

LOCK_KEY_TEMPLATE = "contentos:{workspace_id}:notifications:outbox_lock"
RELEASE_LOCK_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""


def outbox_lock_key(workspace_id: str) -> str:
    return LOCK_KEY_TEMPLATE.format(workspace_id=workspace_id)


class OutboxLockManager:
    """One drain per workspace at a time using Redis SET NX EX."""

    def __init__(self, redis_client: Redis, *, ttl_seconds: int = 120) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._redis = redis_client
        self._ttl_seconds = ttl_seconds

    def acquire(self, workspace_id: str) -> Optional[str]:
        token = str(uuid.uuid4())
        acquired = self._redis.set(outbox_lock_key(workspace_id), token, nx=True, ex=self._ttl_seconds)
        return token if acquired else None

    def release(self, workspace_id: str, token: str) -> bool:
        released = self._redis.eval(RELEASE_LOCK_SCRIPT, 1, outbox_lock_key(workspace_id), token)
        return int(released) == 1


@dataclass
class DrainReport:
    workspace_id: str
    locked: bool = False
    sent: int = 0
    failed: int = 0
    in_flight: int = 0
    notification_ids: List[str] = field(default_factory=list)


def deliver_pending(
    session: Session,
    *,
    workspace_id: str,
    dispatcher: NotificationDispatcher,
    limit: Optional[int] = None,
) -> DrainReport:
    """Deliver up to ``limit`` PENDING rows for one workspace, oldest first.

    Rows another deliverer claimed recently are left for that deliverer.
    """

    batch_size = limit or get_settings().notification_worker_batch_size
    context = TenantContext(workspace_id=workspace_id)
    report = DrainReport(workspace_id=workspace_id)

    with tenant_transaction(session, context):
        ids = list(
            session.scalars(
                select(WorkflowNotification.id)
                .where(
                    WorkflowNotification.workspace_id == workspace_id,
                    WorkflowNotification.status == STATUS_PENDING,
                    or_(
                        WorkflowNotification.attempted_at.is_(None),
                        WorkflowNotification.attempted_at < claim_expiry_cutoff(),
                    ),
                )
                .order_by(WorkflowNotification.created_at.asc())
                .limit(batch_size)
            ).all()
        )

    for outcome in dispatcher.deliver(session, context, ids):
        report.notification_ids.append(outcome.notification_id)
        if outcome.status == STATUS_SENT:
            report.sent += 1
        elif outcome.status == STATUS_FAILED:
            report.failed += 1
        else:
            report.in_flight += 1
    return report


def run_outbox_pass(
    session: Session,
    *,
    lock_manager: OutboxLockManager,
    dispatcher: NotificationDispatcher,
    workspace_ids: Optional[List[str]] = None,
    limit: Optional[int] = None,
) -> List[DrainReport]:
    """Drain every workspace once, skipping workspaces another worker holds."""

    if workspace_ids is None:
        workspace_ids = list(session.scalars(select(Workspace.id).order_by(Workspace.created_at.asc())).all())
        session.rollback()

    reports: List[DrainReport] = []
    for workspace_id in workspace_ids:
        token = lock_manager.acquire(workspace_id)
        if token is None:
            reports.append(DrainReport(workspace_id=workspace_id, locked=True))
            continue
        try:
            report = deliver_pending(session, workspace_id=workspace_id, dispatcher=dispatcher, limit=limit)
        except Exception:
            logger.exception("notification_outbox_drain_failed", workspace_id=workspace_id)
            continue
        finally:
            lock_manager.release(workspace_id, token)
        if report.notification_ids:
            logger.info(
                "notification_outbox_drained",
                workspace_id=workspace_id,
                sent=report.sent,
                failed=report.failed,
            )
        reports.append(report)
    return reports
