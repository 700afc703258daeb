"""CLI entrypoint to drain the workflow notification outbox."""

from __future__ import annotations

from dataclasses import asdict
import argparse
import json
import time
from typing import Any, Dict, List, Optional

from src.core.config import get_settings
from src.core.logger import get_logger
from src.core.observability import init_sentry
from src.notifications.dispatcher import NotificationDispatcher
from src.notifications.worker import DrainReport, OutboxLockManager, run_outbox_pass
from src.storage.db import get_session_factory, load_models
from src.storage.redis_client import get_client as get_redis_client


logger = get_logger("contentos.notifications.worker")


def run_worker_once(*, limit: Optional[int] = None, workspace_ids: Optional[List[str]] = None) -> List[DrainReport]:
    settings = get_settings()
    load_models()
    lock_manager = OutboxLockManager(
        get_redis_client(),
        ttl_seconds=settings.notification_worker_lock_ttl_seconds,
    )
    session = get_session_factory()()
    try:
        return run_outbox_pass(
            session,
            lock_manager=lock_manager,
            dispatcher=NotificationDispatcher(),
            workspace_ids=workspace_ids,
            limit=limit,
        )
    finally:
        session.close()


def _reports_to_dict(reports: List[DrainReport]) -> Dict[str, Any]:
    return {
        "sent": sum(report.sent for report in reports),
        "failed": sum(report.failed for report in reports),
        "in_flight": sum(report.in_flight for report in reports),
        "workspaces": [asdict(report) for report in reports],
    }


def main() -> None:
    parser = argparse.ArgumentParser(description="Deliver pending workflow notifications.")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit.")
    parser.add_argument("--limit", type=int, default=None, help="Max notifications per workspace per pass.")
    parser.add_argument("--workspace", action="append", dest="workspace_ids", help="Restrict to a workspace id.")
    args = parser.parse_args()

    if args.limit is not None and args.limit <= 0:
        raise ValueError("--limit must be positive")

    init_sentry()
    poll_seconds = get_settings().notification_worker_poll_seconds
    while True:
        reports = run_worker_once(limit=args.limit, workspace_ids=args.workspace_ids)
        print(json.dumps(_reports_to_dict(reports), ensure_ascii=True, separators=(",", ":"), sort_keys=True))
        if args.once:
            return
        logger.debug("notification_worker_sleep", seconds=poll_seconds)
        time.sleep(poll_seconds)


if __name__ == "__main__":
    main()
