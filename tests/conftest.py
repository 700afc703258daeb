from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, List, Optional
import uuid

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.approvals.service import Actor, ApprovalWorkflow
from src.core.config import get_settings
from src.core.metrics import reset_metrics_for_tests
from src.distribution.profiles import upsert_profile
from src.integrations.chat import ChatWebhookError
from src.integrations.email import EmailClientError
from src.notifications.dispatcher import NotificationDispatcher
from src.storage.db import Base, create_session_factory, load_models
from src.storage.models import ApprovalRequest, ContentItem, DistributionJob, User, Workspace, WorkspaceUser
from src.storage.tenant import TenantContext, tenant_transaction


APP_BASE_URL = "https://app.contentos.test"


class FakeRedis:
    def __init__(self) -> None:
        self._store: Dict[str, str] = {}

    def set(self, key: str, value: str, nx: bool = False, ex: int | None = None):
        del ex
        if nx and key in self._store:
            return False
        self._store[key] = str(value)
        return True

    def get(self, key: str):
        return self._store.get(key)

    def delete(self, key: str):
        return 1 if self._store.pop(key, None) is not None else 0

    def eval(self, script: str, numkeys: int, key: str, token: str):
        del script, numkeys
        if self._store.get(key) == token:
            self._store.pop(key, None)
            return 1
        return 0


class FakeEmailClient:
    def __init__(self, *, configured: bool = True, fail_with: Optional[str] = None) -> None:
        self._configured = configured
        self.fail_with = fail_with
        self.sent: List[Dict[str, Any]] = []
        self._lock = Lock()

    @property
    def configured(self) -> bool:
        return self._configured

    def send_email(self, *, from_address: str, to: List[str], subject: str, html: str, tags=None):
        if self.fail_with:
            raise EmailClientError(self.fail_with)
        with self._lock:
            self.sent.append({"from": from_address, "to": list(to), "subject": subject, "html": html, "tags": tags})
            return {"id": f"email-{len(self.sent)}"}


class FakeChatClient:
    def __init__(self, *, fail_with: Optional[str] = None) -> None:
        self.fail_with = fail_with
        self.posts: List[Dict[str, str]] = []
        self._lock = Lock()

    def post_message(self, *, webhook_url: str, text: str) -> None:
        if self.fail_with:
            raise ChatWebhookError(self.fail_with)
        with self._lock:
            self.posts.append({"webhook_url": webhook_url, "text": text})


@dataclass
class SeededWorkspace:
    workspace_id: str
    admin_id: str
    editor_id: str
    requester_id: str
    viewer_id: str
    content_item_id: str
    emails: Dict[str, str] = field(default_factory=dict)

    def context(self, actor_id: Optional[str] = None) -> TenantContext:
        return TenantContext(workspace_id=self.workspace_id, actor_id=actor_id)

    @property
    def admin(self) -> Actor:
        return Actor(id=self.admin_id, role="ADMIN")

    @property
    def editor(self) -> Actor:
        return Actor(id=self.editor_id, role="EDITOR")

    @property
    def requester(self) -> Actor:
        return Actor(id=self.requester_id, role="EDITOR")

    @property
    def viewer(self) -> Actor:
        return Actor(id=self.viewer_id, role="VIEWER")


def build_sqlite_session_factory() -> sessionmaker:
    load_models()
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    return create_session_factory(engine)


def seed_workspace(session_factory: sessionmaker, *, name: Optional[str] = None) -> SeededWorkspace:
    suffix = uuid.uuid4().hex[:8]
    with session_factory() as session:
        workspace = Workspace(name=name or f"workspace-{suffix}")
        people = {
            "admin": User(email=f"admin-{suffix}@contentos.test", first_name="Ada", last_name="Admin"),
            "editor": User(email=f"editor-{suffix}@contentos.test", first_name="Eli", last_name="Editor"),
            "requester": User(email=f"writer-{suffix}@contentos.test", first_name="Wren", last_name="Writer"),
            "viewer": User(email=f"viewer-{suffix}@contentos.test", first_name="Vic"),
        }
        session.add(workspace)
        session.add_all(people.values())
        session.commit()

        roles = {"admin": "ADMIN", "editor": "EDITOR", "requester": "EDITOR", "viewer": "VIEWER"}
        now = datetime.now(timezone.utc)
        with tenant_transaction(session, TenantContext(workspace_id=workspace.id)):
            for key, user in people.items():
                session.add(WorkspaceUser(workspace_id=workspace.id, user_id=user.id, role=roles[key]))
            content = ContentItem(
                workspace_id=workspace.id,
                title="Spring launch announcement",
                description="Everything shipping this spring.",
                ai_headline="Spring is here: five launches in one week",
                ai_outline="1. Intro\n2. Launches\n3. CTA",
                status="READY",
                created_at=now,
                updated_at=now,
            )
            session.add(content)
            session.flush()

        return SeededWorkspace(
            workspace_id=workspace.id,
            admin_id=people["admin"].id,
            editor_id=people["editor"].id,
            requester_id=people["requester"].id,
            viewer_id=people["viewer"].id,
            content_item_id=content.id,
            emails={key: user.email for key, user in people.items()},
        )


def add_content_item(session_factory: sessionmaker, seeded: SeededWorkspace, **overrides: Any) -> str:
    now = datetime.now(timezone.utc)
    values: Dict[str, Any] = {
        "title": "Follow-up post",
        "status": "READY",
        "created_at": now,
        "updated_at": now,
    }
    values.update(overrides)
    with session_factory() as session:
        with tenant_transaction(session, seeded.context()):
            content = ContentItem(workspace_id=seeded.workspace_id, **values)
            session.add(content)
            session.flush()
            return content.id


@pytest.fixture(autouse=True)
def _reset_runtime_state():
    get_settings.cache_clear()
    reset_metrics_for_tests()
    yield
    get_settings.cache_clear()


@pytest.fixture
def session_factory() -> sessionmaker:
    return build_sqlite_session_factory()


@pytest.fixture
def session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def seeded(session_factory) -> SeededWorkspace:
    return seed_workspace(session_factory)


@pytest.fixture
def fake_email() -> FakeEmailClient:
    return FakeEmailClient()


@pytest.fixture
def fake_chat() -> FakeChatClient:
    return FakeChatClient()


@pytest.fixture
def dispatcher(fake_email, fake_chat) -> NotificationDispatcher:
    return NotificationDispatcher(
        email_client=fake_email,
        chat_client=fake_chat,
        from_address="ContentOS <notify@contentos.test>",
    )


@pytest.fixture
def workflow(dispatcher) -> ApprovalWorkflow:
    return ApprovalWorkflow(dispatcher=dispatcher, app_base_url=APP_BASE_URL)


def approve_content(session_factory: sessionmaker, seeded: SeededWorkspace, content_item_id: Optional[str] = None) -> str:
    """Insert an APPROVED request directly; returns the request id."""

    content_item_id = content_item_id or seeded.content_item_id
    now = datetime.now(timezone.utc)
    with session_factory() as session:
        with tenant_transaction(session, seeded.context()):
            request = ApprovalRequest(
                workspace_id=seeded.workspace_id,
                content_item_id=content_item_id,
                requested_by_id=seeded.requester_id,
                editor_reviewer_id=seeded.editor_id,
                manager_reviewer_id=seeded.admin_id,
                state="APPROVED",
                submitted_at=now,
                editor_reviewed_at=now,
                manager_reviewed_at=now,
                approved_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(request)
            content = session.scalar(select(ContentItem).where(ContentItem.id == content_item_id))
            content.status = "APPROVED"
            session.flush()
            return request.id


def connect_channel(session_factory: sessionmaker, seeded: SeededWorkspace, channel: str, **config: str) -> str:
    with session_factory() as session:
        summary = upsert_profile(
            session,
            seeded.context(seeded.admin_id),
            actor_role="ADMIN",
            channel=channel,
            label=f"{channel.title()} account",
            access_token=config.get("access_token", "token-123"),
            external_id=config.get("external_id"),
            space_id=config.get("space_id"),
        )
        return summary.id


def add_job(
    session_factory: sessionmaker,
    seeded: SeededWorkspace,
    *,
    profile_id: str,
    channel: str,
    status: str,
    content_item_id: Optional[str] = None,
) -> str:
    now = datetime.now(timezone.utc)
    with session_factory() as session:
        with tenant_transaction(session, seeded.context()):
            job = DistributionJob(
                workspace_id=seeded.workspace_id,
                content_item_id=content_item_id or seeded.content_item_id,
                profile_id=profile_id,
                channel=channel,
                payload_json="{}",
                status=status,
                scheduled_for=now,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            session.flush()
            return job.id
