"""SQLAlchemy ORM models for the approval workflow and distribution core."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
import uuid

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from src.storage.db import Base
from src.storage.tenant import TenantScoped


def _uuid() -> str:
    return str(uuid.uuid4())


ACTIVE_JOB_STATUS_SQL = "status IN ('QUEUED', 'SCHEDULED', 'SENDING')"


class Workspace(Base):
    __tablename__ = "workspaces"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(120), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    members: Mapped[list[WorkspaceUser]] = relationship("WorkspaceUser", back_populates="workspace")


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    @property
    def display_name(self) -> str:
        if self.first_name:
            return f"{self.first_name} {self.last_name or ''}".strip()
        return self.email


class WorkspaceUser(TenantScoped, Base):
    __tablename__ = "workspace_users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(16), nullable=False, default="VIEWER")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    workspace: Mapped[Workspace] = relationship("Workspace", back_populates="members")
    user: Mapped[User] = relationship("User")

    __table_args__ = (
        UniqueConstraint("workspace_id", "user_id", name="uq_workspace_users_workspace_user"),
        Index("ix_workspace_users_workspace_created_at", "workspace_id", "created_at"),
    )


class ContentItem(TenantScoped, Base):
    """Planner content owned by the editor subsystem; only ``status`` is written here."""

    __tablename__ = "content_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_headline: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    ai_outline: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    channel: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="DRAFT")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (Index("ix_content_items_workspace_updated_at", "workspace_id", "updated_at"),)


class ApprovalRequest(TenantScoped, Base):
    __tablename__ = "approval_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    content_item_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("content_items.id", ondelete="CASCADE"),
        nullable=False,
    )
    requested_by_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )
    editor_reviewer_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    manager_reviewer_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    state: Mapped[str] = mapped_column(String(20), nullable=False, default="DRAFT")
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    editor_reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    manager_reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, server_default=text("1"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    content_item: Mapped[ContentItem] = relationship("ContentItem")
    requested_by: Mapped[User] = relationship("User", foreign_keys=[requested_by_id])
    editor_reviewer: Mapped[Optional[User]] = relationship("User", foreign_keys=[editor_reviewer_id])
    manager_reviewer: Mapped[Optional[User]] = relationship("User", foreign_keys=[manager_reviewer_id])
    events: Mapped[list[ApprovalEvent]] = relationship(
        "ApprovalEvent",
        back_populates="approval_request",
        order_by="ApprovalEvent.sequence",
    )
    distribution_jobs: Mapped[list[DistributionJob]] = relationship(
        "DistributionJob",
        back_populates="approval_request",
    )

    __table_args__ = (
        UniqueConstraint("content_item_id", name="uq_approval_requests_content_item"),
        Index("ix_approval_requests_workspace_state", "workspace_id", "state"),
        Index("ix_approval_requests_workspace_created_at", "workspace_id", "created_at"),
    )
    # Every flush of a request checks and bumps the version.
    __mapper_args__ = {"version_id_col": version}


class ApprovalEvent(TenantScoped, Base):
    """Append-only audit row; never updated after insert."""

    __tablename__ = "approval_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    approval_request_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("approval_requests.id", ondelete="CASCADE"),
        nullable=False,
    )
    author_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    approval_request: Mapped[ApprovalRequest] = relationship("ApprovalRequest", back_populates="events")
    author: Mapped[User] = relationship("User")

    __table_args__ = (
        UniqueConstraint("approval_request_id", "sequence", name="uq_approval_events_request_sequence"),
        Index("ix_approval_events_request_created_at", "approval_request_id", "created_at", "sequence"),
    )


class DistributionProfile(TenantScoped, Base):
    __tablename__ = "distribution_profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    label: Mapped[str] = mapped_column(String(60), nullable=False)
    config_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (UniqueConstraint("workspace_id", "channel", name="uq_distribution_profiles_workspace_channel"),)


class DistributionJob(TenantScoped, Base):
    __tablename__ = "distribution_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    content_item_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("content_items.id", ondelete="CASCADE"),
        nullable=False,
    )
    approval_request_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("approval_requests.id", ondelete="SET NULL"),
        nullable=True,
    )
    profile_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("distribution_profiles.id", ondelete="RESTRICT"),
        nullable=False,
    )
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="DRAFT")
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    result_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    content_item: Mapped[ContentItem] = relationship("ContentItem")
    approval_request: Mapped[Optional[ApprovalRequest]] = relationship(
        "ApprovalRequest",
        back_populates="distribution_jobs",
    )

    __table_args__ = (
        Index(
            "uq_distribution_jobs_active_content_item",
            "content_item_id",
            unique=True,
            postgresql_where=text(ACTIVE_JOB_STATUS_SQL),
            sqlite_where=text(ACTIVE_JOB_STATUS_SQL),
        ),
        Index("ix_distribution_jobs_workspace_status_scheduled", "workspace_id", "status", "scheduled_for"),
    )


class NotificationSetting(TenantScoped, Base):
    __tablename__ = "notification_settings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    config_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (UniqueConstraint("workspace_id", "channel", name="uq_notification_settings_workspace_channel"),)


class WorkflowNotification(TenantScoped, Base):
    """Outbox row, one per dispatch attempt."""

    __tablename__ = "workflow_notifications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    workspace_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("workspaces.id", ondelete="CASCADE"),
        nullable=False,
    )
    approval_request_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("approval_requests.id", ondelete="SET NULL"),
        nullable=True,
    )
    recipient_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="PENDING")
    attempted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("ix_workflow_notifications_workspace_status_created_at", "workspace_id", "status", "created_at"),
        Index("ix_workflow_notifications_request", "approval_request_id"),
    )
