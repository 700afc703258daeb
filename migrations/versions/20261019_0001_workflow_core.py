"""approval workflow and distribution core

Revision ID: 20261019_0001
Revises:
Create Date: 2026-10-19

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


TENANT_TABLES = [
    "workspace_users",
    "content_items",
    "approval_requests",
    "approval_events",
    "distribution_profiles",
    "distribution_jobs",
    "notification_settings",
    "workflow_notifications",
]

ACTIVE_JOB_STATUS_SQL = "status IN ('QUEUED', 'SCHEDULED', 'SENDING')"


def _is_postgresql() -> bool:
    return op.get_bind().dialect.name == "postgresql"


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP"))


def _workspace_fk() -> sa.ForeignKeyConstraint:
    return sa.ForeignKeyConstraint(["workspace_id"], ["workspaces.id"], ondelete="CASCADE")


def upgrade() -> None:
    op.create_table(
        "workspaces",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("name", name="uq_workspaces_name"),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.String(length=80), nullable=True),
        sa.Column("last_name", sa.String(length=80), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "workspace_users",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("user_id", sa.String(length=36), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="VIEWER"),
        _timestamp("created_at"),
        _workspace_fk(),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("workspace_id", "user_id", name="uq_workspace_users_workspace_user"),
    )
    op.create_index(
        "ix_workspace_users_workspace_created_at",
        "workspace_users",
        ["workspace_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "content_items",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("title", sa.String(length=200), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("ai_headline", sa.String(length=200), nullable=True),
        sa.Column("ai_outline", sa.Text(), nullable=True),
        sa.Column("channel", sa.String(length=32), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="DRAFT"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _workspace_fk(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_content_items_workspace_updated_at",
        "content_items",
        ["workspace_id", "updated_at"],
        unique=False,
    )

    op.create_table(
        "approval_requests",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("content_item_id", sa.String(length=36), nullable=False),
        sa.Column("requested_by_id", sa.String(length=36), nullable=False),
        sa.Column("editor_reviewer_id", sa.String(length=36), nullable=True),
        sa.Column("manager_reviewer_id", sa.String(length=36), nullable=True),
        sa.Column("state", sa.String(length=20), nullable=False, server_default="DRAFT"),
        sa.Column("rejection_reason", sa.String(length=500), nullable=True),
        _timestamp("submitted_at", nullable=True),
        _timestamp("editor_reviewed_at", nullable=True),
        _timestamp("manager_reviewed_at", nullable=True),
        _timestamp("approved_at", nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _workspace_fk(),
        sa.ForeignKeyConstraint(["content_item_id"], ["content_items.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["requested_by_id"], ["users.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["editor_reviewer_id"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["manager_reviewer_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("content_item_id", name="uq_approval_requests_content_item"),
    )
    op.create_index(
        "ix_approval_requests_workspace_state",
        "approval_requests",
        ["workspace_id", "state"],
        unique=False,
    )
    op.create_index(
        "ix_approval_requests_workspace_created_at",
        "approval_requests",
        ["workspace_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "approval_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("approval_request_id", sa.String(length=36), nullable=False),
        sa.Column("author_id", sa.String(length=36), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False),
        sa.Column("comment", sa.Text(), nullable=True),
        sa.Column("sequence", sa.Integer(), nullable=False, server_default="0"),
        _timestamp("created_at"),
        _workspace_fk(),
        sa.ForeignKeyConstraint(["approval_request_id"], ["approval_requests.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["author_id"], ["users.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("approval_request_id", "sequence", name="uq_approval_events_request_sequence"),
    )
    op.create_index(
        "ix_approval_events_request_created_at",
        "approval_events",
        ["approval_request_id", "created_at", "sequence"],
        unique=False,
    )

    op.create_table(
        "distribution_profiles",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("label", sa.String(length=60), nullable=False),
        sa.Column("config_json", sa.Text(), nullable=False, server_default="{}"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _workspace_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("workspace_id", "channel", name="uq_distribution_profiles_workspace_channel"),
    )

    op.create_table(
        "distribution_jobs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("content_item_id", sa.String(length=36), nullable=False),
        sa.Column("approval_request_id", sa.String(length=36), nullable=True),
        sa.Column("profile_id", sa.String(length=36), nullable=False),
        sa.Column("channel", sa.String(length=32), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="DRAFT"),
        _timestamp("scheduled_for", nullable=True),
        _timestamp("last_attempt_at", nullable=True),
        sa.Column("result_json", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _workspace_fk(),
        sa.ForeignKeyConstraint(["content_item_id"], ["content_items.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["approval_request_id"], ["approval_requests.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["profile_id"], ["distribution_profiles.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
    )
    # At most one active job per content item, enforced by the database.
    op.create_index(
        "uq_distribution_jobs_active_content_item",
        "distribution_jobs",
        ["content_item_id"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_JOB_STATUS_SQL),
        sqlite_where=sa.text(ACTIVE_JOB_STATUS_SQL),
    )
    op.create_index(
        "ix_distribution_jobs_workspace_status_scheduled",
        "distribution_jobs",
        ["workspace_id", "status", "scheduled_for"],
        unique=False,
    )

    op.create_table(
        "notification_settings",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("config_json", sa.Text(), nullable=False, server_default="{}"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _workspace_fk(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("workspace_id", "channel", name="uq_notification_settings_workspace_channel"),
    )

    op.create_table(
        "workflow_notifications",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("workspace_id", sa.String(length=36), nullable=False),
        sa.Column("approval_request_id", sa.String(length=36), nullable=True),
        sa.Column("recipient_id", sa.String(length=36), nullable=True),
        sa.Column("channel", sa.String(length=16), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PENDING"),
        _timestamp("attempted_at", nullable=True),
        _timestamp("sent_at", nullable=True),
        sa.Column("error", sa.String(length=500), nullable=True),
        _timestamp("created_at"),
        _workspace_fk(),
        sa.ForeignKeyConstraint(["approval_request_id"], ["approval_requests.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["recipient_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_workflow_notifications_workspace_status_created_at",
        "workflow_notifications",
        ["workspace_id", "status", "created_at"],
        unique=False,
    )
    op.create_index(
        "ix_workflow_notifications_request",
        "workflow_notifications",
        ["approval_request_id"],
        unique=False,
    )

    if _is_postgresql():
        op.execute(
            """
            CREATE OR REPLACE FUNCTION app_current_workspace_id()
            RETURNS text
            LANGUAGE sql
            STABLE
            AS $$
                SELECT NULLIF(current_setting('app.current_workspace_id', true), '');
            $$;
            """
        )

        for table_name in TENANT_TABLES:
            op.execute(f"ALTER TABLE {table_name} ENABLE ROW LEVEL SECURITY;")
            op.execute(f"ALTER TABLE {table_name} FORCE ROW LEVEL SECURITY;")
            op.execute(
                f"""
                CREATE POLICY {table_name}_select_policy ON {table_name}
                FOR SELECT USING (workspace_id = app_current_workspace_id());
                """
            )
            op.execute(
                f"""
                CREATE POLICY {table_name}_insert_policy ON {table_name}
                FOR INSERT WITH CHECK (workspace_id = app_current_workspace_id());
                """
            )
            op.execute(
                f"""
                CREATE POLICY {table_name}_update_policy ON {table_name}
                FOR UPDATE USING (workspace_id = app_current_workspace_id())
                WITH CHECK (workspace_id = app_current_workspace_id());
                """
            )
            op.execute(
                f"""
                CREATE POLICY {table_name}_delete_policy ON {table_name}
                FOR DELETE USING (workspace_id = app_current_workspace_id());
                """
            )


def downgrade() -> None:
    if _is_postgresql():
        for table_name in reversed(TENANT_TABLES):
            op.execute(f"DROP POLICY IF EXISTS {table_name}_select_policy ON {table_name};")
            op.execute(f"DROP POLICY IF EXISTS {table_name}_insert_policy ON {table_name};")
            op.execute(f"DROP POLICY IF EXISTS {table_name}_update_policy ON {table_name};")
            op.execute(f"DROP POLICY IF EXISTS {table_name}_delete_policy ON {table_name};")
        op.execute("DROP FUNCTION IF EXISTS app_current_workspace_id;")

    op.drop_index("ix_workflow_notifications_request", table_name="workflow_notifications")
    op.drop_index("ix_workflow_notifications_workspace_status_created_at", table_name="workflow_notifications")
    op.drop_table("workflow_notifications")

    op.drop_table("notification_settings")

    op.drop_index("ix_distribution_jobs_workspace_status_scheduled", table_name="distribution_jobs")
    op.drop_index("uq_distribution_jobs_active_content_item", table_name="distribution_jobs")
    op.drop_table("distribution_jobs")

    op.drop_table("distribution_profiles")

    op.drop_index("ix_approval_events_request_created_at", table_name="approval_events")
    op.drop_table("approval_events")

    op.drop_index("ix_approval_requests_workspace_created_at", table_name="approval_requests")
    op.drop_index("ix_approval_requests_workspace_state", table_name="approval_requests")
    op.drop_table("approval_requests")

    op.drop_index("ix_content_items_workspace_updated_at", table_name="content_items")
    op.drop_table("content_items")

    op.drop_index("ix_workspace_users_workspace_created_at", table_name="workspace_users")
    op.drop_table("workspace_users")

    op.drop_index("ix_users_email", table_name="users")
    op.drop_table("users")

    op.drop_table("workspaces")
