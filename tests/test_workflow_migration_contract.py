from __future__ import annotations

from pathlib import Path


MIGRATION_PATH = Path("migrations/versions/20261019_0001_workflow_core.py")


def test_workflow_migration_declares_core_tables() -> None:
    source = MIGRATION_PATH.read_text(encoding="utf-8")

    for table_name in (
        "workspaces",
        "users",
        "workspace_users",
        "content_items",
        "approval_requests",
        "approval_events",
        "distribution_profiles",
        "distribution_jobs",
        "notification_settings",
        "workflow_notifications",
    ):
        assert f'"{table_name}",' in source

    assert "ix_approval_requests_workspace_state" in source
    assert "ix_approval_events_request_created_at" in source
    assert "ix_workflow_notifications_workspace_status_created_at" in source
    assert "ix_distribution_jobs_workspace_status_scheduled" in source


def test_workflow_migration_enforces_single_active_job_per_content_item() -> None:
    source = MIGRATION_PATH.read_text(encoding="utf-8")

    assert "uq_distribution_jobs_active_content_item" in source
    assert "status IN ('QUEUED', 'SCHEDULED', 'SENDING')" in source
    assert "postgresql_where" in source
    assert "sqlite_where" in source


def test_workflow_migration_declares_rls_contract() -> None:
    source = MIGRATION_PATH.read_text(encoding="utf-8")

    assert "ENABLE ROW LEVEL SECURITY" in source
    assert "FORCE ROW LEVEL SECURITY" in source
    assert "app_current_workspace_id" in source
    assert "current_setting('app.current_workspace_id', true)" in source
    assert "DROP FUNCTION IF EXISTS app_current_workspace_id" in source


def test_workflow_migration_matches_model_metadata() -> None:
    from src.storage.db import Base, load_models

    load_models()
    source = MIGRATION_PATH.read_text(encoding="utf-8")
    for table_name in Base.metadata.tables:
        assert f'"{table_name}",' in source


def test_workflow_migration_guards_concurrent_approval_writes() -> None:
    source = MIGRATION_PATH.read_text(encoding="utf-8")

    assert 'sa.Column("version", sa.Integer(), nullable=False, server_default="1")' in source
    assert "uq_approval_events_request_sequence" in source
