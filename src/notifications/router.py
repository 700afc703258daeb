"""Workspace notification settings API routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from src.auth.dependencies import require_tenant_context, require_workspace_role
from src.auth.jwt import AuthContext
from src.auth.roles import ROLE_ADMIN
from src.core.logger import get_logger
from src.notifications.settings import NotificationSettings, get_notification_settings, update_notification_settings
from src.schemas.notifications import (
    EmailSettingsResponse,
    NotificationSettingsResponse,
    NotificationSettingsUpdateRequest,
    SlackSettingsResponse,
)
from src.storage.db import get_session
from src.storage.tenant import TenantContext, tenant_transaction


router = APIRouter(prefix="/notifications", tags=["notifications"])
logger = get_logger("contentos.notifications.api")


def _settings_response(settings: NotificationSettings) -> NotificationSettingsResponse:
    return NotificationSettingsResponse(
        email=EmailSettingsResponse(
            editor_alerts=settings.email.editor_alerts,
            manager_alerts=settings.email.manager_alerts,
            digest_hour=settings.email.digest_hour,
        ),
        slack=SlackSettingsResponse(
            webhook_configured=bool(settings.slack.webhook_url),
            mention_role=settings.slack.mention_role,
        ),
    )


@router.get("/settings", response_model=NotificationSettingsResponse)
def read_notification_settings(
    tenant: TenantContext = Depends(require_tenant_context),
    session: Session = Depends(get_session),
) -> NotificationSettingsResponse:
    with tenant_transaction(session, tenant):
        settings = get_notification_settings(session)
    return _settings_response(settings)


@router.put("/settings", response_model=NotificationSettingsResponse)
def write_notification_settings(
    payload: NotificationSettingsUpdateRequest,
    auth: AuthContext = Depends(require_workspace_role(ROLE_ADMIN)),
    tenant: TenantContext = Depends(require_tenant_context),
    session: Session = Depends(get_session),
) -> NotificationSettingsResponse:
    with tenant_transaction(session, tenant):
        settings = update_notification_settings(
            session,
            email=payload.email.model_dump(exclude_none=True),
            slack=payload.slack.model_dump(exclude_none=True),
        )
    logger.info(
        "notification_settings_updated",
        actor_id=auth.user_id,
        slack_configured=bool(settings.slack.webhook_url),
    )
    return _settings_response(settings)
