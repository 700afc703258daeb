"""Workflow notification settings, outbox dispatch and delivery worker."""

from src.notifications.dispatcher import (
    DeliveryOutcome,
    NotificationDispatcher,
    NotificationPayload,
    NotificationRequest,
)

__all__ = ["DeliveryOutcome", "NotificationDispatcher", "NotificationPayload", "NotificationRequest"]
