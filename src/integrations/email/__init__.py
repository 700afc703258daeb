"""Email provider integrations."""

from src.integrations.email.resend_client import (
    EmailClientError,
    ResendClient,
    get_resend_client,
    render_notification_html,
)

__all__ = ["EmailClientError", "ResendClient", "get_resend_client", "render_notification_html"]
