"""Chat webhook integrations."""

from src.integrations.chat.webhook_client import ChatWebhookClient, ChatWebhookError, get_chat_webhook_client

__all__ = ["ChatWebhookClient", "ChatWebhookError", "get_chat_webhook_client"]
