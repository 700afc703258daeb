"""Incoming-webhook client for Slack-style chat notifications."""

from __future__ import annotations

from functools import lru_cache
from typing import Dict, Optional

import httpx

from src.core.config import get_settings


class ChatWebhookError(RuntimeError):
    """Raised when a chat webhook post fails."""


def format_chat_message(
    *,
    subject: str,
    body: str,
    action_url: Optional[str] = None,
    mention_role: Optional[str] = None,
) -> str:
    lines = [f"*{subject}*", body]
    if action_url:
        lines.append(f"<{action_url}|Open request>")
    if mention_role:
        lines.append(f"@{mention_role}")
    return "\n".join(lines)


class ChatWebhookClient:
    def __init__(
        self,
        *,
        timeout_seconds: int = 10,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    @staticmethod
    def _headers() -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def post_message(self, *, webhook_url: str, text: str) -> None:
        url = webhook_url.strip()
        if not url:
            raise ChatWebhookError("chat_webhook_url_missing")
        if not text.strip():
            raise ChatWebhookError("chat_message_missing")

        try:
            if self._client is not None:
                response = self._client.post(url, headers=self._headers(), json={"text": text})
            else:
                with httpx.Client(timeout=self._timeout_seconds) as client:
                    response = client.post(url, headers=self._headers(), json={"text": text})
        except httpx.TimeoutException as exc:
            raise ChatWebhookError("chat_webhook_timeout") from exc
        except httpx.HTTPError as exc:
            raise ChatWebhookError(f"chat_webhook_unreachable detail={exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            detail = response.text.strip()
            if len(detail) > 200:
                detail = detail[:200] + "..."
            raise ChatWebhookError(f"chat_webhook_failed status={response.status_code} detail={detail}")


@lru_cache(maxsize=1)
def get_chat_webhook_client() -> ChatWebhookClient:
    return ChatWebhookClient(timeout_seconds=get_settings().notification_webhook_timeout_seconds)
