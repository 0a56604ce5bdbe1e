"""
webhook.py — HTTP webhook delivery.

Posts a JSON document to the channel's URL. Connects to anything that
accepts HTTP: automation hubs, chat incoming-webhooks, internal services.

    Payload:
        {
          "event":      metadata["event"] or "notification",
          "channel":    channel id,
          "subject":    rendered subject,
          "content":    rendered content,
          "recipients": [...],
          "metadata":   {...},
          "timestamp":  ISO-8601 UTC
        }

When the channel has a ``secret``, the raw body is signed:

    X-Webhook-Signature: sha256=<hex HMAC-SHA256(secret, body)>

Any 2xx response counts as delivered.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx

from backend.app.notifications.models import ChannelType, WebhookConfig
from backend.app.notifications.transports.base import (
    BaseTransport,
    OutboundMessage,
    TransportResult,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def build_payload(message: OutboundMessage) -> Dict[str, Any]:
    return {
        "event": message.metadata.get("event", "notification"),
        "channel": message.channel_id,
        "subject": message.subject,
        "content": message.content,
        "recipients": list(message.recipients),
        "metadata": message.metadata,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class WebhookTransport(BaseTransport):
    """Send notifications as HTTP requests using httpx."""

    channel_type = ChannelType.WEBHOOK

    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        user_agent: str = "NotificationDispatch-Webhook/1.0",
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self._client_factory = client_factory
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            if self._client_factory is not None:
                self._client = self._client_factory()
            else:
                self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    def _headers(self, config: WebhookConfig, body: bytes) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            **config.headers,
        }
        if config.secret:
            headers[SIGNATURE_HEADER] = sign_payload(config.secret, body)
        return headers

    async def send(self, message: OutboundMessage, config: WebhookConfig) -> TransportResult:
        body = json.dumps(build_payload(message), default=str).encode("utf-8")
        try:
            response = await self._get_client().request(
                config.method, config.url,
                content=body,
                headers=self._headers(config, body),
            )
        except httpx.HTTPError as e:
            logger.error("[WEBHOOK] %s → %s unreachable: %s", message.channel_id, config.url, e)
            return TransportResult(success=False, error=str(e) or type(e).__name__)

        if not response.is_success:
            err = f"HTTP {response.status_code}: {response.text[:200]}"
            logger.error("[WEBHOOK] %s → %s failed: %s", message.channel_id, config.url, err)
            return TransportResult(success=False, error=err)

        logger.info(
            "[WEBHOOK] %s → %s (status=%d)",
            message.channel_id, config.url, response.status_code,
            extra={"channel": message.channel_id, "status_code": response.status_code},
        )
        return TransportResult(
            success=True,
            provider_message_id=response.headers.get("X-Request-ID"),
            details={"status_code": response.status_code},
        )

    async def probe(self, config: WebhookConfig) -> TransportResult:
        try:
            response = await self._get_client().head(
                config.url, headers={"User-Agent": self.user_agent, **config.headers},
            )
        except httpx.HTTPError as e:
            return TransportResult(success=False, error=str(e) or type(e).__name__)
        # Receivers often reject HEAD with 405; reachability is what matters here
        if response.status_code >= 500:
            return TransportResult(success=False, error=f"HTTP {response.status_code}")
        return TransportResult(success=True, details={"status_code": response.status_code})

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
