"""
push.py — Mobile/web push via Firebase Cloud Messaging (HTTP API).

Recipients are device registration tokens. The probe submits a
``dry_run`` request, which FCM validates (server key included) without
delivering anything.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

from backend.app.notifications.models import ChannelType, PushConfig
from backend.app.notifications.transports.base import (
    BaseTransport,
    OutboundMessage,
    TransportResult,
)

logger = logging.getLogger(__name__)


def build_push_payload(
    message: OutboundMessage,
    tokens: List[str],
    *,
    dry_run: bool = False,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "registration_ids": tokens,
        "notification": {"title": message.subject, "body": message.content},
        "data": {"channel": message.channel_id, **message.metadata},
    }
    if dry_run:
        payload["dry_run"] = True
    return payload


class FcmPushTransport(BaseTransport):
    """Send push notifications through FCM using httpx."""

    channel_type = ChannelType.PUSH

    def __init__(
        self,
        *,
        timeout_seconds: float = 10.0,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self._client_factory = client_factory
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            if self._client_factory is not None:
                self._client = self._client_factory()
            else:
                self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def _post(self, config: PushConfig, payload: Dict[str, Any]) -> httpx.Response:
        return await self._get_client().post(
            config.endpoint,
            json=payload,
            headers={"Authorization": f"key={config.server_key}"},
        )

    async def send(self, message: OutboundMessage, config: PushConfig) -> TransportResult:
        try:
            response = await self._post(config, build_push_payload(message, message.recipients))
        except httpx.HTTPError as e:
            logger.error("[PUSH] %s unreachable: %s", message.channel_id, e)
            return TransportResult(success=False, error=str(e) or type(e).__name__)
        if response.status_code != 200:
            err = f"HTTP {response.status_code}: {response.text[:200]}"
            logger.error("[PUSH] %s failed: %s", message.channel_id, err)
            return TransportResult(success=False, error=err)

        data = response.json()
        if data.get("failure"):
            errors = [r.get("error") for r in data.get("results", []) if r.get("error")]
            return TransportResult(
                success=False,
                error=f"FCM rejected {data['failure']} token(s): {', '.join(errors) or 'unknown'}",
                details=data,
            )

        logger.info(
            "[PUSH] %s → %d device(s): %s",
            message.channel_id, len(message.recipients), message.subject,
            extra={"channel": message.channel_id, "recipient_count": len(message.recipients)},
        )
        return TransportResult(
            success=True,
            provider_message_id=str(data.get("multicast_id")) if data.get("multicast_id") else None,
            details={"success": data.get("success", 0)},
        )

    async def probe(self, config: PushConfig) -> TransportResult:
        probe_message = OutboundMessage(channel_id="probe", recipients=[], subject="probe")
        try:
            response = await self._post(
                config, build_push_payload(probe_message, ["probe"], dry_run=True),
            )
        except httpx.HTTPError as e:
            return TransportResult(success=False, error=str(e) or type(e).__name__)
        if response.status_code in (401, 403):
            return TransportResult(success=False, error="FCM rejected the server key")
        if response.status_code >= 500:
            return TransportResult(success=False, error=f"HTTP {response.status_code}")
        return TransportResult(success=True, details={"status_code": response.status_code})

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
