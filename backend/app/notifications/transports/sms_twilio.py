"""
sms_twilio.py — SMS delivery via the Twilio REST API.

    App  →  HTTPS POST (form)  →  Twilio Messages API  →  Carrier  →  Handset

One message is created per recipient. The dispatch succeeds only when
every recipient is accepted; the first provider error is reported.

═══════════════════════════════════════════════════════════════════════════
MESSAGE FORMAT
═══════════════════════════════════════════════════════════════════════════

    "<subject>: <content>"     (content alone when the subject is empty)

Bodies longer than one GSM 7-bit segment (160 chars) are cut to fit
and end in "...".
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

import httpx

from backend.app.notifications.models import ChannelType, SmsConfig
from backend.app.notifications.transports.base import (
    BaseTransport,
    OutboundMessage,
    TransportResult,
)

logger = logging.getLogger(__name__)

SMS_MAX_GSM7 = 160
TWILIO_API_BASE = "https://api.twilio.com/2010-04-01/Accounts/{sid}"


def format_sms(subject: str, content: str, max_length: int = SMS_MAX_GSM7) -> str:
    """Join subject and content and truncate to one SMS segment."""
    body = f"{subject}: {content}" if subject else content
    if len(body) > max_length:
        body = body[: max_length - 3] + "..."
    return body


def _with_progress(error: str, accepted: int, total: int) -> str:
    if not accepted:
        return error
    return f"{error} ({accepted} of {total} recipient(s) already accepted)"


class TwilioSmsTransport(BaseTransport):
    """Send SMS through Twilio using httpx."""

    channel_type = ChannelType.SMS

    def __init__(
        self,
        *,
        timeout_seconds: float = 15.0,
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

    async def send(self, message: OutboundMessage, config: SmsConfig) -> TransportResult:
        body = format_sms(message.subject, message.content)
        url = TWILIO_API_BASE.format(sid=config.account_sid) + "/Messages.json"
        client = self._get_client()
        sids: List[str] = []

        for recipient in message.recipients:
            try:
                response = await client.post(
                    url,
                    data={"To": recipient, "From": config.phone_number, "Body": body},
                    auth=(config.account_sid, config.auth_token),
                )
            except httpx.HTTPError as e:
                logger.error("[SMS] Twilio unreachable for %s: %s", recipient, e)
                return TransportResult(
                    success=False,
                    error=_with_progress(str(e) or type(e).__name__, len(sids), len(message.recipients)),
                    details={"accepted": len(sids), "failed_recipient": recipient},
                )
            if response.status_code >= 400:
                err = f"HTTP {response.status_code}: {response.text[:200]}"
                logger.error("[SMS] Twilio rejected %s: %s", recipient, err)
                return TransportResult(
                    success=False,
                    error=_with_progress(err, len(sids), len(message.recipients)),
                    details={"accepted": len(sids), "failed_recipient": recipient},
                )
            sids.append(response.json().get("sid", ""))

        logger.info(
            "[SMS] %s → %d recipient(s), %d chars",
            message.channel_id, len(message.recipients), len(body),
            extra={"channel": message.channel_id, "recipient_count": len(message.recipients)},
        )
        return TransportResult(
            success=True,
            provider_message_id=sids[0] if len(sids) == 1 else None,
            details={"sids": sids, "message_length": len(body)},
        )

    async def probe(self, config: SmsConfig) -> TransportResult:
        url = TWILIO_API_BASE.format(sid=config.account_sid) + ".json"
        try:
            response = await self._get_client().get(
                url, auth=(config.account_sid, config.auth_token),
            )
        except httpx.HTTPError as e:
            return TransportResult(success=False, error=str(e) or type(e).__name__)
        if response.status_code != 200:
            return TransportResult(
                success=False,
                error=f"HTTP {response.status_code}: {response.text[:200]}",
            )
        return TransportResult(success=True, details={"status": response.json().get("status")})

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
