"""
email_smtp.py — Email delivery over SMTP.

One multipart/alternative message (plain text + minimal HTML) is sent
per dispatch, addressed to every recipient. Connection details come from
the channel's ``smtp`` block; the timeout comes from settings.

Probe: connect, STARTTLS when configured, authenticate, quit. No
message is submitted.
"""

from __future__ import annotations

import html
import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid

import aiosmtplib

from backend.app.notifications.models import ChannelType, EmailConfig
from backend.app.notifications.transports.base import (
    BaseTransport,
    OutboundMessage,
    TransportResult,
)

logger = logging.getLogger(__name__)


def _build_html_body(subject: str, content: str) -> str:
    paragraphs = "".join(
        f"<p>{html.escape(block).replace(chr(10), '<br>')}</p>"
        for block in content.split("\n\n") if block.strip()
    )
    return (
        '<div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;">'
        f"<h3>{html.escape(subject)}</h3>{paragraphs}</div>"
    )


class EmailTransport(BaseTransport):
    """Send messages via SMTP using aiosmtplib."""

    channel_type = ChannelType.EMAIL

    def __init__(self, *, from_name: str = "Notifications", timeout_seconds: float = 20.0):
        self.from_name = from_name
        self.timeout_seconds = timeout_seconds

    def build_message(self, message: OutboundMessage, config: EmailConfig) -> MIMEMultipart:
        sender = config.from_address or config.user
        msg = MIMEMultipart("alternative")
        msg["From"] = formataddr((config.from_name or self.from_name, sender))
        msg["To"] = ", ".join(message.recipients)
        msg["Subject"] = message.subject
        msg["Message-ID"] = make_msgid(domain=sender.split("@")[-1] if "@" in sender else None)
        msg.attach(MIMEText(message.content, "plain", "utf-8"))
        msg.attach(MIMEText(_build_html_body(message.subject, message.content), "html", "utf-8"))
        return msg

    async def send(self, message: OutboundMessage, config: EmailConfig) -> TransportResult:
        msg = self.build_message(message, config)
        try:
            await aiosmtplib.send(
                msg,
                hostname=config.host,
                port=config.port,
                username=config.user,
                password=config.password,
                use_tls=config.port == 465,
                start_tls=config.start_tls and config.port != 465,
                timeout=self.timeout_seconds,
            )
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error("[EMAIL] SMTP error via %s: %s", config.host, e)
            return TransportResult(success=False, error=str(e) or type(e).__name__)

        logger.info(
            "[EMAIL] %s → %d recipient(s): Subject='%s'",
            message.channel_id, len(message.recipients), message.subject,
            extra={"channel": message.channel_id, "recipient_count": len(message.recipients)},
        )
        return TransportResult(
            success=True,
            provider_message_id=msg["Message-ID"],
            details={"host": config.host},
        )

    async def probe(self, config: EmailConfig) -> TransportResult:
        client = aiosmtplib.SMTP(
            hostname=config.host,
            port=config.port,
            use_tls=config.port == 465,
            start_tls=config.start_tls and config.port != 465,
            timeout=self.timeout_seconds,
        )
        try:
            await client.connect()
            await client.login(config.user, config.password)
            await client.quit()
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.warning("[EMAIL] Check against %s failed: %s", config.host, e)
            return TransportResult(success=False, error=str(e) or type(e).__name__)
        finally:
            if client.is_connected:
                client.close()
        return TransportResult(success=True, details={"host": config.host})
