"""
transports — Per-channel-type delivery capabilities.

Each transport exposes:
    send(message, config)  → TransportResult
    probe(config)          → TransportResult

Transports hold no dispatch state. Message ids, the ledger and
failure-to-result conversion live in notification_service.
"""

from __future__ import annotations

from typing import Dict

from backend.app.core.config import Settings
from backend.app.notifications.models import ChannelType
from backend.app.notifications.transports.base import (
    BaseTransport,
    OutboundMessage,
    TransportResult,
)
from backend.app.notifications.transports.email_smtp import EmailTransport
from backend.app.notifications.transports.in_app import InAppTransport
from backend.app.notifications.transports.push import FcmPushTransport
from backend.app.notifications.transports.simulated import SimulatedTransport
from backend.app.notifications.transports.sms_twilio import TwilioSmsTransport
from backend.app.notifications.transports.webhook import WebhookTransport

__all__ = [
    "BaseTransport",
    "OutboundMessage",
    "TransportResult",
    "EmailTransport",
    "TwilioSmsTransport",
    "WebhookTransport",
    "FcmPushTransport",
    "InAppTransport",
    "SimulatedTransport",
    "build_transports",
    "simulated_transports",
]


def simulated_transports(*, inbox_limit: int = 50) -> Dict[ChannelType, BaseTransport]:
    """Logging stand-ins for every network transport plus a real in-app inbox."""
    transports: Dict[ChannelType, BaseTransport] = {
        t: SimulatedTransport(t) for t in ChannelType if t is not ChannelType.IN_APP
    }
    transports[ChannelType.IN_APP] = InAppTransport(limit=inbox_limit)
    return transports


def build_transports(settings: Settings) -> Dict[ChannelType, BaseTransport]:
    """One transport per channel type, chosen by NOTIFY_TRANSPORT_MODE."""
    if settings.is_simulation:
        return simulated_transports(inbox_limit=settings.IN_APP_INBOX_LIMIT)

    return {
        ChannelType.EMAIL: EmailTransport(
            from_name=settings.EMAIL_FROM_NAME,
            timeout_seconds=settings.SMTP_TIMEOUT_SECONDS,
        ),
        ChannelType.SMS: TwilioSmsTransport(timeout_seconds=settings.SMS_TIMEOUT_SECONDS),
        ChannelType.WEBHOOK: WebhookTransport(
            timeout_seconds=settings.WEBHOOK_TIMEOUT_SECONDS,
            user_agent=settings.WEBHOOK_USER_AGENT,
        ),
        ChannelType.PUSH: FcmPushTransport(timeout_seconds=settings.PUSH_TIMEOUT_SECONDS),
        ChannelType.IN_APP: InAppTransport(limit=settings.IN_APP_INBOX_LIMIT),
    }
