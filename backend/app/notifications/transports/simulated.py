"""
simulated.py — Logging stand-in for network transports.

Used when ``NOTIFY_TRANSPORT_MODE=simulation`` (the development
default): every send and probe succeeds after logging what would have
gone over the wire. The most recent ``history`` messages are kept for
inspection.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque
from uuid import uuid4

from backend.app.notifications.models import ChannelConfig, ChannelType
from backend.app.notifications.transports.base import (
    BaseTransport,
    OutboundMessage,
    TransportResult,
)

logger = logging.getLogger(__name__)


class SimulatedTransport(BaseTransport):
    def __init__(self, channel_type: ChannelType, *, history: int = 100):
        self.channel_type = channel_type
        self.sent: Deque[OutboundMessage] = deque(maxlen=history)

    async def send(self, message: OutboundMessage, config: ChannelConfig) -> TransportResult:
        self.sent.append(message)
        preview = message.content[:80] + ("..." if len(message.content) > 80 else "")
        logger.info(
            "[%s/sim] %s → %s: Subject='%s' '%s'",
            self.channel_type.value.upper(), message.channel_id,
            ", ".join(message.recipients), message.subject, preview,
            extra={"channel": message.channel_id, "recipient_count": len(message.recipients)},
        )
        return TransportResult(
            success=True,
            provider_message_id=f"sim_{uuid4().hex[:12]}",
            details={"mode": "simulated"},
        )

    async def probe(self, config: ChannelConfig) -> TransportResult:
        return TransportResult(success=True, details={"mode": "simulated"})
