"""
in_app.py — In-app notification inbox.

Messages are kept per recipient (user id), newest first, capped at
``limit`` entries. Nothing leaves the process, so sends always succeed.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List
from uuid import uuid4

from backend.app.notifications.models import ChannelType, InAppConfig
from backend.app.notifications.transports.base import (
    BaseTransport,
    OutboundMessage,
    TransportResult,
)

logger = logging.getLogger(__name__)


class InAppTransport(BaseTransport):
    """Deliver into bounded per-recipient inboxes."""

    channel_type = ChannelType.IN_APP

    def __init__(self, *, limit: int = 50):
        self.limit = limit
        self._inboxes: Dict[str, Deque[Dict[str, Any]]] = defaultdict(
            lambda: deque(maxlen=self.limit)
        )
        self._lock = threading.Lock()

    async def send(self, message: OutboundMessage, config: InAppConfig) -> TransportResult:
        item_id = f"inapp_{uuid4().hex[:16]}"
        item = {
            "id": item_id,
            "channel": message.channel_id,
            "subject": message.subject,
            "content": message.content,
            "metadata": dict(message.metadata),
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        with self._lock:
            for recipient in message.recipients:
                self._inboxes[recipient].appendleft(dict(item))

        logger.info(
            "[IN_APP] %s → %d inbox(es)", message.channel_id, len(message.recipients),
            extra={"channel": message.channel_id, "recipient_count": len(message.recipients)},
        )
        return TransportResult(success=True, provider_message_id=item_id)

    async def probe(self, config: InAppConfig) -> TransportResult:
        return TransportResult(success=True)

    def inbox(self, recipient: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._inboxes.get(recipient, ()))
