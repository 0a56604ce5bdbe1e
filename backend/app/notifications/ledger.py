"""
ledger.py — Append-only delivery ledger and statistics.

Only sends that actually left the system are recorded. Statistics are
derived from the entries on every call and never stored separately, so
``total_sent`` always equals the number of entries.

In-memory for the process lifetime (production: back with durable
storage behind the same interface).
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from typing import Dict, List, Optional

from backend.app.notifications.models import (
    ChannelType,
    DeliveryState,
    DeliveryStatus,
    Statistics,
    generate_message_id,
)

logger = logging.getLogger(__name__)


class DeliveryLedger:
    """Thread-safe append-only record of DeliveryStatus entries."""

    def __init__(self) -> None:
        self._entries: Dict[str, DeliveryStatus] = {}
        self._lock = threading.Lock()

    def record_sent(
        self,
        channel_id: str,
        *,
        channel_type: Optional[ChannelType] = None,
        recipient_count: int = 0,
        provider_message_id: Optional[str] = None,
    ) -> DeliveryStatus:
        """
        Mint a fresh message id and append a ``sent`` entry for it.

        The id is generated under the lock, so concurrent callers always
        receive distinct ids and each entry is written exactly once.
        """
        with self._lock:
            message_id = generate_message_id()
            while message_id in self._entries:
                message_id = generate_message_id()
            entry = DeliveryStatus(
                message_id=message_id,
                channel=channel_id,
                status=DeliveryState.SENT,
                channel_type=channel_type,
                recipient_count=recipient_count,
                provider_message_id=provider_message_id,
            )
            self._entries[message_id] = entry

        logger.debug(
            "Ledger entry %s written for channel %s", message_id, channel_id,
            extra={"message_id": message_id, "channel": channel_id},
        )
        return entry

    def get(self, message_id: str) -> Optional[DeliveryStatus]:
        return self._entries.get(message_id)

    def entries(
        self,
        *,
        channel: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[DeliveryStatus]:
        """Entries newest-first, optionally filtered by channel id."""
        with self._lock:
            snapshot = list(self._entries.values())
        snapshot.reverse()
        if channel is not None:
            snapshot = [e for e in snapshot if e.channel == channel]
        if limit is not None:
            snapshot = snapshot[:limit]
        return snapshot

    def statistics(self) -> Statistics:
        with self._lock:
            counts = Counter(entry.channel for entry in self._entries.values())
            total = len(self._entries)
        return Statistics(total_sent=total, channels=dict(counts))

    def __len__(self) -> int:
        return len(self._entries)
