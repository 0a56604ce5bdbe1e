"""
Base transport

Narrow capability the dispatcher depends on: send one rendered message
to a channel's recipients, or probe the channel's connectivity.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from backend.app.notifications.models import ChannelConfig, ChannelType


@dataclass
class OutboundMessage:
    """A rendered message ready for a transport."""
    channel_id: str
    recipients: List[str]
    subject: str = ""
    content: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TransportResult:
    """Result of a send or probe attempt."""
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class BaseTransport(ABC):
    """Abstract delivery transport for one channel type."""

    channel_type: ChannelType

    @abstractmethod
    async def send(self, message: OutboundMessage, config: ChannelConfig) -> TransportResult:
        """
        Deliver ``message`` using the channel's typed ``config``.

        Implementations report provider failures as
        ``TransportResult(success=False)``; anything they raise is
        converted to a failure by the dispatcher.
        """
        ...

    @abstractmethod
    async def probe(self, config: ChannelConfig) -> TransportResult:
        """Check connectivity/credentials without sending a message."""
        ...

    async def close(self) -> None:
        """Release pooled resources."""
