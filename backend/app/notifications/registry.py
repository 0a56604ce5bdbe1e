"""
registry.py — Channel registry and configuration validator.

The registry owns Channel records for the lifetime of a service
instance. Channels are frozen dataclasses, so an update swaps in a new
complete record; a send that already holds the old record keeps using it.

═══════════════════════════════════════════════════════════════════════════
VALIDATION GRANULARITY
═══════════════════════════════════════════════════════════════════════════

Each channel type declares a ConfigSchema: an optional config *block*
(e.g. ``smtp``) and the fields required inside it.

    Config state                          Errors reported
    ──────────────────────────────────    ─────────────────────────────────
    block absent / empty / not a dict     1  ("Missing smtp configuration")
    block present, N fields missing       N  ("Missing smtp.host", ...)
    field present but malformed           1 per field ("Invalid smtp.port: ...")
    optional field present, malformed     1 per field ("Invalid headers: ...")

Types without a block (webhook) check their fields at the top level.
Validation never runs implicitly during a send.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from backend.app.core.errors import DuplicateChannelError
from backend.app.notifications.models import Channel, ChannelType, ValidationResult

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Config schemas
# ═══════════════════════════════════════════════════════════════════════════

def _check_port(value: Any) -> Optional[str]:
    try:
        port = int(value)
    except (TypeError, ValueError):
        return "must be an integer between 1 and 65535"
    if not 1 <= port <= 65535:
        return "must be an integer between 1 and 65535"
    return None


def _check_url(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not value.startswith(("http://", "https://")):
        return "must start with http:// or https://"
    return None


def _check_headers(value: Any) -> Optional[str]:
    if not isinstance(value, Mapping):
        return "must be a mapping of header names to values"
    return None


def _check_method(value: Any) -> Optional[str]:
    if str(value).upper() not in ("POST", "PUT", "PATCH"):
        return "must be one of POST, PUT, PATCH"
    return None


def _check_e164(value: Any) -> Optional[str]:
    text = str(value)
    if not text.startswith("+") or not text[1:].isdigit():
        return "must be an E.164 number like +15551234567"
    return None


@dataclass(frozen=True)
class ConfigSchema:
    """Required configuration for one channel type."""
    block: Optional[str] = None
    required: Tuple[str, ...] = ()
    checks: Dict[str, Callable[[Any], Optional[str]]] = field(default_factory=dict)
    # checked only when present
    optional: Dict[str, Callable[[Any], Optional[str]]] = field(default_factory=dict)

    def _label(self, name: str) -> str:
        return f"{self.block}.{name}" if self.block else name

    def validate(self, config: Mapping[str, Any]) -> List[str]:
        if not self.required:
            return []

        if self.block:
            section = config.get(self.block)
            if not isinstance(section, Mapping) or not section:
                return [f"Missing {self.block} configuration"]
        else:
            section = config

        errors: List[str] = []
        for name in self.required:
            value = section.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                errors.append(f"Missing {self._label(name)}")
                continue
            check = self.checks.get(name)
            problem = check(value) if check else None
            if problem:
                errors.append(f"Invalid {self._label(name)}: {problem}")
        for name, check in self.optional.items():
            if section.get(name) is None:
                continue
            problem = check(section[name])
            if problem:
                errors.append(f"Invalid {self._label(name)}: {problem}")
        return errors


CONFIG_SCHEMAS: Dict[ChannelType, ConfigSchema] = {
    ChannelType.EMAIL: ConfigSchema(
        block="smtp",
        required=("host", "port", "user", "pass"),
        checks={"port": _check_port},
    ),
    ChannelType.SMS: ConfigSchema(
        block="twilio",
        required=("accountSid", "authToken", "phoneNumber"),
        checks={"phoneNumber": _check_e164},
    ),
    ChannelType.WEBHOOK: ConfigSchema(
        required=("url",),
        checks={"url": _check_url},
        optional={"headers": _check_headers, "method": _check_method},
    ),
    ChannelType.PUSH: ConfigSchema(
        block="fcm",
        required=("serverKey",),
    ),
    ChannelType.IN_APP: ConfigSchema(),
}


def validate_channel(channel: Channel) -> ValidationResult:
    """
    Inspect ``channel.config`` against its type's schema.

    Collects every problem instead of stopping at the first. Pure: no
    registry access, no transport calls.
    """
    errors: List[str] = []
    if not channel.id or not channel.id.strip():
        errors.append("Channel id is required")
    if not channel.name or not channel.name.strip():
        errors.append("Channel name is required")

    schema = CONFIG_SCHEMAS.get(channel.type)
    if schema is None:
        errors.append(f"Unsupported channel type: {channel.type.value}")
    else:
        errors.extend(schema.validate(channel.config or {}))

    return ValidationResult(valid=not errors, errors=errors)


# ═══════════════════════════════════════════════════════════════════════════
# Registry
# ═══════════════════════════════════════════════════════════════════════════

class ChannelRegistry:
    """Channel records keyed by id, kept in insertion order."""

    def __init__(self, channels: Optional[Iterable[Channel]] = None):
        self._channels: Dict[str, Channel] = {}
        self._lock = threading.Lock()
        for channel in channels or ():
            self.upsert(channel)

    def get(self, channel_id: str) -> Optional[Channel]:
        return self._channels.get(channel_id)

    def all(self) -> List[Channel]:
        with self._lock:
            return list(self._channels.values())

    def upsert(self, channel: Channel) -> None:
        """Insert, or fully replace the entry with the same id (no field merge)."""
        with self._lock:
            existed = channel.id in self._channels
            self._channels[channel.id] = channel
        logger.info(
            "Channel %s %s (type=%s, enabled=%s)",
            channel.id, "replaced" if existed else "registered",
            channel.type.value, channel.enabled,
            extra={"channel": channel.id, "channel_type": channel.type.value},
        )

    def add(self, channel: Channel) -> None:
        """Insert a new channel; raises DuplicateChannelError if the id exists."""
        with self._lock:
            if channel.id in self._channels:
                raise DuplicateChannelError(channel.id)
            self._channels[channel.id] = channel
        logger.info(
            "Channel %s registered (type=%s, enabled=%s)",
            channel.id, channel.type.value, channel.enabled,
            extra={"channel": channel.id, "channel_type": channel.type.value},
        )

    def __len__(self) -> int:
        return len(self._channels)

    def __contains__(self, channel_id: object) -> bool:
        return channel_id in self._channels
