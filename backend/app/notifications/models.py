"""
models.py — Shared data structures for the notification dispatch engine.

Defines:
    • ChannelType      — closed set of delivery channel kinds
    • DeliveryState    — ledger status values
    • Channel          — a configured delivery endpoint
    • Template         — a named subject/content pair with variable slots
    • SendRequest      — one logical notification to send
    • DeliveryResult   — outcome of one send attempt
    • DeliveryStatus   — ledger entry for a successful send
    • Statistics       — aggregate view over the ledger
    • ValidationResult / ChannelTestResult
    • Typed channel configs (EmailConfig, SmsConfig, WebhookConfig, PushConfig)

═══════════════════════════════════════════════════════════════════════════
CHANNEL CONFIGURATION SHAPES
═══════════════════════════════════════════════════════════════════════════

    Type       Config block   Required fields
    ───────    ────────────   ─────────────────────────────────────────
    email      smtp           host, port, user, pass
    sms        twilio         accountSid, authToken, phoneNumber
    webhook    (top level)    url
    push       fcm            serverKey
    in_app     —              —

Channel.config stays a plain mapping so it can be stored and returned
as JSON; transports never read it directly. parse_channel_config()
switches on the channel's type and returns the matching typed record.
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from backend.app.core.errors import ChannelConfigError


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class ChannelType(str, Enum):
    """Available delivery channel kinds."""
    EMAIL   = "email"
    SMS     = "sms"
    WEBHOOK = "webhook"
    PUSH    = "push"
    IN_APP  = "in_app"


class DeliveryState(str, Enum):
    """Ledger status for a dispatched message."""
    SENT      = "sent"       # accepted by the transport
    DELIVERED = "delivered"  # confirmed by the provider (async, not written by the core)
    FAILED    = "failed"     # reported failed by the provider after acceptance


# Config keys that never leave the process in API output
SECRET_CONFIG_KEYS = frozenset({"pass", "authToken", "serverKey", "secret"})


def generate_message_id() -> str:
    return f"msg_{uuid.uuid4().hex}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _mask_secrets(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            k: ("********" if k in SECRET_CONFIG_KEYS and v else _mask_secrets(v))
            for k, v in value.items()
        }
    return value


# ═══════════════════════════════════════════════════════════════════════════
# Registry records
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Channel:
    """
    A configured delivery endpoint.

    Attributes
    ----------
    id : str
        Unique identifier, stable for the process lifetime.
    type : ChannelType
        Determines the config shape and which transport is invoked.
        Plain strings are coerced; unknown values raise ValueError.
    name : str
        Human-readable label (not unique).
    config : dict
        Type-specific configuration mapping.
    enabled : bool
        Disabled channels reject sends before any transport is invoked.
    """
    id: str
    type: ChannelType
    name: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    enabled: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.type, ChannelType):
            object.__setattr__(self, "type", ChannelType(self.type))
        # private copy: later edits to the caller's dict never reach a registered channel
        object.__setattr__(self, "config", copy.deepcopy(dict(self.config or {})))

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Channel":
        return cls(
            id=data["id"],
            type=data["type"],
            name=data.get("name", ""),
            config=dict(data.get("config") or {}),
            enabled=bool(data.get("enabled", True)),
        )

    def to_dict(self, *, mask_secrets: bool = True) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "config": _mask_secrets(self.config) if mask_secrets else self.config,
            "enabled": self.enabled,
        }


@dataclass(frozen=True)
class Template:
    """A reusable message shape; ``variables`` lists the expected slots in order."""
    id: str
    name: str
    subject: str = ""
    content: str = ""
    variables: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not isinstance(self.variables, tuple):
            object.__setattr__(self, "variables", tuple(self.variables))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "subject": self.subject,
            "content": self.content,
            "variables": list(self.variables),
        }


# ═══════════════════════════════════════════════════════════════════════════
# Dispatch records
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class SendRequest:
    """
    One logical notification.

    Either ``template`` (+ ``variables``) or literal ``subject``/``content``
    is used. Template mode wins when both are given.

    When both ``user_id`` and ``event`` are set, the user's preferences
    for the channel's type decide whether the send goes out at all.
    """
    channel_id: str
    recipients: List[str] = field(default_factory=list)
    template: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    subject: Optional[str] = None
    content: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    event: Optional[str] = None

    @property
    def uses_template(self) -> bool:
        return self.template is not None


@dataclass
class DeliveryResult:
    """Outcome of one send attempt. ``message_id`` only on success, ``error`` only on failure."""
    success: bool
    channel: Optional[str] = None
    message_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def sent(cls, channel: str, message_id: str) -> "DeliveryResult":
        return cls(success=True, channel=channel, message_id=message_id)

    @classmethod
    def failed(cls, channel: Optional[str], error: str) -> "DeliveryResult":
        return cls(success=False, channel=channel, error=error)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"success": self.success, "channel": self.channel}
        if self.success:
            d["message_id"] = self.message_id
        else:
            d["error"] = self.error
        return d


@dataclass(frozen=True)
class DeliveryStatus:
    """Ledger entry keyed by ``message_id``."""
    message_id: str
    channel: str
    status: DeliveryState = DeliveryState.SENT
    channel_type: Optional[ChannelType] = None
    recipient_count: int = 0
    provider_message_id: Optional[str] = None
    sent_at: datetime = field(default_factory=_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "channel": self.channel,
            "status": self.status.value,
            "channel_type": self.channel_type.value if self.channel_type else None,
            "recipient_count": self.recipient_count,
            "provider_message_id": self.provider_message_id,
            "sent_at": self.sent_at.isoformat(),
        }


@dataclass
class Statistics:
    """Aggregate delivery counts, recomputed from the ledger on demand."""
    total_sent: int = 0
    channels: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"total_sent": self.total_sent, "channels": dict(self.channels)}


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


@dataclass
class ChannelTestResult:
    """Outcome of a connectivity probe. Never counted as a send."""
    success: bool
    channel_id: str
    error: Optional[str] = None
    latency_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "success": self.success,
            "channel_id": self.channel_id,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.error:
            d["error"] = self.error
        return d


# ═══════════════════════════════════════════════════════════════════════════
# Typed channel configs
# ═══════════════════════════════════════════════════════════════════════════

def _block(config: Mapping[str, Any], key: str, channel_type: ChannelType) -> Mapping[str, Any]:
    block = config.get(key)
    if not isinstance(block, Mapping) or not block:
        raise ChannelConfigError(channel_type.value, f"missing '{key}' block")
    return block


def _require(block: Mapping[str, Any], key: str, channel_type: ChannelType) -> Any:
    value = block.get(key)
    if value is None or value == "":
        raise ChannelConfigError(channel_type.value, f"missing '{key}'")
    return value


@dataclass(frozen=True)
class EmailConfig:
    host: str
    port: int
    user: str
    password: str
    from_address: Optional[str] = None
    from_name: Optional[str] = None
    start_tls: bool = True

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "EmailConfig":
        smtp = _block(config, "smtp", ChannelType.EMAIL)
        try:
            port = int(_require(smtp, "port", ChannelType.EMAIL))
        except (TypeError, ValueError):
            raise ChannelConfigError("email", "smtp.port must be an integer")
        return cls(
            host=str(_require(smtp, "host", ChannelType.EMAIL)),
            port=port,
            user=str(_require(smtp, "user", ChannelType.EMAIL)),
            password=str(_require(smtp, "pass", ChannelType.EMAIL)),
            from_address=smtp.get("from"),
            from_name=smtp.get("fromName"),
            start_tls=bool(smtp.get("startTls", True)),
        )


@dataclass(frozen=True)
class SmsConfig:
    account_sid: str
    auth_token: str
    phone_number: str

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "SmsConfig":
        twilio = _block(config, "twilio", ChannelType.SMS)
        return cls(
            account_sid=str(_require(twilio, "accountSid", ChannelType.SMS)),
            auth_token=str(_require(twilio, "authToken", ChannelType.SMS)),
            phone_number=str(_require(twilio, "phoneNumber", ChannelType.SMS)),
        )


def _headers(value: Any) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ChannelConfigError(ChannelType.WEBHOOK.value, "'headers' must be a mapping")
    return {str(k): str(v) for k, v in value.items()}


@dataclass(frozen=True)
class WebhookConfig:
    url: str
    secret: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    method: str = "POST"

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "WebhookConfig":
        return cls(
            url=str(_require(config, "url", ChannelType.WEBHOOK)),
            secret=config.get("secret") or None,
            headers=_headers(config.get("headers")),
            method=str(config.get("method", "POST")).upper(),
        )


@dataclass(frozen=True)
class PushConfig:
    server_key: str
    endpoint: str = "https://fcm.googleapis.com/fcm/send"

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "PushConfig":
        fcm = _block(config, "fcm", ChannelType.PUSH)
        return cls(
            server_key=str(_require(fcm, "serverKey", ChannelType.PUSH)),
            endpoint=str(fcm.get("endpoint") or cls.endpoint),
        )


@dataclass(frozen=True)
class InAppConfig:
    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> "InAppConfig":
        return cls()


ChannelConfig = Union[EmailConfig, SmsConfig, WebhookConfig, PushConfig, InAppConfig]

CONFIG_TYPES: Dict[ChannelType, type] = {
    ChannelType.EMAIL:   EmailConfig,
    ChannelType.SMS:     SmsConfig,
    ChannelType.WEBHOOK: WebhookConfig,
    ChannelType.PUSH:    PushConfig,
    ChannelType.IN_APP:  InAppConfig,
}


def parse_channel_config(channel: Channel) -> ChannelConfig:
    """
    Build the typed config record for ``channel``.

    Raises
    ------
    ChannelConfigError
        If a required block or field is missing or malformed.
    """
    try:
        return CONFIG_TYPES[channel.type].from_mapping(channel.config)
    except (AttributeError, TypeError, ValueError) as e:
        raise ChannelConfigError(channel.type.value, str(e)) from e
