"""
preferences.py — Per-user notification preferences.

Each user has one preference block per channel type: an on/off switch
and the list of events that user wants on that channel. A send that
names both a user and an event is dropped before rendering when the
user's block for the channel's type does not allow the event.

═══════════════════════════════════════════════════════════════════════════
DEFAULTS (users with no stored preferences)
═══════════════════════════════════════════════════════════════════════════

    Channel    Enabled   Events
    ────────   ───────   ──────────────────────────────────────────────────
    email      yes       scan_completed, high_risk_detected,
                         critical_vulnerability, welcome, password_reset
    sms        no        critical_vulnerability, system_alert
    webhook    no        all
    push       no        all
    in_app     yes       all

Updates merge per channel: fields left out of an update keep their
current value, and channel types left out are untouched.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Tuple

from backend.app.core.errors import ValidationError
from backend.app.notifications.models import ChannelType

logger = logging.getLogger(__name__)


NOTIFICATION_EVENTS: Tuple[str, ...] = (
    "scan_completed",
    "scan_failed",
    "high_risk_detected",
    "critical_vulnerability",
    "system_alert",
    "user_invited",
    "password_reset",
    "welcome",
    "report_ready",
    "quota_exceeded",
    "subscription_expiring",
)


def check_event(event: str) -> str:
    """Return ``event`` if known, else raise ValidationError."""
    if event not in NOTIFICATION_EVENTS:
        raise ValidationError(f"Unknown notification event: {event}", field="event")
    return event


@dataclass(frozen=True)
class ChannelPreference:
    enabled: bool = False
    events: Tuple[str, ...] = ()

    def allows(self, event: str) -> bool:
        return self.enabled and event in self.events

    def merged(self, changes: Mapping[str, Any]) -> "ChannelPreference":
        unknown = set(changes) - {"enabled", "events"}
        if unknown:
            raise ValidationError(
                f"Unknown preference fields: {', '.join(sorted(unknown))}", field="channels",
            )
        updated = self
        if changes.get("enabled") is not None:
            updated = replace(updated, enabled=bool(changes["enabled"]))
        if changes.get("events") is not None:
            events = changes["events"]
            if isinstance(events, str) or not isinstance(events, (list, tuple)):
                raise ValidationError("events must be a list of event names", field="events")
            updated = replace(updated, events=tuple(dict.fromkeys(check_event(e) for e in events)))
        return updated

    def to_dict(self) -> Dict[str, Any]:
        return {"enabled": self.enabled, "events": list(self.events)}


@dataclass(frozen=True)
class UserPreferences:
    user_id: str
    channels: Dict[ChannelType, ChannelPreference] = field(default_factory=dict)

    def allows(self, channel_type: ChannelType, event: str) -> bool:
        pref = self.channels.get(channel_type)
        return pref is not None and pref.allows(event)

    def wants(self, event: str) -> bool:
        """True when at least one channel type would carry ``event``."""
        return any(pref.allows(event) for pref in self.channels.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "channels": {t.value: pref.to_dict() for t, pref in self.channels.items()},
        }


def default_preferences(user_id: str) -> UserPreferences:
    return UserPreferences(
        user_id=user_id,
        channels={
            ChannelType.EMAIL: ChannelPreference(True, (
                "scan_completed", "high_risk_detected", "critical_vulnerability",
                "welcome", "password_reset",
            )),
            ChannelType.SMS: ChannelPreference(False, ("critical_vulnerability", "system_alert")),
            ChannelType.WEBHOOK: ChannelPreference(False, NOTIFICATION_EVENTS),
            ChannelType.PUSH: ChannelPreference(False, NOTIFICATION_EVENTS),
            ChannelType.IN_APP: ChannelPreference(True, NOTIFICATION_EVENTS),
        },
    )


class PreferenceStore:
    """Thread-safe map of user id → UserPreferences."""

    def __init__(self) -> None:
        self._users: Dict[str, UserPreferences] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str) -> UserPreferences:
        with self._lock:
            stored = self._users.get(user_id)
        return stored if stored is not None else default_preferences(user_id)

    def update(
        self, user_id: str, changes: Mapping[str, Mapping[str, Any]],
    ) -> UserPreferences:
        """
        Merge ``changes`` (channel type → {enabled?, events?}) into the
        user's current preferences and store the result.

        Raises
        ------
        ValidationError
            Unknown channel type, unknown event or malformed block. Nothing
            is stored in that case.
        """
        if not user_id:
            raise ValidationError("User id is required", field="user_id")

        with self._lock:
            current = self._users.get(user_id) or default_preferences(user_id)
            channels = dict(current.channels)
            for key, block in changes.items():
                try:
                    channel_type = ChannelType(key)
                except ValueError:
                    raise ValidationError(f"Unknown channel type: {key}", field="channels") from None
                if not isinstance(block, Mapping):
                    raise ValidationError(
                        f"Preferences for {key} must be an object", field="channels",
                    )
                channels[channel_type] = channels.get(channel_type, ChannelPreference()).merged(block)
            updated = UserPreferences(user_id=user_id, channels=channels)
            self._users[user_id] = updated

        logger.info("Preferences updated for user %s (%s)", user_id, ", ".join(changes) or "no changes")
        return updated

    def __contains__(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._users

    def __len__(self) -> int:
        with self._lock:
            return len(self._users)

