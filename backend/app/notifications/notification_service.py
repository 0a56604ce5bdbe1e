"""
notification_service.py — Core notification dispatch engine.

This is the central coordinator that:
    1. Resolves a channel by id and checks it is enabled
    1b. Drops sends the recipient user opted out of (event preferences)
    2. Renders the message (template or literal subject/content)
    3. Invokes the channel type's transport exactly once
    4. Records successful sends in the delivery ledger
    5. Fans bulk requests out concurrently, preserving input order
    6. Probes channel connectivity for diagnostics

═══════════════════════════════════════════════════════════════════════════
DISPATCH FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  SendRequest        │
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  1. Resolve channel │  unknown   → "Channel not found: <id>"
    │                     │  disabled  → "Channel <id> is disabled"
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  1b. Preferences    │  user_id + event set and the user opted out
    │                     │  → "Notification blocked by user preferences: ..."
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  2. Render          │  template mode (wins) or literal mode
    │                     │  unknown template → "Template not found: <id>"
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  3. Transport       │  one attempt, no retries
    │     send            │  exceptions + explicit failures → failed result
    └─────────┬───────────┘
              │ success
              ▼
    ┌─────────────────────┐
    │  4. Ledger append   │  fresh message id, status "sent"
    └─────────────────────┘

Every public operation returns a value; no transport exception escapes.
Validation (validate_channel) is a separate, explicit call and does not
run during a send.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from backend.app.core.config import Settings
from backend.app.core.errors import (
    ChannelConfigError,
    ChannelDisabledError,
    ChannelNotFoundError,
    NotificationBlockedError,
    NotificationServiceError,
    TemplateNotFoundError,
    TransportError,
    ValidationError,
)
from backend.app.notifications.ledger import DeliveryLedger
from backend.app.notifications.models import (
    Channel,
    ChannelTestResult,
    ChannelType,
    DeliveryResult,
    DeliveryStatus,
    SendRequest,
    Statistics,
    Template,
    ValidationResult,
    parse_channel_config,
)
from backend.app.notifications.preferences import (
    PreferenceStore,
    UserPreferences,
    check_event,
)
from backend.app.notifications.registry import ChannelRegistry, validate_channel
from backend.app.notifications.templates import (
    TemplateStore,
    builtin_templates,
    render_template,
)
from backend.app.notifications.transports import (
    BaseTransport,
    OutboundMessage,
    build_transports,
    simulated_transports,
)

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Multi-channel notification dispatcher.

    Construct one per independently configured scope (e.g. per tenant);
    nothing here is process-global.

    Parameters
    ----------
    channels : iterable of Channel
        Initial channel registry contents.
    templates : iterable of Template, optional
    transports : dict ChannelType → BaseTransport, optional
        Defaults to simulated transports for every type.
    strict_templates : bool
        Fail sends whose template has declared variables with no value.
    bulk_concurrency : int
        Maximum in-flight sends for ``send_bulk_notifications``; 0 = unbounded.
    preferences : PreferenceStore, optional
        Per-user event preferences; a fresh in-memory store by default.
    """

    def __init__(
        self,
        channels: Iterable[Channel] = (),
        *,
        templates: Optional[Iterable[Template]] = None,
        transports: Optional[Dict[ChannelType, BaseTransport]] = None,
        strict_templates: bool = False,
        bulk_concurrency: int = 10,
        preferences: Optional[PreferenceStore] = None,
    ):
        self._registry = ChannelRegistry(channels)
        self._templates = TemplateStore(templates)
        self._ledger = DeliveryLedger()
        self._preferences = preferences if preferences is not None else PreferenceStore()
        self._transports: Dict[ChannelType, BaseTransport] = (
            dict(transports) if transports is not None
            else simulated_transports()
        )
        self.strict_templates = strict_templates
        self.bulk_concurrency = bulk_concurrency

    # ────────────────────────────────────────────
    # Templates
    # ────────────────────────────────────────────

    def add_template(self, template: Template) -> None:
        """Add or fully replace a template (last write wins)."""
        self._templates.add(template)
        logger.info("Template %s registered (%d variables)", template.id, len(template.variables))

    def get_templates(self) -> List[Template]:
        return self._templates.all()

    # ────────────────────────────────────────────
    # Channels
    # ────────────────────────────────────────────

    def get_channels(self) -> List[Channel]:
        return self._registry.all()

    def get_channel(self, channel_id: str) -> Optional[Channel]:
        return self._registry.get(channel_id)

    def update_channel(self, channel: Channel) -> None:
        """Insert ``channel`` or fully replace the entry with its id."""
        self._registry.upsert(channel)

    def add_channel(self, channel: Channel) -> None:
        """Insert a new channel; raises DuplicateChannelError for a known id."""
        self._registry.add(channel)

    def validate_channel(self, channel: Channel) -> ValidationResult:
        return validate_channel(channel)

    def register_transport(self, transport: BaseTransport) -> None:
        """Register or replace the transport for ``transport.channel_type``."""
        self._transports[transport.channel_type] = transport
        logger.info("Registered transport for %s: %s",
                    transport.channel_type.value, type(transport).__name__)

    def get_transport(self, channel_type: ChannelType) -> Optional[BaseTransport]:
        return self._transports.get(channel_type)

    @property
    def transports(self) -> Dict[ChannelType, BaseTransport]:
        return dict(self._transports)

    # ────────────────────────────────────────────
    # User preferences
    # ────────────────────────────────────────────

    def get_user_preferences(self, user_id: str) -> UserPreferences:
        """Stored preferences for ``user_id``, or the defaults."""
        return self._preferences.get(user_id)

    def update_user_preferences(
        self, user_id: str, changes: Mapping[str, Mapping[str, Any]],
    ) -> UserPreferences:
        return self._preferences.update(user_id, changes)

    def should_send(
        self, user_id: str, event: str, channel_type: Optional[ChannelType] = None,
    ) -> bool:
        """
        Whether ``user_id`` wants ``event`` on ``channel_type``, or on any
        channel type when none is given.
        """
        prefs = self._preferences.get(user_id)
        if channel_type is None:
            return prefs.wants(check_event(event))
        return prefs.allows(ChannelType(channel_type), check_event(event))

    # ────────────────────────────────────────────
    # Dispatch
    # ────────────────────────────────────────────

    def _resolve_channel(self, channel_id: str) -> Channel:
        channel = self._registry.get(channel_id)
        if channel is None:
            raise ChannelNotFoundError(channel_id)
        if not channel.enabled:
            raise ChannelDisabledError(channel_id)
        return channel

    def _check_preferences(self, request: SendRequest, channel: Channel) -> None:
        if not (request.user_id and request.event):
            return
        event = check_event(request.event)
        if not self._preferences.get(request.user_id).allows(channel.type, event):
            raise NotificationBlockedError(request.user_id, event, channel.type.value)

    def _render(self, request: SendRequest) -> Tuple[str, str]:
        if request.uses_template:
            template = self._templates.get(request.template)
            if template is None:
                raise TemplateNotFoundError(request.template)
            return render_template(template, request.variables, strict=self.strict_templates)

        if request.content is None:
            raise ValidationError("Either template or content is required", field="content")
        return request.subject or "", request.content

    def _transport_for(self, channel: Channel) -> BaseTransport:
        transport = self._transports.get(channel.type)
        if transport is None:
            raise TransportError(
                channel.type.value,
                f"No transport registered for channel type: {channel.type.value}",
            )
        return transport

    async def send_notification(self, request: SendRequest) -> DeliveryResult:
        """
        Dispatch one notification.

        Returns
        -------
        DeliveryResult
            ``success=True`` with a fresh ``message_id`` (and a ledger
            entry) only when the transport accepted the message.
        """
        try:
            channel = self._resolve_channel(request.channel_id)
            self._check_preferences(request, channel)
            if not request.recipients:
                raise ValidationError("At least one recipient is required", field="recipients")
            subject, content = self._render(request)
            transport = self._transport_for(channel)
            config = parse_channel_config(channel)
        except NotificationServiceError as e:
            logger.warning(
                "Notification rejected for channel %s: %s", request.channel_id, e.message,
                extra={"channel": request.channel_id},
            )
            channel_ref = request.channel_id if request.channel_id in self._registry else None
            return DeliveryResult.failed(channel_ref, e.message)

        metadata = dict(request.metadata)
        if request.event:
            metadata.setdefault("event", request.event)
        message = OutboundMessage(
            channel_id=channel.id,
            recipients=list(request.recipients),
            subject=subject,
            content=content,
            metadata=metadata,
        )

        start = time.perf_counter()
        try:
            outcome = await transport.send(message, config)
        except Exception as e:
            logger.exception(
                "Transport error on channel %s (%s)", channel.id, channel.type.value,
                extra={"channel": channel.id, "channel_type": channel.type.value},
            )
            return DeliveryResult.failed(channel.id, str(e) or type(e).__name__)
        duration_ms = (time.perf_counter() - start) * 1000

        if not outcome.success:
            logger.warning(
                "Notification failed on channel %s: %s (%.1fms)",
                channel.id, outcome.error, duration_ms,
                extra={"channel": channel.id, "duration_ms": duration_ms},
            )
            return DeliveryResult.failed(channel.id, outcome.error or "Transport reported failure")

        entry = self._ledger.record_sent(
            channel.id,
            channel_type=channel.type,
            recipient_count=len(message.recipients),
            provider_message_id=outcome.provider_message_id,
        )
        logger.info(
            "Notification %s sent via %s to %d recipient(s) (%.1fms)",
            entry.message_id, channel.id, len(message.recipients), duration_ms,
            extra={
                "message_id": entry.message_id,
                "channel": channel.id,
                "channel_type": channel.type.value,
                "recipient_count": len(message.recipients),
                "duration_ms": duration_ms,
            },
        )
        return DeliveryResult.sent(channel.id, entry.message_id)

    async def send_bulk_notifications(
        self, requests: Sequence[SendRequest],
    ) -> List[DeliveryResult]:
        """
        Dispatch every request concurrently.

        The returned list has the same length and order as ``requests``
        regardless of completion order; each request succeeds or fails
        on its own.
        """
        if not requests:
            return []

        semaphore = (
            asyncio.Semaphore(self.bulk_concurrency) if self.bulk_concurrency > 0 else None
        )

        async def _dispatch(request: SendRequest) -> DeliveryResult:
            if semaphore is None:
                return await self.send_notification(request)
            async with semaphore:
                return await self.send_notification(request)

        outcomes = await asyncio.gather(
            *(_dispatch(r) for r in requests), return_exceptions=True,
        )

        results: List[DeliveryResult] = []
        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                logger.error("Bulk dispatch error on channel %s: %s", request.channel_id, outcome)
                outcome = DeliveryResult.failed(request.channel_id, str(outcome))
            results.append(outcome)

        sent = sum(1 for r in results if r.success)
        logger.info("Bulk dispatch complete: %d/%d sent", sent, len(results))
        return results

    # ────────────────────────────────────────────
    # Ledger
    # ────────────────────────────────────────────

    def get_delivery_status(self, message_id: str) -> Optional[DeliveryStatus]:
        return self._ledger.get(message_id)

    def get_statistics(self) -> Statistics:
        return self._ledger.statistics()

    def list_deliveries(
        self, *, channel: Optional[str] = None, limit: Optional[int] = None,
    ) -> List[DeliveryStatus]:
        return self._ledger.entries(channel=channel, limit=limit)

    # ────────────────────────────────────────────
    # Diagnostics
    # ────────────────────────────────────────────

    async def test_channel(self, channel_id: str) -> ChannelTestResult:
        """
        Probe a channel's transport without sending a message.

        Runs whether or not the channel is enabled, so a channel can be
        checked before it is switched on. Never touches the ledger.
        """
        channel = self._registry.get(channel_id)
        if channel is None:
            return ChannelTestResult(
                success=False, channel_id=channel_id,
                error=f"Channel not found: {channel_id}",
            )

        start = time.perf_counter()
        try:
            transport = self._transport_for(channel)
            outcome = await transport.probe(parse_channel_config(channel))
        except (ChannelConfigError, TransportError) as e:
            return ChannelTestResult(
                success=False, channel_id=channel_id, error=e.message,
                latency_ms=(time.perf_counter() - start) * 1000,
            )
        except Exception as e:
            logger.exception("Probe error on channel %s", channel_id,
                             extra={"channel": channel_id})
            return ChannelTestResult(
                success=False, channel_id=channel_id, error=str(e) or type(e).__name__,
                latency_ms=(time.perf_counter() - start) * 1000,
            )

        latency_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "Channel %s probe %s (%.1fms)", channel_id,
            "ok" if outcome.success else f"failed: {outcome.error}", latency_ms,
            extra={"channel": channel_id, "duration_ms": latency_ms},
        )
        return ChannelTestResult(
            success=outcome.success,
            channel_id=channel_id,
            error=None if outcome.success else (outcome.error or "Probe failed"),
            latency_ms=latency_ms,
        )

    async def close(self) -> None:
        """Release transport resources."""
        for transport in self._transports.values():
            await transport.close()


def build_notification_service(settings: Settings) -> NotificationService:
    """
    Build a service from settings: channels from NOTIFY_CHANNELS,
    built-in templates when enabled, transports per NOTIFY_TRANSPORT_MODE.
    """
    channels = [Channel.from_dict(c) for c in settings.NOTIFY_CHANNELS]
    service = NotificationService(
        channels,
        templates=builtin_templates() if settings.NOTIFY_LOAD_BUILTIN_TEMPLATES else None,
        transports=build_transports(settings),
        strict_templates=settings.NOTIFY_STRICT_TEMPLATES,
        bulk_concurrency=settings.NOTIFY_BULK_CONCURRENCY,
    )

    for channel in channels:
        result = validate_channel(channel)
        if channel.enabled and not result.valid:
            logger.warning(
                "Enabled channel %s has invalid configuration: %s",
                channel.id, "; ".join(result.errors),
            )

    logger.info(
        "Notification service ready: %d channel(s), %d template(s), transports=%s",
        len(channels), len(service.get_templates()), settings.NOTIFY_TRANSPORT_MODE,
    )
    return service
