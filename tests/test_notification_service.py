"""
test_notification_service.py — Tests for the notification dispatch engine.

Covers:
    • Single dispatch (not found, disabled, recipients, template/literal modes)
    • Transport failures (explicit failure, exceptions, config parse errors)
    • Strict template mode
    • User event preferences (opt-outs, event metadata)
    • Bulk dispatch (ordering, independence, concurrency, empty input)
    • Delivery ledger and statistics consistency
    • Channel registry mutation through the service
    • Diagnostics (test_channel)
    • Service factory from settings

Run with:
    pytest tests/test_notification_service.py -v
"""

from __future__ import annotations

import asyncio
from typing import List, Optional

import pytest

from backend.app.core.config import Settings
from backend.app.core.errors import DuplicateChannelError
from backend.app.notifications.models import (
    Channel,
    ChannelType,
    DeliveryState,
    SendRequest,
    Template,
)
from backend.app.notifications.notification_service import (
    NotificationService,
    build_notification_service,
)
from backend.app.notifications.transports import (
    BaseTransport,
    InAppTransport,
    OutboundMessage,
    SimulatedTransport,
    TransportResult,
)


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

EMAIL_CONFIG = {"smtp": {"host": "h", "port": 587, "user": "u", "pass": "p"}}
WEBHOOK_CONFIG = {"url": "https://hooks.example.com/notify"}


class RecordingTransport(BaseTransport):
    """Transport double that records calls and returns a fixed outcome."""

    def __init__(
        self,
        channel_type: ChannelType = ChannelType.EMAIL,
        *,
        fail_with: Optional[str] = None,
        raise_exc: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.channel_type = channel_type
        self.fail_with = fail_with
        self.raise_exc = raise_exc
        self.delay = delay
        self.sent: List[OutboundMessage] = []
        self.probes = 0

    async def send(self, message, config) -> TransportResult:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.sent.append(message)
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail_with is not None:
            return TransportResult(success=False, error=self.fail_with)
        return TransportResult(success=True, provider_message_id=f"prov-{len(self.sent)}")

    async def probe(self, config) -> TransportResult:
        self.probes += 1
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail_with is not None:
            return TransportResult(success=False, error=self.fail_with)
        return TransportResult(success=True)


def _email_channel(cid: str = "email-1", enabled: bool = True, config=None) -> Channel:
    return Channel(
        id=cid,
        type=ChannelType.EMAIL,
        name=f"Email {cid}",
        config=EMAIL_CONFIG if config is None else config,
        enabled=enabled,
    )


def _webhook_channel(cid: str = "hook-1", enabled: bool = True) -> Channel:
    return Channel(id=cid, type="webhook", name="Hook", config=WEBHOOK_CONFIG, enabled=enabled)


def _make_service(channels=None, transport: Optional[BaseTransport] = None, **kwargs):
    transports = None
    if transport is not None:
        transports = {transport.channel_type: transport}
    return NotificationService(
        channels if channels is not None else [_email_channel()],
        transports=transports,
        **kwargs,
    )


def _literal(channel_id: str = "email-1", **overrides) -> SendRequest:
    fields = {
        "channel_id": channel_id,
        "recipients": ["a@b.com"],
        "subject": "Hi",
        "content": "Body",
    }
    fields.update(overrides)
    return SendRequest(**fields)


def _send(service: NotificationService, request: SendRequest):
    return asyncio.run(service.send_notification(request))


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Single dispatch
# ═══════════════════════════════════════════════════════════════════════════

class TestSendNotification:
    """Core dispatch path."""

    def test_email_scenario_records_delivery(self):
        service = _make_service()
        result = _send(service, _literal())

        assert result.success is True
        assert result.channel == "email-1"
        assert result.message_id
        assert result.error is None

        status = service.get_delivery_status(result.message_id)
        assert status is not None
        assert status.channel == "email-1"
        assert status.status == DeliveryState.SENT
        assert status.recipient_count == 1

    def test_message_id_format(self):
        service = _make_service()
        result = _send(service, _literal())
        assert result.message_id.startswith("msg_")
        assert len(result.message_id) == len("msg_") + 32

    def test_provider_id_kept_separately(self):
        transport = RecordingTransport()
        service = _make_service(transport=transport)
        result = _send(service, _literal())
        status = service.get_delivery_status(result.message_id)
        assert status.provider_message_id == "prov-1"
        assert status.message_id != "prov-1"

    def test_unknown_channel_fails_without_ledger_change(self):
        service = _make_service()
        result = _send(service, _literal("nope"))

        assert result.success is False
        assert "not found" in result.error
        assert result.error == "Channel not found: nope"
        assert result.message_id is None
        assert service.get_statistics().total_sent == 0

    def test_disabled_channel_rejected_before_transport(self):
        transport = RecordingTransport()
        service = _make_service([_email_channel(enabled=False)], transport=transport)
        result = _send(service, _literal())

        assert result.success is False
        assert "disabled" in result.error
        assert result.error == "Channel email-1 is disabled"
        assert result.channel == "email-1"
        assert transport.sent == []
        assert service.get_statistics().total_sent == 0

    def test_disabled_and_not_found_errors_differ(self):
        service = _make_service([_email_channel(enabled=False)])
        disabled = _send(service, _literal())
        missing = _send(service, _literal("other"))
        assert disabled.error != missing.error

    def test_empty_recipients_rejected(self):
        transport = RecordingTransport()
        service = _make_service(transport=transport)
        result = _send(service, _literal(recipients=[]))
        assert result.success is False
        assert result.error == "At least one recipient is required"
        assert transport.sent == []

    def test_literal_mode_verbatim(self):
        transport = RecordingTransport()
        service = _make_service(transport=transport)
        _send(service, _literal(subject="Hi {{name}}", content="{{name}}", variables={"name": "x"}))

        message = transport.sent[0]
        assert message.subject == "Hi {{name}}"
        assert message.content == "{{name}}"

    def test_literal_mode_requires_content(self):
        service = _make_service()
        result = _send(service, _literal(content=None))
        assert result.success is False
        assert result.error == "Either template or content is required"

    def test_template_mode_renders(self):
        transport = RecordingTransport()
        service = _make_service(transport=transport)
        service.add_template(Template(
            id="greet", name="Greeting",
            subject="Hello {{name}}", content="Welcome, {{ name }}!",
            variables=("name",),
        ))
        result = _send(service, SendRequest(
            channel_id="email-1", recipients=["a@b.com"],
            template="greet", variables={"name": "Ada"},
        ))

        assert result.success is True
        assert transport.sent[0].subject == "Hello Ada"
        assert transport.sent[0].content == "Welcome, Ada!"

    def test_template_wins_over_literal(self):
        transport = RecordingTransport()
        service = _make_service(transport=transport)
        service.add_template(Template(id="t", name="T", subject="S", content="C"))
        _send(service, _literal(template="t"))
        assert transport.sent[0].subject == "S"
        assert transport.sent[0].content == "C"

    def test_missing_template(self):
        transport = RecordingTransport()
        service = _make_service(transport=transport)
        result = _send(service, SendRequest(
            channel_id="email-1", recipients=["a@b.com"], template="ghost",
        ))
        assert result.success is False
        assert result.error == "Template not found: ghost"
        assert transport.sent == []

    def test_lenient_missing_variables_left_literal(self):
        transport = RecordingTransport()
        service = _make_service(transport=transport)
        service.add_template(Template(
            id="t", name="T", subject="{{a}}", content="{{a}} {{b}}", variables=("a", "b"),
        ))
        result = _send(service, SendRequest(
            channel_id="email-1", recipients=["a@b.com"], template="t", variables={"a": 1},
        ))
        assert result.success is True
        assert transport.sent[0].content == "1 {{b}}"

    def test_metadata_passed_to_transport(self):
        transport = RecordingTransport()
        service = _make_service(transport=transport)
        _send(service, _literal(metadata={"event": "scan.completed"}))
        assert transport.sent[0].metadata == {"event": "scan.completed"}

    def test_exactly_one_transport_call(self):
        transport = RecordingTransport()
        service = _make_service(transport=transport)
        _send(service, _literal(recipients=["a@b.com", "c@d.com"]))
        assert len(transport.sent) == 1
        assert transport.sent[0].recipients == ["a@b.com", "c@d.com"]


class TestTransportFailures:
    """Every transport outcome is returned as a value."""

    def test_explicit_failure_message_preserved(self):
        transport = RecordingTransport(fail_with="550 mailbox unavailable")
        service = _make_service(transport=transport)
        result = _send(service, _literal())

        assert result.success is False
        assert result.channel == "email-1"
        assert result.error == "550 mailbox unavailable"
        assert service.get_statistics().total_sent == 0

    def test_exception_converted_to_failure(self):
        transport = RecordingTransport(raise_exc=ConnectionError("connection refused"))
        service = _make_service(transport=transport)
        result = _send(service, _literal())

        assert result.success is False
        assert result.error == "connection refused"
        assert service.get_statistics().total_sent == 0

    def test_timeout_converted_to_failure(self):
        transport = RecordingTransport(raise_exc=asyncio.TimeoutError())
        service = _make_service(transport=transport)
        result = _send(service, _literal())
        assert result.success is False
        assert result.error == "TimeoutError"

    def test_no_transport_registered(self):
        service = NotificationService([_email_channel()], transports={})
        result = _send(service, _literal())
        assert result.success is False
        assert result.error == "No transport registered for channel type: email"

    def test_misconfigured_enabled_channel_fails_at_send(self):
        transport = RecordingTransport()
        service = _make_service([_email_channel(config={})], transport=transport)
        result = _send(service, _literal())

        assert result.success is False
        assert "smtp" in result.error
        assert transport.sent == []

    def test_webhook_headers_not_a_mapping_fails_at_send(self):
        transport = RecordingTransport(ChannelType.WEBHOOK)
        channel = Channel(
            id="hook-1", type="webhook", name="Hook",
            config={"url": "https://x.example", "headers": ["a"]},
        )
        service = _make_service([channel], transport=transport)
        result = _send(service, _literal("hook-1"))

        assert result.success is False
        assert result.channel == "hook-1"
        assert result.error == "Invalid webhook configuration: 'headers' must be a mapping"
        assert transport.sent == []
        assert service.get_statistics().total_sent == 0

    def test_no_retry_on_failure(self):
        transport = RecordingTransport(fail_with="nope")
        service = _make_service(transport=transport)
        _send(service, _literal())
        assert len(transport.sent) == 1


class TestStrictTemplates:
    """Strict mode fails sends with unfilled declared variables."""

    def _service(self, transport):
        service = _make_service(transport=transport, strict_templates=True)
        service.add_template(Template(
            id="t", name="T", subject="{{a}}", content="{{b}} {{c}}", variables=("a", "b", "c"),
        ))
        return service

    def test_missing_variables_fail_without_transport_call(self):
        transport = RecordingTransport()
        service = self._service(transport)
        result = _send(service, SendRequest(
            channel_id="email-1", recipients=["x"], template="t", variables={"a": 1},
        ))

        assert result.success is False
        assert result.error == "Missing template variables: b, c"
        assert transport.sent == []
        assert service.get_statistics().total_sent == 0

    def test_complete_variables_succeed(self):
        transport = RecordingTransport()
        service = self._service(transport)
        result = _send(service, SendRequest(
            channel_id="email-1", recipients=["x"], template="t",
            variables={"a": 1, "b": 2, "c": 3},
        ))
        assert result.success is True
        assert transport.sent[0].content == "2 3"


class TestUserPreferences:
    """Sends naming a user and an event honour that user's opt-outs."""

    def test_opted_out_event_blocked_before_transport(self):
        transport = RecordingTransport()
        service = _make_service(transport=transport)
        result = _send(service, _literal(user_id="u1", event="report_ready"))

        assert result.success is False
        assert result.channel == "email-1"
        assert result.error == "Notification blocked by user preferences: report_ready via email"
        assert transport.sent == []
        assert service.get_statistics().total_sent == 0

    def test_allowed_event_sent_with_event_in_metadata(self):
        transport = RecordingTransport()
        service = _make_service(transport=transport)
        result = _send(service, _literal(user_id="u1", event="welcome"))

        assert result.success is True
        assert transport.sent[0].metadata["event"] == "welcome"

    def test_caller_metadata_event_kept(self):
        transport = RecordingTransport()
        service = _make_service(transport=transport)
        _send(service, _literal(event="welcome", metadata={"event": "custom.welcome"}))
        assert transport.sent[0].metadata["event"] == "custom.welcome"

    def test_no_user_means_no_check(self):
        transport = RecordingTransport()
        service = _make_service(transport=transport)
        assert _send(service, _literal(event="report_ready")).success is True

    def test_update_then_send(self):
        transport = RecordingTransport()
        service = _make_service(transport=transport)
        service.update_user_preferences("u1", {"email": {"enabled": False}})

        assert _send(service, _literal(user_id="u1", event="welcome")).success is False
        assert _send(service, _literal(user_id="u2", event="welcome")).success is True

    def test_unknown_event_fails(self):
        service = _make_service(transport=RecordingTransport())
        result = _send(service, _literal(user_id="u1", event="birthday"))
        assert result.success is False
        assert result.error == "Unknown notification event: birthday"

    def test_should_send(self):
        service = _make_service()
        assert service.should_send("u1", "report_ready") is True
        assert service.should_send("u1", "report_ready", ChannelType.EMAIL) is False
        assert service.should_send("u1", "welcome", "email") is True

    def test_get_defaults(self):
        prefs = _make_service().get_user_preferences("u9")
        assert prefs.user_id == "u9"
        assert prefs.allows(ChannelType.SMS, "system_alert") is False


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Bulk dispatch
# ═══════════════════════════════════════════════════════════════════════════

class TestBulkDispatch:

    def test_empty_input(self):
        service = _make_service()
        assert asyncio.run(service.send_bulk_notifications([])) == []

    def test_order_preserved_with_mixed_outcomes(self):
        service = _make_service()
        requests = [
            _literal("missing" if i % 2 == 0 else "email-1", content=f"#{i}")
            for i in range(10)
        ]
        results = asyncio.run(service.send_bulk_notifications(requests))

        assert len(results) == 10
        for i, result in enumerate(results):
            assert result.success is (i % 2 == 1)
        assert service.get_statistics().total_sent == 5

    def test_order_preserved_regardless_of_completion(self):
        slow = RecordingTransport(ChannelType.EMAIL, delay=0.05)
        fast = RecordingTransport(ChannelType.WEBHOOK)
        service = NotificationService(
            [_email_channel(), _webhook_channel()],
            transports={ChannelType.EMAIL: slow, ChannelType.WEBHOOK: fast},
        )
        results = asyncio.run(service.send_bulk_notifications([
            _literal("email-1"), _literal("hook-1"), _literal("email-1"),
        ]))
        assert [r.channel for r in results] == ["email-1", "hook-1", "email-1"]
        assert all(r.success for r in results)

    def test_failure_does_not_affect_others(self):
        broken = RecordingTransport(ChannelType.EMAIL, raise_exc=RuntimeError("smtp down"))
        ok = RecordingTransport(ChannelType.WEBHOOK)
        service = NotificationService(
            [_email_channel(), _webhook_channel()],
            transports={ChannelType.EMAIL: broken, ChannelType.WEBHOOK: ok},
        )
        results = asyncio.run(service.send_bulk_notifications([
            _literal("email-1"), _literal("hook-1"),
        ]))
        assert results[0].success is False
        assert results[0].error == "smtp down"
        assert results[1].success is True

    @pytest.mark.parametrize("concurrency", [0, 1, 4])
    def test_concurrent_sends_get_distinct_ids(self, concurrency):
        service = _make_service(bulk_concurrency=concurrency)
        results = asyncio.run(service.send_bulk_notifications(
            [_literal() for _ in range(40)]
        ))
        ids = [r.message_id for r in results]
        assert len(set(ids)) == 40
        assert service.get_statistics().total_sent == 40
        assert service.get_statistics().channels == {"email-1": 40}


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Ledger & statistics
# ═══════════════════════════════════════════════════════════════════════════

class TestStatistics:

    def test_per_channel_counts(self):
        service = NotificationService([_email_channel("A"), _email_channel("B")])
        for _ in range(3):
            _send(service, _literal("A"))
        for _ in range(2):
            _send(service, _literal("B"))
        _send(service, _literal("C"))

        stats = service.get_statistics()
        assert stats.total_sent == 5
        assert stats.channels["A"] == 3
        assert stats.channels["B"] == 2
        assert "C" not in stats.channels

    def test_unknown_message_id(self):
        service = _make_service()
        assert service.get_delivery_status("msg_missing") is None

    def test_list_deliveries_newest_first(self):
        service = NotificationService([_email_channel("A"), _email_channel("B")])
        first = _send(service, _literal("A"))
        second = _send(service, _literal("B"))

        entries = service.list_deliveries()
        assert [e.message_id for e in entries] == [second.message_id, first.message_id]
        assert [e.channel for e in service.list_deliveries(channel="A")] == ["A"]


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Channels & templates through the service
# ═══════════════════════════════════════════════════════════════════════════

class TestChannelMutation:

    def test_update_channel_idempotent(self):
        service = _make_service()
        channel = _webhook_channel()
        service.update_channel(channel)
        before = service.get_channels()
        service.update_channel(channel)
        after = service.get_channels()
        assert len(before) == len(after) == 2
        assert before == after

    def test_update_replaces_whole_entry_in_place(self):
        service = NotificationService([_email_channel("A"), _email_channel("B")])
        service.update_channel(Channel(id="A", type="in_app", name="Inbox"))

        channels = service.get_channels()
        assert [c.id for c in channels] == ["A", "B"]
        assert channels[0].type == ChannelType.IN_APP
        assert channels[0].config == {}

    def test_disable_then_enable(self):
        service = _make_service()
        service.update_channel(_email_channel(enabled=False))
        assert _send(service, _literal()).success is False
        service.update_channel(_email_channel(enabled=True))
        assert _send(service, _literal()).success is True

    def test_add_channel_rejects_duplicate(self):
        service = _make_service()
        with pytest.raises(DuplicateChannelError):
            service.add_channel(_email_channel())
        service.add_channel(_webhook_channel())
        assert len(service.get_channels()) == 2

    def test_validate_channel_is_pure(self):
        service = _make_service()
        result = service.validate_channel(_email_channel("new", config={}))
        assert result.valid is False
        assert result.errors == ["Missing smtp configuration"]
        assert [c.id for c in service.get_channels()] == ["email-1"]

    def test_caller_config_edits_do_not_reach_registry(self):
        service = _make_service()
        config = {"url": "https://hooks.example.com/a"}
        service.update_channel(Channel(id="hook-1", type="webhook", name="Hook", config=config))
        config["url"] = "https://attacker.example/"
        assert service.get_channel("hook-1").config == {"url": "https://hooks.example.com/a"}

    def test_templates_replace_by_id(self):
        service = _make_service()
        service.add_template(Template(id="a", name="A1"))
        service.add_template(Template(id="b", name="B"))
        service.add_template(Template(id="a", name="A2"))
        templates = service.get_templates()
        assert [t.id for t in templates] == ["a", "b"]
        assert templates[0].name == "A2"


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Diagnostics
# ═══════════════════════════════════════════════════════════════════════════

class TestChannelDiagnostics:

    def test_missing_channel(self):
        service = _make_service()
        result = asyncio.run(service.test_channel("missing"))
        assert result.success is False
        assert "not found" in result.error
        assert service.get_statistics().total_sent == 0

    def test_probe_success_does_not_count_as_send(self):
        transport = RecordingTransport()
        service = _make_service(transport=transport)
        result = asyncio.run(service.test_channel("email-1"))

        assert result.success is True
        assert result.channel_id == "email-1"
        assert result.latency_ms >= 0
        assert transport.probes == 1
        assert transport.sent == []
        assert service.get_statistics().total_sent == 0

    def test_probe_runs_for_disabled_channel(self):
        transport = RecordingTransport()
        service = _make_service([_email_channel(enabled=False)], transport=transport)
        result = asyncio.run(service.test_channel("email-1"))
        assert result.success is True
        assert transport.probes == 1

    def test_probe_failure_reported(self):
        transport = RecordingTransport(fail_with="535 authentication failed")
        service = _make_service(transport=transport)
        result = asyncio.run(service.test_channel("email-1"))
        assert result.success is False
        assert result.error == "535 authentication failed"

    def test_probe_exception_reported(self):
        transport = RecordingTransport(raise_exc=OSError("unreachable"))
        service = _make_service(transport=transport)
        result = asyncio.run(service.test_channel("email-1"))
        assert result.success is False
        assert result.error == "unreachable"

    def test_probe_with_bad_config(self):
        transport = RecordingTransport()
        service = _make_service([_email_channel(config={})], transport=transport)
        result = asyncio.run(service.test_channel("email-1"))
        assert result.success is False
        assert transport.probes == 0


# ═══════════════════════════════════════════════════════════════════════════
# Section 6: Construction
# ═══════════════════════════════════════════════════════════════════════════

class TestServiceConstruction:

    def test_instances_are_independent(self):
        a = _make_service()
        b = _make_service()
        _send(a, _literal())
        assert a.get_statistics().total_sent == 1
        assert b.get_statistics().total_sent == 0

    def test_default_transports_are_simulated(self):
        service = _make_service()
        assert isinstance(service.get_transport(ChannelType.EMAIL), SimulatedTransport)
        assert isinstance(service.get_transport(ChannelType.IN_APP), InAppTransport)

    def test_register_transport_replaces(self):
        service = _make_service()
        transport = RecordingTransport()
        service.register_transport(transport)
        _send(service, _literal())
        assert len(transport.sent) == 1

    def test_build_from_settings(self):
        settings = Settings(
            NOTIFY_CHANNELS=[
                {"id": "email-1", "type": "email", "name": "Mail", "config": EMAIL_CONFIG},
                {"id": "inbox", "type": "in_app", "name": "Inbox", "enabled": False},
            ],
            NOTIFY_TRANSPORT_MODE="simulation",
            NOTIFY_STRICT_TEMPLATES=True,
            NOTIFY_BULK_CONCURRENCY=3,
        )
        service = build_notification_service(settings)

        assert [c.id for c in service.get_channels()] == ["email-1", "inbox"]
        assert service.get_channels()[1].enabled is False
        assert service.strict_templates is True
        assert service.bulk_concurrency == 3
        assert "scan-completed" in [t.id for t in service.get_templates()]

    def test_build_without_builtin_templates(self):
        service = build_notification_service(
            Settings(NOTIFY_LOAD_BUILTIN_TEMPLATES=False, NOTIFY_CHANNELS=[])
        )
        assert service.get_templates() == []

    def test_in_app_delivery_reaches_inbox(self):
        service = NotificationService([Channel(id="inbox", type="in_app", name="Inbox")])
        result = _send(service, SendRequest(
            channel_id="inbox", recipients=["user-1"], subject="Hi", content="There",
        ))
        assert result.success is True
        inbox = service.get_transport(ChannelType.IN_APP).inbox("user-1")
        assert inbox[0]["content"] == "There"
