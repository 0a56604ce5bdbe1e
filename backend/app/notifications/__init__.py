"""
notifications — Multi-channel notification dispatch engine.

Sub-modules:
    transports/           — Per-channel-type delivery backends (SMTP, Twilio, webhook, FCM, in-app)
    notification_service  — Dispatcher, bulk fan-out, diagnostics, service factory
    registry              — Channel registry and configuration validator
    templates             — Template store and placeholder renderer
    ledger                — Delivery ledger and statistics
    preferences           — Per-user event preferences consulted before a send
    models                — Data structures shared across the engine
"""
