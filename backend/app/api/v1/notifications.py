"""
FastAPI route: Multi-channel notification dispatch endpoints.

Provides endpoints to:
    POST /api/v1/notifications/send                 — send one notification
    POST /api/v1/notifications/send/bulk            — send many, results in input order
    GET  /api/v1/notifications/templates            — list templates
    POST /api/v1/notifications/templates            — add or replace a template
    GET  /api/v1/notifications/channels             — list channels (secrets masked)
    PUT  /api/v1/notifications/channels/{id}        — insert or replace a channel
    POST /api/v1/notifications/channels/validate    — validate a channel config
    POST /api/v1/notifications/channels/{id}/test   — probe channel connectivity
    GET  /api/v1/notifications/deliveries           — recent deliveries
    GET  /api/v1/notifications/deliveries/{id}      — delivery status
    GET  /api/v1/notifications/statistics           — aggregate counts
    GET  /api/v1/notifications/preferences/{user}    — user event preferences
    PUT  /api/v1/notifications/preferences/{user}    — merge preference changes
    GET  /api/v1/notifications/health               — service health

The routes are thin: every operation is delegated to the
NotificationService stored on ``app.state`` by ``create_app``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from backend.app.core.errors import NotFoundError, ValidationError
from backend.app.notifications.models import (
    Channel,
    ChannelType,
    SendRequest,
    Template,
)
from backend.app.notifications.notification_service import NotificationService

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------

class ChannelInput(BaseModel):
    """A channel definition. ``id`` may be omitted when it is in the path."""
    id: Optional[str] = Field(None, examples=["email-1"])
    type: ChannelType = Field(..., examples=["email"])
    name: str = Field("", examples=["Primary SMTP"])
    config: Dict[str, Any] = Field(
        default_factory=dict,
        examples=[{"smtp": {"host": "smtp.example.com", "port": 587, "user": "u", "pass": "p"}}],
    )
    enabled: bool = Field(True)

    def to_channel(self, channel_id: Optional[str] = None) -> Channel:
        return Channel(
            id=channel_id if channel_id is not None else (self.id or ""),
            type=self.type,
            name=self.name,
            config=dict(self.config),
            enabled=self.enabled,
        )


class TemplateInput(BaseModel):
    id: str = Field(..., min_length=1, examples=["scan-completed"])
    name: str = Field(..., examples=["Scan Completed"])
    subject: str = Field("", examples=["Scan {{scanName}} completed"])
    content: str = Field("", examples=["Found {{findingsCount}} findings."])
    variables: List[str] = Field(default_factory=list, examples=[["scanName", "findingsCount"]])


class SendRequestInput(BaseModel):
    """
    One notification. Give either ``template`` (+ ``variables``) or
    literal ``subject``/``content``; the template wins when both are set.
    """
    channel_id: str = Field(..., examples=["email-1"])
    recipients: List[str] = Field(default_factory=list, examples=[["ops@example.com"]])
    template: Optional[str] = Field(None, examples=["scan-completed"])
    variables: Dict[str, Any] = Field(default_factory=dict)
    subject: Optional[str] = Field(None, examples=["Hello"])
    content: Optional[str] = Field(None, examples=["Body text"])
    metadata: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = Field(None, examples=["user-42"])
    event: Optional[str] = Field(None, examples=["scan_completed"])

    def to_request(self) -> SendRequest:
        return SendRequest(
            channel_id=self.channel_id,
            recipients=list(self.recipients),
            template=self.template,
            variables=dict(self.variables),
            subject=self.subject,
            content=self.content,
            metadata=dict(self.metadata),
            user_id=self.user_id,
            event=self.event,
        )


class BulkSendInput(BaseModel):
    requests: List[SendRequestInput] = Field(default_factory=list)


class ChannelPreferenceInput(BaseModel):
    """Fields left unset keep their current value."""
    enabled: Optional[bool] = None
    events: Optional[List[str]] = Field(None, examples=[["scan_completed", "system_alert"]])


class PreferencesInput(BaseModel):
    channels: Dict[str, ChannelPreferenceInput] = Field(
        default_factory=dict,
        examples=[{"sms": {"enabled": True}, "email": {"events": ["welcome"]}}],
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_notification_service(request: Request) -> NotificationService:
    """The service instance owned by the running application."""
    return request.app.state.notification_service


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

@router.post(
    "/send",
    summary="Send a notification",
    description=(
        "Dispatch one notification. Failures (unknown or disabled channel, "
        "missing template, transport error) are reported in the body with "
        "success=false rather than as HTTP errors."
    ),
)
async def send_notification(
    body: SendRequestInput,
    service: NotificationService = Depends(get_notification_service),
):
    result = await service.send_notification(body.to_request())
    return result.to_dict()


@router.post(
    "/send/bulk",
    summary="Send notifications in bulk",
    description="Dispatch all requests concurrently; results keep the input order.",
)
async def send_bulk(
    body: BulkSendInput,
    service: NotificationService = Depends(get_notification_service),
):
    results = await service.send_bulk_notifications([r.to_request() for r in body.requests])
    return {
        "total": len(results),
        "sent": sum(1 for r in results if r.success),
        "failed": sum(1 for r in results if not r.success),
        "results": [r.to_dict() for r in results],
    }


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

@router.get("/templates", summary="List templates")
async def list_templates(service: NotificationService = Depends(get_notification_service)):
    return {"templates": [t.to_dict() for t in service.get_templates()]}


@router.post("/templates", status_code=201, summary="Add or replace a template")
async def add_template(
    body: TemplateInput,
    service: NotificationService = Depends(get_notification_service),
):
    template = Template(
        id=body.id,
        name=body.name,
        subject=body.subject,
        content=body.content,
        variables=tuple(body.variables),
    )
    service.add_template(template)
    return template.to_dict()


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------

@router.get("/channels", summary="List channels")
async def list_channels(service: NotificationService = Depends(get_notification_service)):
    """Channels in registration order, secret config values masked."""
    return {"channels": [c.to_dict() for c in service.get_channels()]}


@router.post(
    "/channels/validate",
    summary="Validate a channel configuration",
    description="Pure inspection; the registry is not changed.",
)
async def validate_channel(
    body: ChannelInput,
    service: NotificationService = Depends(get_notification_service),
):
    return service.validate_channel(body.to_channel()).to_dict()


@router.put("/channels/{channel_id}", summary="Insert or replace a channel")
async def put_channel(
    channel_id: str,
    body: ChannelInput,
    service: NotificationService = Depends(get_notification_service),
):
    if body.id is not None and body.id != channel_id:
        raise ValidationError(
            f"Body id '{body.id}' does not match path id '{channel_id}'", field="id",
        )
    channel = body.to_channel(channel_id)
    service.update_channel(channel)
    return {
        "channel": channel.to_dict(),
        "validation": service.validate_channel(channel).to_dict(),
    }


@router.post(
    "/channels/{channel_id}/test",
    summary="Probe channel connectivity",
    description="Checks credentials/reachability without sending a message.",
)
async def test_channel(
    channel_id: str,
    service: NotificationService = Depends(get_notification_service),
):
    result = await service.test_channel(channel_id)
    return result.to_dict()


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

@router.get("/deliveries", summary="List recent deliveries")
async def list_deliveries(
    channel: Optional[str] = Query(None, description="Only this channel id"),
    limit: int = Query(100, ge=1, le=1000),
    service: NotificationService = Depends(get_notification_service),
):
    entries = service.list_deliveries(channel=channel, limit=limit)
    return {"count": len(entries), "deliveries": [e.to_dict() for e in entries]}


@router.get("/deliveries/{message_id}", summary="Get delivery status")
async def get_delivery(
    message_id: str,
    service: NotificationService = Depends(get_notification_service),
):
    status = service.get_delivery_status(message_id)
    if status is None:
        raise NotFoundError("Delivery", message_id=message_id)
    return status.to_dict()


@router.get("/statistics", summary="Delivery statistics")
async def statistics(service: NotificationService = Depends(get_notification_service)):
    return service.get_statistics().to_dict()


# ---------------------------------------------------------------------------
# User preferences
# ---------------------------------------------------------------------------

@router.get("/preferences/{user_id}", summary="Get user notification preferences")
async def get_preferences(
    user_id: str,
    service: NotificationService = Depends(get_notification_service),
):
    """Users with nothing stored get the defaults."""
    return service.get_user_preferences(user_id).to_dict()


@router.put("/preferences/{user_id}", summary="Update user notification preferences")
async def put_preferences(
    user_id: str,
    body: PreferencesInput,
    service: NotificationService = Depends(get_notification_service),
):
    changes = {
        channel: block.model_dump(exclude_none=True)
        for channel, block in body.channels.items()
    }
    return service.update_user_preferences(user_id, changes).to_dict()


@router.get("/health", summary="Notification service health check")
async def health(service: NotificationService = Depends(get_notification_service)):
    channels = service.get_channels()
    return {
        "status": "healthy",
        "service": "notification-dispatch",
        "channels": len(channels),
        "channels_enabled": sum(1 for c in channels if c.enabled),
        "templates": len(service.get_templates()),
        "transports": sorted(t.value for t in service.transports),
    }
