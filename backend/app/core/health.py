"""
Health check aggregation — deep health probe for the dispatch engine.

Checks:
    • Channel registry — every enabled channel passes validation
    • Transports — every enabled channel's type has a transport
    • Delivery ledger — readable, with current totals

None of the checks contact a provider; use the per-channel
``POST /api/v1/notifications/channels/{id}/test`` probe for that.

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
    - Monitoring dashboards
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from backend.app.core.config import settings

if TYPE_CHECKING:
    from backend.app.notifications.notification_service import NotificationService

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


_start_time = time.monotonic()


def check_channel_registry(service: "NotificationService") -> ComponentHealth:
    """Validate every enabled channel's configuration."""
    comp = ComponentHealth(name="channel_registry")
    start = time.monotonic()

    channels = service.get_channels()
    enabled = [c for c in channels if c.enabled]
    invalid: Dict[str, List[str]] = {}
    for channel in enabled:
        result = service.validate_channel(channel)
        if not result.valid:
            invalid[channel.id] = result.errors

    if invalid:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Invalid enabled channels: {', '.join(invalid)}"
    else:
        comp.message = f"{len(enabled)} enabled channel(s) valid"

    comp.details = {"total": len(channels), "enabled": len(enabled)}
    if invalid:
        comp.details["invalid"] = invalid
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_transports(service: "NotificationService") -> ComponentHealth:
    """Every enabled channel type needs a registered transport."""
    comp = ComponentHealth(name="transports")
    start = time.monotonic()

    transports = service.transports
    missing = sorted({
        c.type.value for c in service.get_channels()
        if c.enabled and c.type not in transports
    })

    if missing:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"No transport for: {', '.join(missing)}"
    else:
        comp.message = "All channel types covered"

    comp.details = {
        "mode": settings.NOTIFY_TRANSPORT_MODE,
        "registered": {t.value: type(tr).__name__ for t, tr in transports.items()},
    }
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


def check_delivery_ledger(service: "NotificationService") -> ComponentHealth:
    comp = ComponentHealth(name="delivery_ledger")
    start = time.monotonic()
    try:
        stats = service.get_statistics()
        comp.message = f"{stats.total_sent} message(s) recorded"
        comp.details = stats.to_dict()
    except Exception as e:
        logger.exception("Delivery ledger health check failed")
        comp.status = HealthStatus.UNHEALTHY
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(service: "NotificationService") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    for check in (check_channel_registry, check_transports, check_delivery_ledger):
        report.components.append(check(service))

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
