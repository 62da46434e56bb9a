"""
Health check aggregation — deep health check for all subsystems.

Checks:
    • Store backend (SQL round-trip, or in-memory)
    • Cache connectivity (Redis — only needed for geocode caching)
    • Notification providers (real vs simulated)
    • AI classifier configuration

Aggregation:
    any UNHEALTHY → unhealthy
    any DEGRADED  → degraded
    otherwise     → healthy

Redis and simulated providers can only ever degrade the service; a dead
SQL store makes it unhealthy.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List

from backend.app.core.cache import ping_redis
from backend.app.core.config import settings
from backend.app.core.database import ping_db

if TYPE_CHECKING:
    from backend.app.sos.container import ServiceContainer

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


# Track application start time
_start_time = time.monotonic()


async def check_store(container: "ServiceContainer") -> ComponentHealth:
    """SQL backend: SELECT 1. Memory backend: always healthy."""
    comp = ComponentHealth(name="store")
    start = time.monotonic()
    backend = container.settings.STORE_BACKEND
    comp.details = {"backend": backend}
    if container.engine is None:
        comp.message = "In-memory store"
    else:
        try:
            await ping_db(container.engine)
            comp.message = "Database reachable"
            comp.details["url"] = container.settings.DATABASE_URL.split("@")[-1]
        except Exception as e:
            comp.status = HealthStatus.UNHEALTHY
            comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_redis(container: "ServiceContainer") -> ComponentHealth:
    """Redis is optional: only the Mapbox geocoder caches through it."""
    comp = ComponentHealth(name="redis")
    start = time.monotonic()
    if container.settings.GEOCODER_PROVIDER != "mapbox":
        comp.message = "Not used by current geocoder"
    else:
        try:
            if await ping_redis():
                comp.message = "Cache available"
            else:
                comp.status = HealthStatus.DEGRADED
                comp.message = "Cache disabled"
        except Exception as e:
            comp.status = HealthStatus.DEGRADED
            comp.message = f"Cache unreachable: {e}"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_providers(container: "ServiceContainer") -> ComponentHealth:
    """Simulated notification providers are fine in dev, degraded in production."""
    comp = ComponentHealth(name="notification_providers")
    s = container.settings
    comp.details = {
        "push": s.PUSH_PROVIDER,
        "whatsapp": s.WHATSAPP_PROVIDER,
        "geocoder": s.GEOCODER_PROVIDER,
        "ai_classifier": "gemini" if container.classifier else "disabled",
    }
    simulated = [
        name for name, provider in (("push", s.PUSH_PROVIDER), ("whatsapp", s.WHATSAPP_PROVIDER))
        if provider == "simulation"
    ]
    if simulated and s.is_production:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"Simulated providers in production: {', '.join(simulated)}"
    else:
        comp.message = "Providers configured"
    return comp


async def run_health_check(container: "ServiceContainer") -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    for check in (check_store, check_redis, check_providers):
        report.components.append(await check(container))

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
