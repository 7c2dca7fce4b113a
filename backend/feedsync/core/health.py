"""
Health check aggregation — deep health probe for the sync service.

Checks:
    • Storage backend (in-memory, or a SELECT 1 against the database)
    • Redis (only when the redis lease backend is configured)
    • Feed endpoints configured (incident feed, weather service)
    • Social platform app credentials
    • Feed freshness (active tenants with no recent incident pass)

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from backend.feedsync.core.config import settings
from backend.feedsync.storage.base import SyncStore

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


async def check_storage() -> ComponentHealth:
    comp = ComponentHealth(name="storage")
    start = time.monotonic()
    comp.details = {"backend": settings.STORAGE_BACKEND}
    if settings.STORAGE_BACKEND != "database":
        comp.message = "In-memory store"
    else:
        from backend.feedsync.core.database import get_engine

        try:
            async with get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
            comp.message = "Database reachable"
            comp.details["url"] = settings.DATABASE_URL.split("@")[-1]
        except (SQLAlchemyError, OSError) as e:
            comp.status = HealthStatus.UNHEALTHY
            comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_redis() -> ComponentHealth:
    comp = ComponentHealth(name="redis")
    start = time.monotonic()
    if settings.LEASE_BACKEND != "redis":
        comp.message = "Not used (in-memory leases)"
    else:
        from backend.feedsync.core.cache import ping_redis

        if await ping_redis():
            comp.message = "Lease store available"
        else:
            comp.status = HealthStatus.UNHEALTHY
            comp.message = "PING failed"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_feeds() -> ComponentHealth:
    """Feed endpoints and default secret are configured (no network call)."""
    comp = ComponentHealth(name="feeds")
    comp.details = {
        "incident_primary": settings.PULSEPOINT_PRIMARY_URL,
        "incident_fallback": settings.PULSEPOINT_FALLBACK_URL,
        "weather": settings.NWS_ALERTS_URL,
    }
    if not settings.FEED_DECRYPTION_SECRET:
        comp.status = HealthStatus.DEGRADED
        comp.message = "No default decryption secret; tenants must supply their own"
    else:
        comp.message = "Feeds configured"
    return comp


async def check_social() -> ComponentHealth:
    comp = ComponentHealth(name="social")
    if not (settings.FACEBOOK_APP_ID and settings.FACEBOOK_APP_SECRET):
        comp.status = HealthStatus.DEGRADED
        comp.message = "App credentials missing; page connection disabled"
    else:
        comp.message = f"Graph API {settings.FACEBOOK_GRAPH_VERSION}"
    return comp


async def check_sync_freshness(store: Optional[SyncStore], now: Optional[datetime] = None) -> ComponentHealth:
    """
    Active tenants whose last successful incident pass is older than three
    sync intervals. A stale tenant degrades the report; it never fails it,
    since an upstream feed outage is outside this service's control.
    """
    comp = ComponentHealth(name="sync")
    if store is None:
        comp.message = "Store not initialised"
        return comp

    start = time.monotonic()
    now = now or datetime.now(timezone.utc)
    limit = timedelta(seconds=settings.SYNC_INTERVAL_SECONDS * 3)
    tenants = [t for t in await store.list_tenants(active_only=True) if t.has_incident_feed]
    stale = [
        t.slug for t in tenants
        if t.last_incident_sync is None or now - t.last_incident_sync > limit
    ]
    comp.details = {"tenants": len(tenants), "stale": stale}
    if stale:
        comp.status = HealthStatus.DEGRADED
        comp.message = f"{len(stale)} tenant(s) without a pass in {int(limit.total_seconds())}s"
    else:
        comp.message = "All tenants fresh"
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(store: Optional[SyncStore] = None) -> HealthReport:
    """Run every check concurrently and fold them into one report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )
    report.components = list(await asyncio.gather(
        check_storage(),
        check_redis(),
        check_feeds(),
        check_social(),
        check_sync_freshness(store),
    ))

    statuses = {c.status for c in report.components}
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    return report
