"""
orchestrator.py — Per-tenant sync passes and the multi-tenant fan-out.

═══════════════════════════════════════════════════════════════════════════
ONE TENANT PASS
═══════════════════════════════════════════════════════════════════════════

    sync_tenant(t)
      │  inactive / no feeds                        → skipped
      │  last pass < 15 s ago (unless forced)       → throttled
      │  lease held elsewhere                       → busy
      ▼
    incidents: fetch all agencies → decrypt → reconcile
      │  FeedFetchError / DecryptionError / unexpected error: no reconcile,
      │  no closes, pass continues with weather
      │  ReconciliationError: pass aborted
      ▼
    weather:   fetch zones → chain resolution
      │  any error: recorded, pass still finishes
      ▼
    expire past-due alerts, stamp last-sync times, release lease

Different tenants run concurrently (at most SYNC_CONCURRENCY at once);
one tenant never runs twice at the same time. Publishing and maintenance
take the same lease, so posting state is never written by two passes.

Leases are renewed in the background for as long as a pass, publish or
maintenance run lasts. If a renew is refused the work is cancelled and
reported as lost; another worker already owns the tenant.

A pass can be cancelled (tenant deactivated). Whatever was already
written stays; reconciliation is idempotent per external id, so the next
pass picks up where this one stopped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from backend.feedsync.core.config import settings
from backend.feedsync.core.errors import (
    DecryptionError,
    FeedFetchError,
    NotFoundError,
    ReconciliationError,
)
from backend.feedsync.core.logging_config import sync_context
from backend.feedsync.feeds.pulsepoint import PulsePointClient
from backend.feedsync.incidents.reconciler import (
    IncidentReconciler,
    ReconciliationResult,
    archive_closed_incidents,
    close_stale_incidents,
)
from backend.feedsync.posting.publisher import Publisher, PublishResult
from backend.feedsync.posting.state_machine import PostingStateMachine
from backend.feedsync.storage.base import SyncStore
from backend.feedsync.sync.lease import LeaseKeeper, LeaseManager
from backend.feedsync.tenants.models import Tenant, TenantStatus
from backend.feedsync.weather.chain_resolver import (
    ChainResolutionResult,
    WeatherChainResolver,
    expire_alerts,
)
from backend.feedsync.weather.nws_client import NWSClient

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL   = "partial"      # one step failed, the other ran
    FAILED    = "failed"
    SKIPPED   = "skipped"
    THROTTLED = "throttled"
    BUSY      = "busy"
    CANCELLED = "cancelled"


# ═══════════════════════════════════════════════════════════════════════════
# Results
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class TenantSyncResult:
    tenant_id: str
    status: SyncStatus = SyncStatus.COMPLETED
    incidents: Optional[ReconciliationResult] = None
    weather: Optional[ChainResolutionResult] = None
    alerts_expired: int = 0
    incident_error: Optional[str] = None
    weather_error: Optional[str] = None
    reason: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "status": self.status.value,
            "incidents": self.incidents.to_dict() if self.incidents else None,
            "weather": self.weather.to_dict() if self.weather else None,
            "alerts_expired": self.alerts_expired,
            "incident_error": self.incident_error,
            "weather_error": self.weather_error,
            "reason": self.reason,
            "duration_ms": round(self.duration_ms, 1),
        }


@dataclass
class MultiTenantSyncResult:
    results: List[TenantSyncResult] = field(default_factory=list)

    def _with(self, *statuses: SyncStatus) -> List[TenantSyncResult]:
        return [r for r in self.results if r.status in statuses]

    @property
    def skipped(self) -> List[TenantSyncResult]:
        return self._with(SyncStatus.SKIPPED, SyncStatus.THROTTLED, SyncStatus.BUSY)

    @property
    def failed(self) -> List[TenantSyncResult]:
        return self._with(SyncStatus.FAILED, SyncStatus.PARTIAL, SyncStatus.CANCELLED)

    def totals(self) -> Dict[str, int]:
        totals = {
            "incidents_created": 0,
            "incidents_updated": 0,
            "incidents_closed": 0,
            "alerts_created": 0,
            "alerts_updated": 0,
            "alerts_cancelled": 0,
            "alerts_expired": 0,
        }
        for r in self.results:
            if r.incidents:
                totals["incidents_created"] += r.incidents.created
                totals["incidents_updated"] += r.incidents.updated
                totals["incidents_closed"] += r.incidents.closed
            if r.weather:
                totals["alerts_created"] += r.weather.created
                totals["alerts_updated"] += r.weather.updated
                totals["alerts_cancelled"] += r.weather.cancelled
            totals["alerts_expired"] += r.alerts_expired
        return totals

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenants": len(self.results),
            "synced": len(self._with(SyncStatus.COMPLETED)),
            "totals": self.totals(),
            "skipped": [
                {"tenant_id": r.tenant_id, "status": r.status.value, "reason": r.reason}
                for r in self.skipped
            ],
            "failed": [
                {
                    "tenant_id": r.tenant_id,
                    "status": r.status.value,
                    "incident_error": r.incident_error,
                    "weather_error": r.weather_error,
                    "reason": r.reason,
                }
                for r in self.failed
            ],
            "results": [r.to_dict() for r in self.results],
        }


# ═══════════════════════════════════════════════════════════════════════════
# Orchestrator
# ═══════════════════════════════════════════════════════════════════════════

class SyncOrchestrator:
    """
    Entry point for scheduled and manual passes.

    Usage:
        orchestrator = SyncOrchestrator(store, InMemoryLeaseManager())
        result = await orchestrator.sync_tenant("t1")
        summary = await orchestrator.sync_all_tenants()
    """

    def __init__(
        self,
        store: SyncStore,
        leases: LeaseManager,
        *,
        feed_client: Optional[PulsePointClient] = None,
        weather_client: Optional[NWSClient] = None,
        publisher: Optional[Publisher] = None,
        state_machine: Optional[PostingStateMachine] = None,
        concurrency: Optional[int] = None,
        min_interval_seconds: Optional[float] = None,
        lease_renew_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.leases = leases
        self.state_machine = state_machine or PostingStateMachine()
        self.feed_client = feed_client or PulsePointClient()
        self.weather_client = weather_client or NWSClient()
        self.publisher = publisher or Publisher(store, state_machine=self.state_machine)
        self.reconciler = IncidentReconciler(self.state_machine)
        self.resolver = WeatherChainResolver(self.state_machine)
        self.concurrency = concurrency or settings.SYNC_CONCURRENCY
        self.min_interval_seconds = (
            min_interval_seconds
            if min_interval_seconds is not None
            else settings.MIN_SYNC_INTERVAL_SECONDS
        )
        self.lease_renew_interval = lease_renew_interval
        self._clock = clock
        self._last_pass: Dict[Tuple[str, bool, bool], float] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    async def close(self) -> None:
        await self.feed_client.close()
        await self.weather_client.close()
        await self.publisher.close()

    @staticmethod
    def _feed_secret(tenant: Tenant) -> Optional[str]:
        return tenant.feed_secret or settings.FEED_DECRYPTION_SECRET

    def is_running(self, tenant_id: str) -> bool:
        task = self._tasks.get(tenant_id)
        return task is not None and not task.done()

    # ── Single tenant ──

    async def sync_tenant(
        self,
        tenant_id: str,
        *,
        force: bool = False,
        incidents: bool = True,
        weather: bool = True,
        now: Optional[datetime] = None,
        trigger: str = "manual",
    ) -> TenantSyncResult:
        tenant = await self.store.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant", tenant_id=tenant_id)

        result = TenantSyncResult(tenant_id=tenant_id)
        if not tenant.is_active:
            result.status = SyncStatus.SKIPPED
            result.reason = f"Tenant is {tenant.status.value}"
            return result

        run_incidents = incidents and tenant.has_incident_feed and bool(self._feed_secret(tenant))
        run_weather = weather and tenant.has_weather_feed
        if not (run_incidents or run_weather):
            result.status = SyncStatus.SKIPPED
            result.reason = (
                "Missing feed credentials"
                if incidents and tenant.has_incident_feed
                else "No feeds configured"
            )
            return result

        key = (tenant_id, run_incidents, run_weather)
        last = self._last_pass.get(key)
        if not force and last is not None and self._clock() - last < self.min_interval_seconds:
            result.status = SyncStatus.THROTTLED
            result.reason = f"Last pass under {self.min_interval_seconds:g}s ago"
            return result

        token = await self.leases.acquire(tenant_id)
        if token is None:
            result.status = SyncStatus.BUSY
            result.reason = "Sync already in progress"
            return result

        with sync_context(tenant_id, trigger):
            task = asyncio.create_task(
                self._run_pass(
                    tenant, run_incidents, run_weather, now or datetime.now(timezone.utc),
                ),
                name=f"sync:{tenant_id}",
            )
        self._tasks[tenant_id] = task
        keeper = self._keep_lease(tenant_id, token, task)
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            await keeper.stop()
            self._tasks.pop(tenant_id, None)
            self._last_pass[key] = self._clock()
            await self.leases.release(tenant_id, token)

        if task.cancelled():
            result.status = SyncStatus.CANCELLED
            result.reason = "Lease lost" if keeper.lost else "Pass cancelled"
            logger.warning(
                "Sync pass for tenant %s stopped: %s", tenant.slug, result.reason,
                extra={"tenant_id": tenant_id},
            )
            return result
        return task.result()

    def _keep_lease(self, tenant_id: str, token: str, task: asyncio.Task) -> LeaseKeeper:
        keeper = LeaseKeeper(self.leases, tenant_id, token, interval=self.lease_renew_interval)
        keeper.start(task)
        return keeper

    async def _run_pass(
        self,
        tenant: Tenant,
        run_incidents: bool,
        run_weather: bool,
        now: datetime,
    ) -> TenantSyncResult:
        start = time.perf_counter()
        result = TenantSyncResult(tenant_id=tenant.tenant_id)
        log_extra = {"tenant_id": tenant.tenant_id}

        if run_incidents:
            try:
                result.incidents = await self._sync_incidents(tenant, now)
                tenant.last_incident_sync = now
            except (FeedFetchError, DecryptionError) as e:
                result.incident_error = e.message
                logger.warning(
                    "Incident feed unavailable for tenant %s: %s", tenant.slug, e.message,
                    extra=log_extra,
                )
            except ReconciliationError as e:
                result.incident_error = e.message
                result.status = SyncStatus.FAILED
                result.duration_ms = (time.perf_counter() - start) * 1000
                logger.error("%s", e.message, extra=log_extra)
                return result
            except Exception as e:
                result.incident_error = str(e) or type(e).__name__
                logger.exception(
                    "Incident step failed for tenant %s", tenant.slug, extra=log_extra,
                )

        if run_weather:
            try:
                messages = await self.weather_client.fetch_active_alerts(tenant.weather_zones)
                result.weather = await self.resolver.resolve(
                    self.store, tenant.tenant_id, messages, now,
                )
                tenant.last_weather_sync = now
            except FeedFetchError as e:
                result.weather_error = e.message
                logger.warning(
                    "Weather feed unavailable for tenant %s: %s", tenant.slug, e.message,
                    extra=log_extra,
                )
            except Exception as e:
                result.weather_error = str(e) or type(e).__name__
                logger.exception(
                    "Weather step failed for tenant %s", tenant.slug, extra=log_extra,
                )

        result.alerts_expired = await expire_alerts(self.store, tenant.tenant_id, now)
        await self._stamp_tenant(tenant)

        attempted = int(run_incidents) + int(run_weather)
        errors = int(result.incident_error is not None) + int(result.weather_error is not None)
        if errors == 0:
            result.status = SyncStatus.COMPLETED
        elif errors < attempted:
            result.status = SyncStatus.PARTIAL
        else:
            result.status = SyncStatus.FAILED

        result.duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "Sync pass for tenant %s finished: %s", tenant.slug, result.status.value,
            extra={**log_extra, "duration_ms": round(result.duration_ms, 1)},
        )
        return result

    async def _sync_incidents(self, tenant: Tenant, now: datetime) -> ReconciliationResult:
        secret = self._feed_secret(tenant)
        snapshot = await self.feed_client.fetch_incidents(tenant.agency_ids, secret, now=now)
        if tenant.unit_legend_available is None:
            await self._refresh_unit_legend(tenant, secret)
        return await self.reconciler.reconcile(
            self.store, tenant.tenant_id, snapshot.incidents, now,
            active_ids=snapshot.active_ids,
        )

    async def _refresh_unit_legend(self, tenant: Tenant, secret: str) -> None:
        """First-pass legend lookup; failures leave the flag unset for next time."""
        try:
            legend = await self.feed_client.fetch_unit_legend(tenant.agency_ids[0], secret)
        except (FeedFetchError, DecryptionError) as e:
            logger.info("Unit legend lookup failed for tenant %s: %s", tenant.slug, e.message)
            return
        tenant.unit_legend = legend or []
        tenant.unit_legend_available = bool(legend)

    async def _stamp_tenant(self, tenant: Tenant) -> None:
        """Write back only the sync bookkeeping onto the latest tenant record."""
        current = await self.store.get_tenant(tenant.tenant_id)
        if current is None:
            return
        current.last_incident_sync = tenant.last_incident_sync
        current.last_weather_sync = tenant.last_weather_sync
        current.unit_legend = tenant.unit_legend
        current.unit_legend_available = tenant.unit_legend_available
        await self.store.save_tenant(current)

    # ── Cancellation ──

    def cancel_tenant(self, tenant_id: str) -> bool:
        """Cancel the tenant's in-flight pass. True when there was one."""
        task = self._tasks.get(tenant_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def deactivate_tenant(self, tenant_id: str) -> bool:
        """Mark the tenant deactivated and stop any pass in flight."""
        tenant = await self.store.get_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("Tenant", tenant_id=tenant_id)
        tenant.status = TenantStatus.DEACTIVATED
        await self.store.save_tenant(tenant)
        return self.cancel_tenant(tenant_id)

    # ── Fan-out ──

    async def _fan_out(
        self,
        tenants: List[Tenant],
        run: Callable[[Tenant], Awaitable[TenantSyncResult]],
    ) -> MultiTenantSyncResult:
        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(tenant: Tenant) -> TenantSyncResult:
            async with semaphore:
                try:
                    return await run(tenant)
                except Exception as e:
                    logger.exception(
                        "Unexpected error syncing tenant %s", tenant.slug,
                        extra={"tenant_id": tenant.tenant_id},
                    )
                    return TenantSyncResult(
                        tenant_id=tenant.tenant_id, status=SyncStatus.FAILED, reason=str(e),
                    )

        results = await asyncio.gather(*(guarded(t) for t in tenants))
        return MultiTenantSyncResult(results=list(results))

    async def sync_all_tenants(
        self,
        *,
        force: bool = False,
        incidents: bool = True,
        weather: bool = True,
        now: Optional[datetime] = None,
        trigger: str = "cron",
    ) -> MultiTenantSyncResult:
        tenants = await self.store.list_tenants(active_only=True)
        summary = await self._fan_out(
            tenants,
            lambda t: self.sync_tenant(
                t.tenant_id, force=force, incidents=incidents, weather=weather,
                now=now, trigger=trigger,
            ),
        )
        logger.info(
            "Synced %d tenants: %d skipped, %d failed",
            len(summary.results), len(summary.skipped), len(summary.failed),
        )
        return summary

    async def sync_weather_all(
        self, *, force: bool = False, now: Optional[datetime] = None, trigger: str = "cron",
    ) -> MultiTenantSyncResult:
        return await self.sync_all_tenants(force=force, incidents=False, now=now, trigger=trigger)

    async def _with_lease(
        self, tenant_id: str, work: Callable[[], Awaitable[Any]],
    ) -> Tuple[str, Any]:
        """Run ``work`` under the tenant lease → ("ran" | "busy" | "lost", value)."""
        token = await self.leases.acquire(tenant_id)
        if token is None:
            return "busy", None
        task = asyncio.ensure_future(work())
        keeper = self._keep_lease(tenant_id, token, task)
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            await keeper.stop()
            await self.leases.release(tenant_id, token)
        if task.cancelled():
            return "lost", None
        return "ran", task.result()

    async def publish_all(self, now: Optional[datetime] = None) -> List[PublishResult]:
        """Run a publish pass for every active tenant with a page connection."""
        results: List[PublishResult] = []
        for tenant in await self.store.list_tenants(active_only=True):
            try:
                outcome, result = await self._with_lease(
                    tenant.tenant_id, lambda t=tenant: self.publisher.publish_tenant(t, now),
                )
            except Exception as e:
                logger.exception(
                    "Publish pass failed for tenant %s", tenant.slug,
                    extra={"tenant_id": tenant.tenant_id},
                )
                result = PublishResult(tenant_id=tenant.tenant_id, error=str(e) or type(e).__name__)
            else:
                if outcome == "busy":
                    result = PublishResult(
                        tenant_id=tenant.tenant_id, skipped_reason="Sync already in progress",
                    )
                elif outcome == "lost":
                    result = PublishResult(tenant_id=tenant.tenant_id, skipped_reason="Lease lost")
            results.append(result)
        return results

    async def run_maintenance(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Close stale incidents, expire alerts and archive old closed incidents."""
        now = now or datetime.now(timezone.utc)
        totals = {
            "incidents_closed": 0,
            "alerts_expired": 0,
            "incidents_archived": 0,
            "busy": 0,
            "failed": 0,
        }

        for tenant in await self.store.list_tenants(active_only=True):
            async def work(tenant_id: str = tenant.tenant_id) -> Tuple[int, int, int]:
                closed = await close_stale_incidents(
                    self.store, tenant_id, now=now, state_machine=self.state_machine,
                )
                expired = await expire_alerts(self.store, tenant_id, now)
                archived = await archive_closed_incidents(self.store, tenant_id, now=now)
                return closed, expired, archived

            try:
                outcome, counts = await self._with_lease(tenant.tenant_id, work)
            except Exception:
                logger.exception(
                    "Maintenance failed for tenant %s", tenant.slug,
                    extra={"tenant_id": tenant.tenant_id},
                )
                totals["failed"] += 1
                continue
            if outcome == "busy":
                totals["busy"] += 1
                continue
            if outcome == "lost":
                logger.warning(
                    "Maintenance for tenant %s stopped: lease lost", tenant.slug,
                    extra={"tenant_id": tenant.tenant_id},
                )
                totals["failed"] += 1
                continue
            totals["incidents_closed"] += counts[0]
            totals["alerts_expired"] += counts[1]
            totals["incidents_archived"] += counts[2]

        logger.info(
            "Maintenance: %d stale incidents closed, %d alerts expired, %d archived, %d failed",
            totals["incidents_closed"], totals["alerts_expired"],
            totals["incidents_archived"], totals["failed"],
        )
        return totals
