"""
test_sync_orchestrator.py — Tests for tenant leases, sync passes and the
in-process scheduler.

Covers:
    • InMemoryLeaseManager (single holder, expiry, token checks)
    • RedisLeaseManager command shapes (mocked client)
    • sync_tenant outcomes (completed, partial, failed, skipped,
      throttled, busy, cancelled)
    • Feed failure or an unexpected incident error never closes stored
      incidents and never stops the weather step
    • Background lease renewal during long passes, and a lost lease
      stopping the pass
    • Multi-tenant fan-out, weather-only passes, publish and maintenance
      (one tenant failing never stops the rest)
    • ScheduledJobRunner tick bookkeeping

Run with:
    pytest tests/test_sync_orchestrator.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from unittest.mock import AsyncMock

import httpx
import pytest

from backend.feedsync.core.errors import FeedFetchError, NotFoundError
from backend.feedsync.feeds.pulsepoint import FeedSnapshot
from backend.feedsync.incidents.call_types import map_call_type_to_category
from backend.feedsync.incidents.models import Incident, IncidentStatus, RawIncident
from backend.feedsync.incidents.normalizer import normalize_address
from backend.feedsync.posting.facebook_client import FacebookClient
from backend.feedsync.posting.models import PostingState
from backend.feedsync.posting.publisher import Publisher
from backend.feedsync.storage.memory import InMemoryStore
from backend.feedsync.sync.lease import InMemoryLeaseManager, LeaseKeeper, RedisLeaseManager
from backend.feedsync.sync import orchestrator as orchestrator_module
from backend.feedsync.sync.orchestrator import SyncOrchestrator, SyncStatus
from backend.feedsync.sync.scheduler import ScheduledJobRunner
from backend.feedsync.tenants.models import (
    AutoPostRules,
    FacebookConnection,
    Tenant,
    TenantStatus,
    UnitLegendEntry,
)
from backend.feedsync.weather.models import (
    AlertMessage,
    AlertSeverity,
    AlertState,
    MessageType,
    WeatherAlert,
)


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

NOW = datetime(2025, 3, 1, 18, 0, tzinfo=timezone.utc)


class _Clock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class _StubFeed:
    """Stands in for PulsePointClient."""

    def __init__(self, snapshot: Optional[List[RawIncident]] = None, legend=None):
        self.snapshot = snapshot or []
        self.legend = legend
        self.error: Optional[Exception] = None
        self.errors_by_agency: Dict[str, Exception] = {}
        self.calls = 0
        self.legend_calls = 0

    async def fetch_incidents(self, agency_ids, secret, *, now=None, **kwargs):
        self.calls += 1
        for agency in agency_ids:
            if agency in self.errors_by_agency:
                raise self.errors_by_agency[agency]
        if self.error is not None:
            raise self.error
        return FeedSnapshot(
            incidents=list(self.snapshot),
            active_ids={r.external_id for r in self.snapshot if r.status == IncidentStatus.ACTIVE},
        )

    async def fetch_unit_legend(self, agency_id, secret):
        self.legend_calls += 1
        return self.legend

    async def close(self):
        pass


class _BlockingFeed(_StubFeed):
    """Feed whose fetch never returns; used to test cancellation."""

    def __init__(self, started: asyncio.Event):
        super().__init__()
        self.started = started

    async def fetch_incidents(self, agency_ids, secret, *, now=None, **kwargs):
        self.started.set()
        await asyncio.Event().wait()


class _GatedFeed(_StubFeed):
    """Feed whose fetch waits until the test opens the gate."""

    def __init__(self, snapshot: List[RawIncident], started: asyncio.Event, gate: asyncio.Event):
        super().__init__(snapshot)
        self.started = started
        self.gate = gate

    async def fetch_incidents(self, agency_ids, secret, *, now=None, **kwargs):
        self.started.set()
        await self.gate.wait()
        return await super().fetch_incidents(agency_ids, secret, now=now)


class _StubWeather:
    """Stands in for NWSClient."""

    def __init__(self, messages: Optional[List[AlertMessage]] = None):
        self.messages = messages or []
        self.error: Optional[Exception] = None
        self.errors_by_zone: Dict[str, Exception] = {}
        self.calls = 0

    async def fetch_active_alerts(self, zones):
        self.calls += 1
        for zone in zones:
            if zone in self.errors_by_zone:
                raise self.errors_by_zone[zone]
        if self.error is not None:
            raise self.error
        return list(self.messages)

    async def close(self):
        pass


def _make_raw(external_id: str = "ext-100", received: datetime = NOW - timedelta(minutes=10)) -> RawIncident:
    return RawIncident(
        external_id=external_id,
        call_type="SF",
        category=map_call_type_to_category("SF"),
        address="123 Main St",
        normalized_address=normalize_address("123 Main St"),
        call_received_time=received,
        units=["E1"],
    )


def _make_message(external_id: str = "X1", expires: Optional[datetime] = None) -> AlertMessage:
    return AlertMessage(
        external_id=external_id,
        message_type=MessageType.ALERT,
        event="Tornado Warning",
        severity=AlertSeverity.EXTREME,
        expires=expires or NOW + timedelta(hours=1),
    )


def _make_tenant(
    tenant_id: str = "t1",
    agency_ids=("EMS1",),
    zones=("NCZ041",),
    secret: Optional[str] = "s3cret",
    status: TenantStatus = TenantStatus.ACTIVE,
    connected: bool = False,
) -> Tenant:
    """Tenant with both feeds configured unless told otherwise."""
    return Tenant(
        tenant_id=tenant_id,
        slug=f"slug-{tenant_id}",
        name=f"Tenant {tenant_id}",
        status=status,
        agency_ids=list(agency_ids),
        feed_secret=secret,
        weather_zones=list(zones),
        facebook=FacebookConnection("PAGE1", "Page", "tok") if connected else None,
        auto_post_rules=AutoPostRules(enabled=True),
    )


def _graph(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"id": "PAGE1_1"})


def _make_orchestrator(
    store: InMemoryStore,
    feed=None,
    weather=None,
    leases: Optional[InMemoryLeaseManager] = None,
    clock: Optional[_Clock] = None,
    lease_renew_interval: Optional[float] = None,
) -> SyncOrchestrator:
    """Orchestrator wired to stub feeds and an in-process Graph API."""
    client = FacebookClient(base_url="https://graph.test/v24.0", transport=httpx.MockTransport(_graph))
    return SyncOrchestrator(
        store,
        leases or InMemoryLeaseManager(ttl_seconds=60),
        feed_client=feed or _StubFeed([_make_raw()]),
        weather_client=weather or _StubWeather([_make_message()]),
        publisher=Publisher(store, client=client),
        concurrency=2,
        min_interval_seconds=15,
        lease_renew_interval=lease_renew_interval,
        clock=clock or _Clock(),
    )


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def store() -> InMemoryStore:
    store = InMemoryStore()
    _run(store.save_tenant(_make_tenant()))
    return store


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Leases
# ═══════════════════════════════════════════════════════════════════════════

class TestInMemoryLease:
    def test_single_holder(self):
        async def scenario():
            leases = InMemoryLeaseManager(ttl_seconds=10, clock=_Clock())
            token = await leases.acquire("t1")
            second = await leases.acquire("t1")
            other = await leases.acquire("t2")
            return token, second, other, await leases.is_held("t1")

        token, second, other, held = _run(scenario())
        assert token is not None
        assert second is None
        assert other is not None
        assert held

    def test_release_requires_token(self):
        async def scenario():
            leases = InMemoryLeaseManager(ttl_seconds=10, clock=_Clock())
            token = await leases.acquire("t1")
            wrong = await leases.release("t1", "not-the-token")
            right = await leases.release("t1", token)
            return wrong, right, await leases.acquire("t1")

        wrong, right, again = _run(scenario())
        assert wrong is False
        assert right is True
        assert again is not None

    def test_expiry_frees_lease(self):
        async def scenario():
            clock = _Clock()
            leases = InMemoryLeaseManager(ttl_seconds=10, clock=clock)
            token = await leases.acquire("t1")
            clock.advance(11)
            takeover = await leases.acquire("t1")
            stale_renew = await leases.renew("t1", token)
            return takeover, stale_renew

        takeover, stale_renew = _run(scenario())
        assert takeover is not None
        assert stale_renew is False

    def test_renew_extends(self):
        async def scenario():
            clock = _Clock()
            leases = InMemoryLeaseManager(ttl_seconds=10, clock=clock)
            token = await leases.acquire("t1")
            clock.advance(8)
            renewed = await leases.renew("t1", token)
            clock.advance(8)
            return renewed, await leases.acquire("t1")

        renewed, competitor = _run(scenario())
        assert renewed is True
        assert competitor is None


class TestRedisLease:
    def test_acquire_uses_set_nx_px(self):
        client = AsyncMock()
        client.set.return_value = True
        leases = RedisLeaseManager(client, ttl_seconds=30, key_prefix="test:lease")

        token = _run(leases.acquire("t1"))
        assert token is not None
        args, kwargs = client.set.call_args
        assert args[0] == "test:lease:t1"
        assert args[1] == token
        assert kwargs == {"nx": True, "px": 30000}

    def test_acquire_refused(self):
        client = AsyncMock()
        client.set.return_value = None
        assert _run(RedisLeaseManager(client, ttl_seconds=30).acquire("t1")) is None

    def test_release_is_token_checked_script(self):
        client = AsyncMock()
        client.eval.return_value = 1
        leases = RedisLeaseManager(client, ttl_seconds=30, key_prefix="test:lease")
        assert _run(leases.release("t1", "tok")) is True
        args = client.eval.call_args.args
        assert args[1:] == (1, "test:lease:t1", "tok")
        assert "del" in args[0]

    def test_renew_passes_ttl(self):
        client = AsyncMock()
        client.eval.return_value = 0
        leases = RedisLeaseManager(client, ttl_seconds=30, key_prefix="test:lease")
        assert _run(leases.renew("t1", "tok")) is False
        assert client.eval.call_args.args[1:] == (1, "test:lease:t1", "tok", 30000)


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Single-tenant passes
# ═══════════════════════════════════════════════════════════════════════════

class TestSyncTenant:
    def test_completed_pass(self, store):
        feed = _StubFeed([_make_raw()], legend=[UnitLegendEntry("E1", "Engine 1")])
        orchestrator = _make_orchestrator(store, feed=feed)
        result = _run(orchestrator.sync_tenant("t1", now=NOW))

        assert result.status == SyncStatus.COMPLETED
        assert result.incidents.created == 1
        assert result.weather.created == 1
        tenant = _run(store.get_tenant("t1"))
        assert tenant.last_incident_sync == NOW
        assert tenant.last_weather_sync == NOW
        assert tenant.unit_legend_available is True
        assert tenant.unit_legend[0].description == "Engine 1"

    def test_unit_legend_fetched_once(self, store):
        feed = _StubFeed([_make_raw()], legend=None)
        orchestrator = _make_orchestrator(store, feed=feed)
        _run(orchestrator.sync_tenant("t1", now=NOW))
        _run(orchestrator.sync_tenant("t1", force=True, now=NOW))
        assert feed.legend_calls == 1
        assert _run(store.get_tenant("t1")).unit_legend_available is False

    def test_unknown_tenant(self, store):
        with pytest.raises(NotFoundError):
            _run(_make_orchestrator(store).sync_tenant("nope"))

    def test_inactive_tenant_skipped(self, store):
        _run(store.save_tenant(_make_tenant("t2", status=TenantStatus.SUSPENDED)))
        result = _run(_make_orchestrator(store).sync_tenant("t2"))
        assert result.status == SyncStatus.SKIPPED
        assert result.reason == "Tenant is suspended"

    def test_no_feeds_skipped(self, store):
        _run(store.save_tenant(_make_tenant("t2", agency_ids=(), zones=())))
        result = _run(_make_orchestrator(store).sync_tenant("t2"))
        assert result.status == SyncStatus.SKIPPED
        assert result.reason == "No feeds configured"

    def test_missing_secret_skipped(self, store):
        _run(store.save_tenant(_make_tenant("t2", zones=(), secret=None)))
        result = _run(_make_orchestrator(store).sync_tenant("t2"))
        assert result.status == SyncStatus.SKIPPED
        assert result.reason == "Missing feed credentials"

    def test_throttled_unless_forced(self, store):
        clock = _Clock()
        orchestrator = _make_orchestrator(store, clock=clock)
        assert _run(orchestrator.sync_tenant("t1", now=NOW)).status == SyncStatus.COMPLETED

        clock.advance(5)
        assert _run(orchestrator.sync_tenant("t1", now=NOW)).status == SyncStatus.THROTTLED
        assert _run(orchestrator.sync_tenant("t1", force=True, now=NOW)).status == SyncStatus.COMPLETED

        clock.advance(20)
        assert _run(orchestrator.sync_tenant("t1", now=NOW)).status == SyncStatus.COMPLETED

    def test_weather_only_pass_throttled_separately(self, store):
        orchestrator = _make_orchestrator(store)
        _run(orchestrator.sync_tenant("t1", now=NOW))
        result = _run(orchestrator.sync_tenant("t1", incidents=False, now=NOW))
        assert result.status == SyncStatus.COMPLETED
        assert result.incidents is None

    def test_busy_when_lease_held(self, store):
        leases = InMemoryLeaseManager(ttl_seconds=60)
        orchestrator = _make_orchestrator(store, leases=leases)

        async def scenario():
            await leases.acquire("t1")
            return await orchestrator.sync_tenant("t1", force=True, now=NOW)

        result = _run(scenario())
        assert result.status == SyncStatus.BUSY
        assert result.reason == "Sync already in progress"

    def test_lease_released_after_pass(self, store):
        leases = InMemoryLeaseManager(ttl_seconds=60)
        orchestrator = _make_orchestrator(store, leases=leases)

        async def scenario():
            await orchestrator.sync_tenant("t1", now=NOW)
            return await leases.is_held("t1")

        assert _run(scenario()) is False

    def test_feed_failure_does_not_close_incidents(self, store):
        feed = _StubFeed([_make_raw()])
        weather = _StubWeather([_make_message()])
        orchestrator = _make_orchestrator(store, feed=feed, weather=weather)
        _run(orchestrator.sync_tenant("t1", now=NOW))

        feed.error = FeedFetchError("pulsepoint", "both endpoints failed")
        result = _run(orchestrator.sync_tenant("t1", force=True, now=NOW + timedelta(minutes=2)))

        assert result.status == SyncStatus.PARTIAL
        assert "both endpoints failed" in result.incident_error
        assert result.weather is not None
        incidents = _run(store.list_incidents("t1"))
        assert [i.status for i in incidents] == [IncidentStatus.ACTIVE]
        assert _run(store.get_tenant("t1")).last_incident_sync == NOW

    def test_unexpected_incident_error_keeps_weather(self, store):
        feed = _StubFeed([_make_raw()])
        weather = _StubWeather([_make_message()])
        orchestrator = _make_orchestrator(store, feed=feed, weather=weather)
        _run(orchestrator.sync_tenant("t1", now=NOW))

        feed.error = RuntimeError("unexpected payload")
        weather.messages = [_make_message("X2")]
        result = _run(orchestrator.sync_tenant("t1", force=True, now=NOW + timedelta(minutes=2)))

        assert result.status == SyncStatus.PARTIAL
        assert result.incident_error == "unexpected payload"
        assert result.weather.created == 1
        incidents = _run(store.list_incidents("t1"))
        assert [i.status for i in incidents] == [IncidentStatus.ACTIVE]

    def test_both_feeds_failing(self, store):
        feed, weather = _StubFeed(), _StubWeather()
        feed.error = FeedFetchError("pulsepoint", "down")
        weather.error = FeedFetchError("nws", "down")
        result = _run(_make_orchestrator(store, feed=feed, weather=weather).sync_tenant("t1", now=NOW))
        assert result.status == SyncStatus.FAILED
        assert result.weather_error is not None

    def test_broken_store_aborts_pass(self, store):
        for _ in range(2):
            incident = Incident.from_raw("t1", _make_raw())
            _run(store.save_incident(incident))
        weather = _StubWeather([_make_message()])
        result = _run(_make_orchestrator(store, weather=weather).sync_tenant("t1", now=NOW))

        assert result.status == SyncStatus.FAILED
        assert "more than one open incident" in result.incident_error
        assert weather.calls == 0

    def test_expired_alerts_swept(self, store):
        weather = _StubWeather([_make_message("OLD", expires=NOW - timedelta(minutes=1))])
        result = _run(_make_orchestrator(store, weather=weather).sync_tenant("t1", now=NOW))
        assert result.alerts_expired == 1
        assert _run(store.list_alerts("t1"))[0].state == AlertState.EXPIRED


class TestLeaseRenewal:
    def test_long_pass_keeps_lease(self, store):
        lease_clock = _Clock()
        leases = InMemoryLeaseManager(ttl_seconds=60, clock=lease_clock)

        async def scenario():
            started, gate = asyncio.Event(), asyncio.Event()
            orchestrator = _make_orchestrator(
                store, feed=_GatedFeed([_make_raw()], started, gate),
                leases=leases, lease_renew_interval=0.01,
            )
            task = asyncio.create_task(orchestrator.sync_tenant("t1", now=NOW))
            await started.wait()
            lease_clock.advance(40)
            await asyncio.sleep(0.05)
            lease_clock.advance(40)
            competitor = await leases.acquire("t1")
            gate.set()
            return competitor, await task, await leases.is_held("t1")

        competitor, result, held = _run(scenario())
        assert competitor is None
        assert result.status == SyncStatus.COMPLETED
        assert result.incidents.created == 1
        assert held is False

    def test_lost_lease_stops_pass(self, store):
        lease_clock = _Clock()
        leases = InMemoryLeaseManager(ttl_seconds=60, clock=lease_clock)

        async def scenario():
            started = asyncio.Event()
            orchestrator = _make_orchestrator(
                store, feed=_BlockingFeed(started), leases=leases, lease_renew_interval=0.01,
            )
            task = asyncio.create_task(orchestrator.sync_tenant("t1", now=NOW))
            await started.wait()
            lease_clock.advance(61)
            competitor = await leases.acquire("t1")
            result = await asyncio.wait_for(task, timeout=5)
            return competitor, result, await leases.is_held("t1"), orchestrator.is_running("t1")

        competitor, result, held, running = _run(scenario())
        assert competitor is not None
        assert result.status == SyncStatus.CANCELLED
        assert result.reason == "Lease lost"
        assert held is True
        assert running is False

    def test_refused_renew_cancels_task(self):
        async def scenario():
            leases = AsyncMock()
            leases.ttl_seconds = 60
            leases.renew.return_value = False
            keeper = LeaseKeeper(leases, "t1", "tok", interval=0.01)
            task = asyncio.create_task(asyncio.Event().wait())
            keeper.start(task)
            await asyncio.gather(task, return_exceptions=True)
            await keeper.stop()
            return keeper, task

        keeper, task = _run(scenario())
        assert keeper.lost is True
        assert keeper.renewals == 0
        assert task.cancelled()

    def test_failing_renew_counts_as_lost(self):
        async def scenario():
            leases = AsyncMock()
            leases.ttl_seconds = 60
            leases.renew.side_effect = ConnectionError("redis gone")
            keeper = LeaseKeeper(leases, "t1", "tok", interval=0.01)
            task = asyncio.create_task(asyncio.Event().wait())
            keeper.start(task)
            await asyncio.gather(task, return_exceptions=True)
            await keeper.stop()
            return keeper

        assert _run(scenario()).lost is True

    def test_default_interval_is_third_of_ttl(self):
        assert LeaseKeeper(InMemoryLeaseManager(ttl_seconds=30), "t1", "tok").interval == 10


class TestCancellation:
    def test_cancel_in_flight_pass(self, store):
        leases = InMemoryLeaseManager(ttl_seconds=60)

        async def scenario():
            started = asyncio.Event()
            orchestrator = _make_orchestrator(store, feed=_BlockingFeed(started), leases=leases)
            task = asyncio.create_task(orchestrator.sync_tenant("t1", now=NOW))
            await started.wait()
            running = orchestrator.is_running("t1")
            cancelled = orchestrator.cancel_tenant("t1")
            result = await task
            return running, cancelled, result, await leases.is_held("t1")

        running, cancelled, result, held = _run(scenario())
        assert running and cancelled
        assert result.status == SyncStatus.CANCELLED
        assert held is False

    def test_cancel_without_pass(self, store):
        assert _make_orchestrator(store).cancel_tenant("t1") is False

    def test_deactivate(self, store):
        orchestrator = _make_orchestrator(store)
        assert _run(orchestrator.deactivate_tenant("t1")) is False
        assert _run(store.get_tenant("t1")).status == TenantStatus.DEACTIVATED
        assert _run(orchestrator.sync_tenant("t1")).status == SyncStatus.SKIPPED


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Multi-tenant passes
# ═══════════════════════════════════════════════════════════════════════════

class TestFanOut:
    def test_sync_all_isolates_failures(self, store):
        _run(store.save_tenant(_make_tenant("t2", agency_ids=("BAD",))))
        _run(store.save_tenant(_make_tenant("t3", status=TenantStatus.DEACTIVATED)))
        _run(store.save_tenant(_make_tenant("t4", zones=("CRASH",))))
        feed = _StubFeed([_make_raw()])
        feed.errors_by_agency["BAD"] = RuntimeError("unexpected payload")
        weather = _StubWeather([_make_message()])
        weather.errors_by_zone["CRASH"] = RuntimeError("zone lookup exploded")

        summary = _run(_make_orchestrator(store, feed=feed, weather=weather).sync_all_tenants(now=NOW))
        d = summary.to_dict()
        assert d["tenants"] == 3
        assert d["synced"] == 1
        failed = {f["tenant_id"]: f for f in d["failed"]}
        assert failed["t2"] == {
            "tenant_id": "t2",
            "status": "partial",
            "incident_error": "unexpected payload",
            "weather_error": None,
            "reason": None,
        }
        assert failed["t4"]["status"] == "partial"
        assert failed["t4"]["weather_error"] == "zone lookup exploded"
        assert d["totals"]["incidents_created"] == 2

    def test_weather_only_fan_out(self, store):
        feed = _StubFeed([_make_raw()])
        summary = _run(_make_orchestrator(store, feed=feed).sync_weather_all(now=NOW))
        assert feed.calls == 0
        assert summary.totals()["alerts_created"] == 1

    def test_publish_all(self, store):
        _run(store.save_tenant(_make_tenant("t1", connected=True)))
        orchestrator = _make_orchestrator(store)
        _run(orchestrator.sync_tenant("t1", now=NOW))

        results = _run(orchestrator.publish_all(NOW))
        assert results[0].published == 1
        assert results[0].alerts_published == 1
        incident = _run(store.list_incidents("t1"))[0]
        assert incident.posting.state == PostingState.POSTED

    def test_crashing_pass_reported_as_failed(self, store, monkeypatch):
        _run(store.save_tenant(_make_tenant("t2")))
        orchestrator = _make_orchestrator(store)
        real_stamp = orchestrator._stamp_tenant

        async def flaky_stamp(tenant):
            if tenant.tenant_id == "t1":
                raise RuntimeError("tenant row locked")
            await real_stamp(tenant)

        monkeypatch.setattr(orchestrator, "_stamp_tenant", flaky_stamp)
        d = _run(orchestrator.sync_all_tenants(now=NOW)).to_dict()
        assert d["synced"] == 1
        assert d["failed"][0]["tenant_id"] == "t1"
        assert d["failed"][0]["status"] == "failed"
        assert d["failed"][0]["reason"] == "tenant row locked"

    def test_publish_failure_isolated(self, store, monkeypatch):
        _run(store.save_tenant(_make_tenant("t1", connected=True)))
        _run(store.save_tenant(_make_tenant("t2", connected=True)))
        leases = InMemoryLeaseManager(ttl_seconds=60)
        orchestrator = _make_orchestrator(store, leases=leases)
        real_publish = orchestrator.publisher.publish_tenant

        async def flaky_publish(tenant, now=None):
            if tenant.tenant_id == "t1":
                raise RuntimeError("graph exploded")
            return await real_publish(tenant, now)

        monkeypatch.setattr(orchestrator.publisher, "publish_tenant", flaky_publish)

        async def scenario():
            await orchestrator.sync_all_tenants(now=NOW)
            results = await orchestrator.publish_all(NOW)
            return results, await leases.is_held("t1")

        results, held = _run(scenario())
        by_tenant = {r.tenant_id: r for r in results}
        assert by_tenant["t1"].error == "graph exploded"
        assert by_tenant["t1"].to_dict()["error"] == "graph exploded"
        assert by_tenant["t2"].published == 1
        assert by_tenant["t2"].error is None
        assert held is False

    def test_publish_skips_busy_tenant(self, store):
        leases = InMemoryLeaseManager(ttl_seconds=60)
        orchestrator = _make_orchestrator(store, leases=leases)

        async def scenario():
            await leases.acquire("t1")
            return await orchestrator.publish_all(NOW)

        results = _run(scenario())
        assert results[0].skipped_reason == "Sync already in progress"

    def test_maintenance(self, store):
        _run(store.save_tenant(_make_tenant("t2")))
        stale = Incident.from_raw("t1", _make_raw("stale", received=NOW - timedelta(hours=3)))
        old_closed = Incident.from_raw("t1", _make_raw("old", received=NOW - timedelta(days=9)))
        old_closed.status = IncidentStatus.CLOSED
        old_closed.call_closed_time = NOW - timedelta(days=8)
        alert = WeatherAlert.from_message("t1", _make_message("X1", expires=NOW - timedelta(minutes=5)))
        for incident in (stale, old_closed):
            _run(store.save_incident(incident))
        _run(store.save_alert(alert))

        leases = InMemoryLeaseManager(ttl_seconds=60)
        orchestrator = _make_orchestrator(store, leases=leases)

        async def scenario():
            await leases.acquire("t2")
            return await orchestrator.run_maintenance(NOW)

        totals = _run(scenario())
        assert totals == {
            "incidents_closed": 1,
            "alerts_expired": 1,
            "incidents_archived": 1,
            "busy": 1,
            "failed": 0,
        }

    def test_maintenance_failure_isolated(self, store, monkeypatch):
        _run(store.save_tenant(_make_tenant("t2")))
        stale = Incident.from_raw("t2", _make_raw("stale", received=NOW - timedelta(hours=3)))
        _run(store.save_incident(stale))
        real_archive = orchestrator_module.archive_closed_incidents

        async def flaky_archive(store_, tenant_id, now=None):
            if tenant_id == "t1":
                raise RuntimeError("disk full")
            return await real_archive(store_, tenant_id, now=now)

        monkeypatch.setattr(orchestrator_module, "archive_closed_incidents", flaky_archive)
        leases = InMemoryLeaseManager(ttl_seconds=60)
        orchestrator = _make_orchestrator(store, leases=leases)

        async def scenario():
            totals = await orchestrator.run_maintenance(NOW)
            return totals, await leases.is_held("t1")

        totals, held = _run(scenario())
        assert totals["failed"] == 1
        assert totals["incidents_closed"] == 1
        assert held is False


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Scheduler
# ═══════════════════════════════════════════════════════════════════════════

class TestScheduler:
    def test_failing_job_recorded(self, store):
        runner = ScheduledJobRunner(_make_orchestrator(store), sync_interval=60, maintenance_interval=60)

        async def boom():
            raise RuntimeError("boom")

        _run(runner.run_once("master", boom))
        stats = runner.stats["master"]
        assert stats.runs == 1
        assert stats.failures == 1
        assert stats.last_error == "boom"

    def test_success_clears_error(self, store):
        runner = ScheduledJobRunner(_make_orchestrator(store), sync_interval=60, maintenance_interval=60)
        runner.stats["maintenance"].last_error = "old"
        _run(runner.run_once("maintenance", runner.maintenance_tick))
        assert runner.stats["maintenance"].last_error is None
        assert runner.stats["maintenance"].to_dict()["runs"] == 1

    def test_master_tick_syncs_then_publishes(self, store):
        orchestrator = AsyncMock()
        runner = ScheduledJobRunner(orchestrator, sync_interval=60, maintenance_interval=60)
        _run(runner.master_tick())
        orchestrator.sync_all_tenants.assert_awaited_once()
        orchestrator.publish_all.assert_awaited_once()

    def test_start_and_stop(self, store):
        orchestrator = AsyncMock()
        runner = ScheduledJobRunner(orchestrator, sync_interval=60, maintenance_interval=60)

        async def scenario():
            runner.start()
            await asyncio.sleep(0.01)
            running = runner.running
            await runner.stop()
            return running

        assert _run(scenario()) is True
        assert runner.running is False
        assert runner.stats["master"].runs == 1
        assert runner.stats["maintenance"].runs == 1
