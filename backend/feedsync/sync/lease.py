"""
lease.py — Per-tenant single-flight leases.

A lease is (token, expiry). Only the holder of the token can renew or
release it, and an expired lease is free for the next caller, so a
worker that dies mid-pass blocks its tenant for at most one TTL.

    acquire(t1) → "a3f…"        renew(t1, "a3f…") → True
    acquire(t1) → None          release(t1, "bad") → False
                                release(t1, "a3f…") → True

A pass that may outlive one TTL runs under a LeaseKeeper, which renews in
the background and cancels the pass the moment a renew is refused.

Two backends share the interface:

    InMemoryLeaseManager   one process, asyncio.Lock around a dict
    RedisLeaseManager      SET NX PX; renew/release via Lua so the token
                           check and the write are one atomic step
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as aioredis

from backend.feedsync.core.config import settings

logger = logging.getLogger(__name__)


def _new_token() -> str:
    return uuid.uuid4().hex


class LeaseManager(ABC):
    """Token + expiry leases keyed by tenant id."""

    def __init__(self, ttl_seconds: Optional[float] = None):
        self.ttl_seconds = ttl_seconds or settings.SYNC_LEASE_TTL_SECONDS

    @abstractmethod
    async def acquire(self, tenant_id: str) -> Optional[str]:
        """Return a token, or None while another holder's lease is live."""

    @abstractmethod
    async def renew(self, tenant_id: str, token: str) -> bool:
        ...

    @abstractmethod
    async def release(self, tenant_id: str, token: str) -> bool:
        ...

    async def is_held(self, tenant_id: str) -> bool:
        return False


# ═══════════════════════════════════════════════════════════════════════════
# In-memory
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryLeaseManager(LeaseManager):
    """
    Process-local leases. ``clock`` is injectable so tests can move time
    past the TTL without sleeping.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        super().__init__(ttl_seconds)
        self._clock = clock
        self._leases: Dict[str, Tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def _live(self, tenant_id: str) -> Optional[Tuple[str, float]]:
        lease = self._leases.get(tenant_id)
        if lease is None:
            return None
        if lease[1] <= self._clock():
            del self._leases[tenant_id]
            return None
        return lease

    async def acquire(self, tenant_id: str) -> Optional[str]:
        async with self._lock:
            if self._live(tenant_id) is not None:
                return None
            token = _new_token()
            self._leases[tenant_id] = (token, self._clock() + self.ttl_seconds)
            return token

    async def renew(self, tenant_id: str, token: str) -> bool:
        async with self._lock:
            lease = self._live(tenant_id)
            if lease is None or lease[0] != token:
                return False
            self._leases[tenant_id] = (token, self._clock() + self.ttl_seconds)
            return True

    async def release(self, tenant_id: str, token: str) -> bool:
        async with self._lock:
            lease = self._live(tenant_id)
            if lease is None or lease[0] != token:
                return False
            del self._leases[tenant_id]
            return True

    async def is_held(self, tenant_id: str) -> bool:
        async with self._lock:
            return self._live(tenant_id) is not None


# ═══════════════════════════════════════════════════════════════════════════
# Redis
# ═══════════════════════════════════════════════════════════════════════════

_RENEW_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
end
return 0
"""

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisLeaseManager(LeaseManager):
    """Leases shared by every worker pointed at the same redis."""

    def __init__(
        self,
        client: aioredis.Redis,
        ttl_seconds: Optional[float] = None,
        key_prefix: Optional[str] = None,
    ):
        super().__init__(ttl_seconds)
        self.client = client
        self.key_prefix = key_prefix or settings.LEASE_KEY_PREFIX

    def _key(self, tenant_id: str) -> str:
        return f"{self.key_prefix}:{tenant_id}"

    @property
    def _ttl_ms(self) -> int:
        return int(self.ttl_seconds * 1000)

    async def acquire(self, tenant_id: str) -> Optional[str]:
        token = _new_token()
        ok = await self.client.set(self._key(tenant_id), token, nx=True, px=self._ttl_ms)
        return token if ok else None

    async def renew(self, tenant_id: str, token: str) -> bool:
        result = await self.client.eval(
            _RENEW_SCRIPT, 1, self._key(tenant_id), token, self._ttl_ms,
        )
        return bool(result)

    async def release(self, tenant_id: str, token: str) -> bool:
        result = await self.client.eval(_RELEASE_SCRIPT, 1, self._key(tenant_id), token)
        return bool(result)

    async def is_held(self, tenant_id: str) -> bool:
        return bool(await self.client.exists(self._key(tenant_id)))


async def create_lease_manager() -> LeaseManager:
    """Build the configured backend (``LEASE_BACKEND``)."""
    if settings.LEASE_BACKEND == "redis":
        from backend.feedsync.core.cache import get_redis

        logger.info("Using redis tenant leases")
        return RedisLeaseManager(await get_redis())
    return InMemoryLeaseManager()


# ═══════════════════════════════════════════════════════════════════════════
# Heartbeat
# ═══════════════════════════════════════════════════════════════════════════

class LeaseKeeper:
    """
    Renews a held lease while a task runs.

    Usage:
        keeper = LeaseKeeper(leases, "t1", token)
        task = asyncio.create_task(work())
        keeper.start(task)
        try:
            await asyncio.wait({task})
        finally:
            await keeper.stop()
        if keeper.lost: ...

    Renews every ``interval`` seconds (a third of the TTL by default). A
    refused or failing renew marks the lease lost and cancels the task, so
    nothing it holds is written after another worker takes over.
    """

    def __init__(
        self,
        leases: LeaseManager,
        tenant_id: str,
        token: str,
        interval: Optional[float] = None,
    ):
        self.leases = leases
        self.tenant_id = tenant_id
        self.token = token
        self.interval = interval if interval is not None else leases.ttl_seconds / 3
        self.lost = False
        self.renewals = 0
        self._task: Optional[asyncio.Task] = None

    def start(self, guarded: asyncio.Task) -> None:
        self._task = asyncio.create_task(
            self._run(guarded), name=f"lease:{self.tenant_id}",
        )

    async def _run(self, guarded: asyncio.Task) -> None:
        while not guarded.done():
            await asyncio.sleep(self.interval)
            if guarded.done():
                return
            try:
                renewed = await self.leases.renew(self.tenant_id, self.token)
            except Exception:
                logger.exception("Lease renewal failed for tenant %s", self.tenant_id)
                renewed = False
            if not renewed:
                self.lost = True
                logger.warning(
                    "Lease lost for tenant %s; stopping the running pass", self.tenant_id,
                    extra={"tenant_id": self.tenant_id},
                )
                guarded.cancel()
                return
            self.renewals += 1

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
