"""
scheduler.py — In-process periodic jobs.

Two loops run as asyncio tasks for the lifetime of the app:

    master       every SYNC_INTERVAL_SECONDS          sync all tenants, then publish
    maintenance  every MAINTENANCE_INTERVAL_SECONDS   stale close, expiry, archive

A failing tick is logged and the loop carries on. Deployments that drive
the cron endpoints from an external scheduler leave SCHEDULER_ENABLED off.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from backend.feedsync.core.config import settings
from backend.feedsync.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class JobStats:
    name: str
    interval_seconds: float
    runs: int = 0
    failures: int = 0
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "interval_seconds": self.interval_seconds,
            "runs": self.runs,
            "failures": self.failures,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }


class ScheduledJobRunner:
    """
    Owns the periodic tasks.

    Usage:
        runner = ScheduledJobRunner(orchestrator)
        runner.start()
        ...
        await runner.stop()
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        sync_interval: Optional[float] = None,
        maintenance_interval: Optional[float] = None,
    ):
        self.orchestrator = orchestrator
        self.stats = {
            "master": JobStats("master", sync_interval or settings.SYNC_INTERVAL_SECONDS),
            "maintenance": JobStats(
                "maintenance", maintenance_interval or settings.MAINTENANCE_INTERVAL_SECONDS,
            ),
        }
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    async def master_tick(self) -> None:
        await self.orchestrator.sync_all_tenants(trigger="scheduler")
        await self.orchestrator.publish_all()

    async def maintenance_tick(self) -> None:
        await self.orchestrator.run_maintenance()

    async def run_once(self, name: str, job: Callable[[], Awaitable[None]]) -> None:
        stats = self.stats[name]
        stats.runs += 1
        stats.last_run_at = datetime.now(timezone.utc)
        try:
            await job()
            stats.last_error = None
        except Exception as e:
            stats.failures += 1
            stats.last_error = str(e)
            logger.exception("Scheduled job %s failed", name)

    async def _loop(self, name: str, job: Callable[[], Awaitable[None]]) -> None:
        interval = self.stats[name].interval_seconds
        while True:
            await self.run_once(name, job)
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._loop("master", self.master_tick), name="feedsync:master"),
            asyncio.create_task(
                self._loop("maintenance", self.maintenance_tick), name="feedsync:maintenance",
            ),
        ]
        logger.info(
            "Scheduler started (master every %ss, maintenance every %ss)",
            self.stats["master"].interval_seconds,
            self.stats["maintenance"].interval_seconds,
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Scheduler stopped")
