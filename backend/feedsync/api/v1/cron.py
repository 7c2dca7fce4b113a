"""
FastAPI routes: scheduler triggers.

    POST /api/v1/cron/sync         — incident + weather pass for every tenant
    POST /api/v1/cron/weather      — weather-only pass
    POST /api/v1/cron/publish      — publish queues for every tenant
    POST /api/v1/cron/maintenance  — stale close, alert expiry, archive

All require ``Authorization: Bearer <CRON_SECRET>``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from backend.feedsync.api.deps import get_orchestrator, require_cron_secret
from backend.feedsync.api.schemas import SyncRequest
from backend.feedsync.sync.orchestrator import SyncOrchestrator

router = APIRouter(
    prefix="/api/v1/cron",
    tags=["cron"],
    dependencies=[Depends(require_cron_secret)],
)


@router.post("/sync", summary="Sync every active tenant")
async def cron_sync(
    request: Optional[SyncRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    force = request.force if request else False
    summary = await orchestrator.sync_all_tenants(force=force)
    return summary.to_dict()


@router.post("/weather", summary="Sync weather alerts for every active tenant")
async def cron_weather(
    request: Optional[SyncRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    force = request.force if request else False
    summary = await orchestrator.sync_weather_all(force=force)
    return summary.to_dict()


@router.post("/publish", summary="Publish pending and changed items")
async def cron_publish(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    results = await orchestrator.publish_all()
    return {
        "tenants": len(results),
        "published": sum(r.published for r in results),
        "updated": sum(r.updated for r in results),
        "skipped": sum(r.skipped for r in results),
        "failed": sum(r.failed for r in results),
        "alerts_published": sum(r.alerts_published for r in results),
        "errors": sum(1 for r in results if r.error),
        "results": [r.to_dict() for r in results],
    }


@router.post("/maintenance", summary="Close stale incidents and expire alerts")
async def cron_maintenance(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return await orchestrator.run_maintenance()
