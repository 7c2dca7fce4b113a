"""
FastAPI routes: per-tenant sync, incidents, posting queues, weather.

    POST /api/v1/tenants/{tenant_id}/sync                         (bearer)
    GET  /api/v1/tenants/{tenant_id}/incidents
    GET  /api/v1/tenants/{tenant_id}/incidents/{incident_id}
    GET  /api/v1/tenants/{tenant_id}/posting/{pending|posted|failed}
    GET  /api/v1/tenants/{tenant_id}/posting/stats
    POST /api/v1/tenants/{tenant_id}/posting/incidents/{id}/retry (bearer)
    POST /api/v1/tenants/{tenant_id}/posting/alerts/{id}/retry    (bearer)
    POST /api/v1/tenants/{tenant_id}/posting/reset                (bearer)
    GET  /api/v1/tenants/{tenant_id}/weather/active
    GET  /api/v1/tenants/{tenant_id}/weather/by-severity

Incident listings are the consolidated (grouped) projection.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from backend.feedsync.api.deps import (
    get_orchestrator,
    get_publisher,
    get_store,
    require_cron_secret,
)
from backend.feedsync.api.schemas import (
    ManualSyncRequest,
    PostingQueueResponse,
    ResetResponse,
    RetryResponse,
)
from backend.feedsync.core.errors import LeaseUnavailableError, NotFoundError
from backend.feedsync.incidents.grouping import consolidate_incidents
from backend.feedsync.incidents.models import IncidentStatus
from backend.feedsync.posting.publisher import Publisher
from backend.feedsync.posting.views import PostingQueues
from backend.feedsync.storage.base import SyncStore
from backend.feedsync.sync.orchestrator import SyncOrchestrator, SyncStatus
from backend.feedsync.tenants.models import Tenant
from backend.feedsync.weather.chain_resolver import group_by_severity
from backend.feedsync.weather.models import AlertState

router = APIRouter(prefix="/api/v1/tenants", tags=["tenants"])


class QueueName(str, Enum):
    PENDING = "pending"
    POSTED  = "posted"
    FAILED  = "failed"


async def _tenant_or_404(store: SyncStore, tenant_id: str) -> Tenant:
    tenant = await store.get_tenant(tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant", tenant_id=tenant_id)
    return tenant


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------

@router.post(
    "/{tenant_id}/sync",
    summary="Run a sync pass for one tenant now",
    dependencies=[Depends(require_cron_secret)],
)
async def sync_tenant(
    tenant_id: str,
    request: Optional[ManualSyncRequest] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    request = request or ManualSyncRequest()
    result = await orchestrator.sync_tenant(
        tenant_id,
        force=request.force,
        incidents=request.incidents,
        weather=request.weather,
    )
    if result.status == SyncStatus.BUSY:
        raise LeaseUnavailableError(tenant_id)
    return result.to_dict()


# ---------------------------------------------------------------------------
# Incidents
# ---------------------------------------------------------------------------

@router.get("/{tenant_id}/incidents", summary="Consolidated incidents, newest first")
async def list_incidents(
    tenant_id: str,
    status: Optional[IncidentStatus] = Query(None, description="active | closed | archived"),
    limit: int = Query(100, ge=1, le=500),
    store: SyncStore = Depends(get_store),
) -> Dict[str, Any]:
    await _tenant_or_404(store, tenant_id)
    incidents = await store.list_incidents(tenant_id, status=status)
    entries = consolidate_incidents(incidents)
    return {
        "tenant_id": tenant_id,
        "count": len(entries),
        "incidents": [e.to_dict() for e in entries[:limit]],
    }


@router.get("/{tenant_id}/incidents/{incident_id}")
async def get_incident(
    tenant_id: str,
    incident_id: str,
    store: SyncStore = Depends(get_store),
) -> Dict[str, Any]:
    incident = await store.get_incident(tenant_id, incident_id)
    if incident is None:
        raise NotFoundError("Incident", tenant_id=tenant_id, incident_id=incident_id)
    members = (
        await store.list_group(tenant_id, incident.group_id)
        if incident.group_id else [incident]
    )
    entry = consolidate_incidents(members)[0]
    return {"incident": incident.to_dict(), "group": entry.to_dict()}


# ---------------------------------------------------------------------------
# Posting queues
# ---------------------------------------------------------------------------

async def _queues(store: SyncStore, tenant_id: str) -> PostingQueues:
    await _tenant_or_404(store, tenant_id)
    return PostingQueues.build(
        tenant_id,
        await store.list_incidents(tenant_id),
        await store.list_alerts(tenant_id),
    )


@router.get("/{tenant_id}/posting/stats")
async def posting_stats(
    tenant_id: str,
    store: SyncStore = Depends(get_store),
) -> Dict[str, Any]:
    return (await _queues(store, tenant_id)).stats()


@router.get("/{tenant_id}/posting/{queue}", response_model=PostingQueueResponse)
async def posting_queue(
    tenant_id: str,
    queue: QueueName,
    store: SyncStore = Depends(get_store),
) -> PostingQueueResponse:
    queues = await _queues(store, tenant_id)
    incidents = {
        QueueName.PENDING: queues.pending,
        QueueName.POSTED: queues.posted,
        QueueName.FAILED: queues.failed,
    }[queue]
    alerts = {
        QueueName.PENDING: queues.pending_alerts,
        QueueName.POSTED: queues.posted_alerts,
        QueueName.FAILED: queues.failed_alerts,
    }[queue]
    return PostingQueueResponse(
        tenant_id=tenant_id,
        queue=queue.value,
        incidents=[e.to_dict() for e in incidents],
        alerts=[a.to_dict() for a in alerts],
    )


@router.post(
    "/{tenant_id}/posting/incidents/{incident_id}/retry",
    response_model=RetryResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def retry_incident(
    tenant_id: str,
    incident_id: str,
    publisher: Publisher = Depends(get_publisher),
) -> RetryResponse:
    state = await publisher.retry_incident(tenant_id, incident_id)
    return RetryResponse(id=incident_id, state=state.value)


@router.post(
    "/{tenant_id}/posting/alerts/{alert_id}/retry",
    response_model=RetryResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def retry_alert(
    tenant_id: str,
    alert_id: str,
    publisher: Publisher = Depends(get_publisher),
) -> RetryResponse:
    state = await publisher.retry_alert(tenant_id, alert_id)
    return RetryResponse(id=alert_id, state=state.value)


@router.post(
    "/{tenant_id}/posting/reset",
    response_model=ResetResponse,
    dependencies=[Depends(require_cron_secret)],
)
async def reset_posting(
    tenant_id: str,
    store: SyncStore = Depends(get_store),
    publisher: Publisher = Depends(get_publisher),
) -> ResetResponse:
    await _tenant_or_404(store, tenant_id)
    counts = await publisher.reset_posting_state(tenant_id)
    return ResetResponse(tenant_id=tenant_id, **counts)


# ---------------------------------------------------------------------------
# Weather
# ---------------------------------------------------------------------------

@router.get("/{tenant_id}/weather/active")
async def active_alerts(
    tenant_id: str,
    store: SyncStore = Depends(get_store),
) -> Dict[str, Any]:
    await _tenant_or_404(store, tenant_id)
    alerts = await store.list_alerts(tenant_id, state=AlertState.ACTIVE)
    return {
        "tenant_id": tenant_id,
        "count": len(alerts),
        "alerts": [a.to_dict() for a in alerts],
    }


@router.get("/{tenant_id}/weather/by-severity")
async def alerts_by_severity(
    tenant_id: str,
    store: SyncStore = Depends(get_store),
) -> Dict[str, List[Dict[str, Any]]]:
    await _tenant_or_404(store, tenant_id)
    alerts = await store.list_alerts(tenant_id, state=AlertState.ACTIVE)
    return {
        severity: [a.to_dict() for a in bucket]
        for severity, bucket in group_by_severity(alerts).items()
    }
