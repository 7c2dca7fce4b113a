"""
memory.py — In-process SyncStore (default backend, used by tests).

Records are deep-copied on the way in and on the way out, so a caller
holding a returned object can never mutate stored state by accident. The
reconciler relies on this: it works on copies and writes back only what
its plan says to write.
"""

from __future__ import annotations

import copy
from typing import Dict, List, Optional

from backend.feedsync.incidents.models import Incident, IncidentStatus
from backend.feedsync.storage.base import SyncStore
from backend.feedsync.tenants.models import Tenant
from backend.feedsync.weather.models import AlertState, WeatherAlert


class InMemoryStore(SyncStore):

    def __init__(self) -> None:
        self._tenants: Dict[str, Tenant] = {}
        self._incidents: Dict[str, Dict[str, Incident]] = {}
        self._alerts: Dict[str, Dict[str, WeatherAlert]] = {}

    # ── Tenants ──

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        tenant = self._tenants.get(tenant_id)
        return copy.deepcopy(tenant) if tenant else None

    async def list_tenants(self, *, active_only: bool = True) -> List[Tenant]:
        tenants = [
            t for t in self._tenants.values()
            if t.is_active or not active_only
        ]
        return copy.deepcopy(sorted(tenants, key=lambda t: t.tenant_id))

    async def save_tenant(self, tenant: Tenant) -> None:
        self._tenants[tenant.tenant_id] = copy.deepcopy(tenant)

    # ── Incidents ──

    async def list_incidents(
        self, tenant_id: str, *, status: Optional[IncidentStatus] = None,
    ) -> List[Incident]:
        rows = self._incidents.get(tenant_id, {}).values()
        if status is not None:
            rows = [i for i in rows if i.status == status]
        return copy.deepcopy(sorted(rows, key=lambda i: i.created_at))

    async def get_incident(self, tenant_id: str, incident_id: str) -> Optional[Incident]:
        incident = self._incidents.get(tenant_id, {}).get(incident_id)
        return copy.deepcopy(incident) if incident else None

    async def save_incident(self, incident: Incident) -> None:
        bucket = self._incidents.setdefault(incident.tenant_id, {})
        bucket[incident.incident_id] = copy.deepcopy(incident)

    # ── Weather alerts ──

    async def list_alerts(
        self, tenant_id: str, *, state: Optional[AlertState] = None,
    ) -> List[WeatherAlert]:
        rows = self._alerts.get(tenant_id, {}).values()
        if state is not None:
            rows = [a for a in rows if a.state == state]
        return copy.deepcopy(sorted(rows, key=lambda a: a.created_at))

    async def get_alert(self, tenant_id: str, alert_id: str) -> Optional[WeatherAlert]:
        alert = self._alerts.get(tenant_id, {}).get(alert_id)
        return copy.deepcopy(alert) if alert else None

    async def save_alert(self, alert: WeatherAlert) -> None:
        bucket = self._alerts.setdefault(alert.tenant_id, {})
        bucket[alert.alert_id] = copy.deepcopy(alert)
