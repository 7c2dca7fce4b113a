"""
base.py — Tenant-scoped persistence interface for the sync pipeline.

Every method takes (or reads) a tenant id; there is no way to touch
another tenant's records through this interface. Records are upserted by
their internal id and never hard-deleted.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, List, Optional

from backend.feedsync.incidents.models import Incident, IncidentStatus
from backend.feedsync.tenants.models import Tenant
from backend.feedsync.weather.models import AlertState, WeatherAlert


class SyncStore(ABC):
    """Async storage used by the reconciler, resolver, publisher and API."""

    # ── Tenants ──

    @abstractmethod
    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        ...

    @abstractmethod
    async def list_tenants(self, *, active_only: bool = True) -> List[Tenant]:
        ...

    @abstractmethod
    async def save_tenant(self, tenant: Tenant) -> None:
        ...

    # ── Incidents ──

    @abstractmethod
    async def list_incidents(
        self, tenant_id: str, *, status: Optional[IncidentStatus] = None,
    ) -> List[Incident]:
        ...

    @abstractmethod
    async def get_incident(self, tenant_id: str, incident_id: str) -> Optional[Incident]:
        ...

    @abstractmethod
    async def save_incident(self, incident: Incident) -> None:
        ...

    async def save_incidents(self, incidents: Iterable[Incident]) -> None:
        for incident in incidents:
            await self.save_incident(incident)

    async def list_group(self, tenant_id: str, group_id: str) -> List[Incident]:
        """All stored members of a dispatch group."""
        return [
            i for i in await self.list_incidents(tenant_id)
            if i.group_id == group_id
        ]

    # ── Weather alerts ──

    @abstractmethod
    async def list_alerts(
        self, tenant_id: str, *, state: Optional[AlertState] = None,
    ) -> List[WeatherAlert]:
        ...

    @abstractmethod
    async def get_alert(self, tenant_id: str, alert_id: str) -> Optional[WeatherAlert]:
        ...

    @abstractmethod
    async def save_alert(self, alert: WeatherAlert) -> None:
        ...

    async def close(self) -> None:
        """Release backend resources (no-op by default)."""
        return None
