"""
sql.py — SQLAlchemy-backed SyncStore (``STORAGE_BACKEND=database``).

Tables:

    tenants           one row per tenant, page connection flattened
    incidents         scalar fields as columns; units, unit statuses and
                      posting record as JSON
    weather_alerts    scalar fields as columns; lineage, zones and posting
                      record as JSON

Upserts go through ``session.merge`` on the internal id. Every query
filters on tenant_id.
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, String, Text, select

from backend.feedsync.core.database import Base, session_scope
from backend.feedsync.incidents.models import (
    CallTypeCategory,
    Incident,
    IncidentStatus,
    UnitStatus,
)
from backend.feedsync.posting.models import PostingRecord
from backend.feedsync.storage.base import SyncStore
from backend.feedsync.tenants.models import (
    AutoPostRules,
    FacebookConnection,
    Tenant,
    TenantStatus,
    UnitLegendEntry,
)
from backend.feedsync.weather.models import (
    AlertCertainty,
    AlertSeverity,
    AlertState,
    AlertUrgency,
    MessageType,
    WeatherAlert,
)

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Tables
# ═══════════════════════════════════════════════════════════════════════════

class TenantRow(Base):
    __tablename__ = "tenants"

    tenant_id = Column(String(64), primary_key=True)
    slug = Column(String(128), unique=True, index=True, nullable=False)
    name = Column(Text, nullable=False)
    status = Column(String(32), index=True, nullable=False)
    agency_ids = Column(JSON, nullable=False, default=list)
    feed_enabled = Column(Boolean, nullable=False, default=True)
    feed_secret = Column(Text)
    weather_zones = Column(JSON, nullable=False, default=list)
    weather_enabled = Column(Boolean, nullable=False, default=True)
    timezone = Column(String(64))
    facebook_page_id = Column(String(64))
    facebook_page_name = Column(Text)
    facebook_page_token = Column(Text)
    facebook_token_expires_at = Column(DateTime(timezone=True))
    auto_post_rules = Column(JSON, nullable=False, default=dict)
    unit_legend = Column(JSON, nullable=False, default=list)
    unit_legend_available = Column(Boolean)
    last_incident_sync = Column(DateTime(timezone=True))
    last_weather_sync = Column(DateTime(timezone=True))


class IncidentRow(Base):
    __tablename__ = "incidents"

    incident_id = Column(String(32), primary_key=True)
    tenant_id = Column(String(64), index=True, nullable=False)
    external_id = Column(String(128), index=True, nullable=False)
    group_id = Column(String(32), index=True)
    call_type = Column(String(64), nullable=False)
    category = Column(String(16), nullable=False)
    address = Column(Text, nullable=False)
    normalized_address = Column(Text, nullable=False, default="")
    latitude = Column(Float)
    longitude = Column(Float)
    units = Column(JSON, nullable=False, default=list)
    unit_statuses = Column(JSON, nullable=False, default=list)
    description = Column(Text)
    status = Column(String(16), index=True, nullable=False)
    call_received_time = Column(DateTime(timezone=True), index=True, nullable=False)
    call_closed_time = Column(DateTime(timezone=True))
    posting = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class WeatherAlertRow(Base):
    __tablename__ = "weather_alerts"

    alert_id = Column(String(32), primary_key=True)
    tenant_id = Column(String(64), index=True, nullable=False)
    current_external_id = Column(Text, index=True, nullable=False)
    superseded_ids = Column(JSON, nullable=False, default=list)
    event = Column(Text, nullable=False)
    headline = Column(Text, nullable=False, default="")
    description = Column(Text)
    instruction = Column(Text)
    severity = Column(String(16), nullable=False)
    urgency = Column(String(16), nullable=False)
    certainty = Column(String(16), nullable=False)
    category = Column(String(32))
    onset = Column(DateTime(timezone=True))
    expires = Column(DateTime(timezone=True))
    ends = Column(DateTime(timezone=True))
    affected_zones = Column(JSON, nullable=False, default=list)
    message_type = Column(String(16), nullable=False)
    state = Column(String(16), index=True, nullable=False)
    posting = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


# ═══════════════════════════════════════════════════════════════════════════
# Row ↔ domain mapping
# ═══════════════════════════════════════════════════════════════════════════

def tenant_to_row(tenant: Tenant) -> TenantRow:
    fb = tenant.facebook
    return TenantRow(
        tenant_id=tenant.tenant_id,
        slug=tenant.slug,
        name=tenant.name,
        status=tenant.status.value,
        agency_ids=list(tenant.agency_ids),
        feed_enabled=tenant.feed_enabled,
        feed_secret=tenant.feed_secret,
        weather_zones=list(tenant.weather_zones),
        weather_enabled=tenant.weather_enabled,
        timezone=tenant.timezone,
        facebook_page_id=fb.page_id if fb else None,
        facebook_page_name=fb.page_name if fb else None,
        facebook_page_token=fb.page_token if fb else None,
        facebook_token_expires_at=fb.token_expires_at if fb else None,
        auto_post_rules=tenant.auto_post_rules.to_dict(),
        unit_legend=[u.to_dict() for u in tenant.unit_legend],
        unit_legend_available=tenant.unit_legend_available,
        last_incident_sync=tenant.last_incident_sync,
        last_weather_sync=tenant.last_weather_sync,
    )


def row_to_tenant(row: TenantRow) -> Tenant:
    facebook = None
    if row.facebook_page_id:
        facebook = FacebookConnection(
            page_id=row.facebook_page_id,
            page_name=row.facebook_page_name or "",
            page_token=row.facebook_page_token or "",
            token_expires_at=row.facebook_token_expires_at,
        )
    return Tenant(
        tenant_id=row.tenant_id,
        slug=row.slug,
        name=row.name,
        status=TenantStatus(row.status),
        agency_ids=list(row.agency_ids or []),
        feed_enabled=bool(row.feed_enabled),
        feed_secret=row.feed_secret,
        weather_zones=list(row.weather_zones or []),
        weather_enabled=bool(row.weather_enabled),
        timezone=row.timezone,
        facebook=facebook,
        auto_post_rules=AutoPostRules.from_dict(row.auto_post_rules or {}),
        unit_legend=[UnitLegendEntry.from_dict(u) for u in row.unit_legend or []],
        unit_legend_available=row.unit_legend_available,
        last_incident_sync=row.last_incident_sync,
        last_weather_sync=row.last_weather_sync,
    )


def incident_to_row(incident: Incident) -> IncidentRow:
    return IncidentRow(
        incident_id=incident.incident_id,
        tenant_id=incident.tenant_id,
        external_id=incident.external_id,
        group_id=incident.group_id,
        call_type=incident.call_type,
        category=incident.category.value,
        address=incident.address,
        normalized_address=incident.normalized_address,
        latitude=incident.latitude,
        longitude=incident.longitude,
        units=list(incident.units),
        unit_statuses=[u.to_dict() for u in incident.unit_statuses],
        description=incident.description,
        status=incident.status.value,
        call_received_time=incident.call_received_time,
        call_closed_time=incident.call_closed_time,
        posting=incident.posting.to_dict(),
        created_at=incident.created_at,
        updated_at=incident.updated_at,
    )


def row_to_incident(row: IncidentRow) -> Incident:
    return Incident(
        incident_id=row.incident_id,
        tenant_id=row.tenant_id,
        external_id=row.external_id,
        group_id=row.group_id,
        call_type=row.call_type,
        category=CallTypeCategory(row.category),
        address=row.address,
        normalized_address=row.normalized_address or "",
        latitude=row.latitude,
        longitude=row.longitude,
        units=list(row.units or []),
        unit_statuses=[UnitStatus.from_dict(u) for u in row.unit_statuses or []],
        description=row.description,
        status=IncidentStatus(row.status),
        call_received_time=row.call_received_time,
        call_closed_time=row.call_closed_time,
        posting=PostingRecord.from_dict(row.posting or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def alert_to_row(alert: WeatherAlert) -> WeatherAlertRow:
    return WeatherAlertRow(
        alert_id=alert.alert_id,
        tenant_id=alert.tenant_id,
        current_external_id=alert.current_external_id,
        superseded_ids=list(alert.superseded_ids),
        event=alert.event,
        headline=alert.headline,
        description=alert.description,
        instruction=alert.instruction,
        severity=alert.severity.value,
        urgency=alert.urgency.value,
        certainty=alert.certainty.value,
        category=alert.category,
        onset=alert.onset,
        expires=alert.expires,
        ends=alert.ends,
        affected_zones=list(alert.affected_zones),
        message_type=alert.message_type.value,
        state=alert.state.value,
        posting=alert.posting.to_dict(),
        created_at=alert.created_at,
        updated_at=alert.updated_at,
    )


def row_to_alert(row: WeatherAlertRow) -> WeatherAlert:
    return WeatherAlert(
        alert_id=row.alert_id,
        tenant_id=row.tenant_id,
        current_external_id=row.current_external_id,
        superseded_ids=list(row.superseded_ids or []),
        event=row.event,
        headline=row.headline or "",
        description=row.description,
        instruction=row.instruction,
        severity=AlertSeverity.parse(row.severity),
        urgency=AlertUrgency.parse(row.urgency),
        certainty=AlertCertainty.parse(row.certainty),
        category=row.category,
        onset=row.onset,
        expires=row.expires,
        ends=row.ends,
        affected_zones=list(row.affected_zones or []),
        message_type=MessageType(row.message_type),
        state=AlertState(row.state),
        posting=PostingRecord.from_dict(row.posting or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class SqlStore(SyncStore):
    """SyncStore over the async engine configured in core/database.py."""

    async def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        async with session_scope() as session:
            row = await session.get(TenantRow, tenant_id)
            return row_to_tenant(row) if row else None

    async def list_tenants(self, *, active_only: bool = True) -> List[Tenant]:
        stmt = select(TenantRow).order_by(TenantRow.tenant_id)
        if active_only:
            stmt = stmt.where(TenantRow.status == TenantStatus.ACTIVE.value)
        async with session_scope() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [row_to_tenant(r) for r in rows]

    async def save_tenant(self, tenant: Tenant) -> None:
        async with session_scope() as session:
            await session.merge(tenant_to_row(tenant))

    async def list_incidents(
        self, tenant_id: str, *, status: Optional[IncidentStatus] = None,
    ) -> List[Incident]:
        stmt = (
            select(IncidentRow)
            .where(IncidentRow.tenant_id == tenant_id)
            .order_by(IncidentRow.created_at)
        )
        if status is not None:
            stmt = stmt.where(IncidentRow.status == status.value)
        async with session_scope() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [row_to_incident(r) for r in rows]

    async def get_incident(self, tenant_id: str, incident_id: str) -> Optional[Incident]:
        async with session_scope() as session:
            row = await session.get(IncidentRow, incident_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return row_to_incident(row)

    async def save_incident(self, incident: Incident) -> None:
        async with session_scope() as session:
            await session.merge(incident_to_row(incident))

    async def save_incidents(self, incidents) -> None:
        rows = [incident_to_row(i) for i in incidents]
        if not rows:
            return
        async with session_scope() as session:
            for row in rows:
                await session.merge(row)

    async def list_group(self, tenant_id: str, group_id: str) -> List[Incident]:
        stmt = select(IncidentRow).where(
            IncidentRow.tenant_id == tenant_id, IncidentRow.group_id == group_id,
        )
        async with session_scope() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [row_to_incident(r) for r in rows]

    async def list_alerts(
        self, tenant_id: str, *, state: Optional[AlertState] = None,
    ) -> List[WeatherAlert]:
        stmt = (
            select(WeatherAlertRow)
            .where(WeatherAlertRow.tenant_id == tenant_id)
            .order_by(WeatherAlertRow.created_at)
        )
        if state is not None:
            stmt = stmt.where(WeatherAlertRow.state == state.value)
        async with session_scope() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [row_to_alert(r) for r in rows]

    async def get_alert(self, tenant_id: str, alert_id: str) -> Optional[WeatherAlert]:
        async with session_scope() as session:
            row = await session.get(WeatherAlertRow, alert_id)
            if row is None or row.tenant_id != tenant_id:
                return None
            return row_to_alert(row)

    async def save_alert(self, alert: WeatherAlert) -> None:
        async with session_scope() as session:
            await session.merge(alert_to_row(alert))

    async def close(self) -> None:
        from backend.feedsync.core.database import close_db

        await close_db()
