"""
models.py — Incident data structures.

Defines:
    • CallTypeCategory — coarse incident category (drives privacy exclusion)
    • IncidentStatus   — active / closed / archived
    • UnitStatus       — per-unit dispatch timeline
    • RawIncident      — one record parsed from a decrypted feed snapshot
    • Incident         — stored, tenant-scoped incident with sync metadata

Identity:
    incident_id  — tenant-scoped id minted on create (INC-XXXXXXXXXXXX)
    external_id  — id issued by the feed; at most one non-closed incident
                   per (tenant_id, external_id)
    group_id     — optional dispatch group; several stored incidents may
                   share it and are rendered as one logical unit
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from backend.feedsync.posting.models import PostingRecord


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class CallTypeCategory(str, Enum):
    FIRE    = "fire"
    MEDICAL = "medical"
    RESCUE  = "rescue"
    TRAFFIC = "traffic"
    HAZMAT  = "hazmat"
    OTHER   = "other"


class IncidentStatus(str, Enum):
    ACTIVE   = "active"
    CLOSED   = "closed"
    ARCHIVED = "archived"


# ═══════════════════════════════════════════════════════════════════════════
# Helpers
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id() -> str:
    return f"INC-{uuid.uuid4().hex[:12].upper()}"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class UnitStatus:
    """Dispatch timeline for one apparatus on one incident."""
    unit_id: str
    status: str = "DP"
    time_dispatched: Optional[datetime] = None
    time_acknowledged: Optional[datetime] = None
    time_enroute: Optional[datetime] = None
    time_on_scene: Optional[datetime] = None
    time_cleared: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "status": self.status,
            "time_dispatched": _iso(self.time_dispatched),
            "time_acknowledged": _iso(self.time_acknowledged),
            "time_enroute": _iso(self.time_enroute),
            "time_on_scene": _iso(self.time_on_scene),
            "time_cleared": _iso(self.time_cleared),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UnitStatus":
        return cls(
            unit_id=data["unit_id"],
            status=data.get("status", "DP"),
            time_dispatched=_parse_dt(data.get("time_dispatched")),
            time_acknowledged=_parse_dt(data.get("time_acknowledged")),
            time_enroute=_parse_dt(data.get("time_enroute")),
            time_on_scene=_parse_dt(data.get("time_on_scene")),
            time_cleared=_parse_dt(data.get("time_cleared")),
        )


@dataclass
class RawIncident:
    """A single incident as it appears in the current feed snapshot."""
    external_id: str
    call_type: str
    category: CallTypeCategory
    address: str
    normalized_address: str
    call_received_time: datetime
    status: IncidentStatus = IncidentStatus.ACTIVE
    call_closed_time: Optional[datetime] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    units: List[str] = field(default_factory=list)
    unit_statuses: List[UnitStatus] = field(default_factory=list)
    description: Optional[str] = None


@dataclass
class Incident:
    """
    Stored incident for one tenant.

    Created on first feed sighting, patched on every reconciliation pass
    while active, closed when it vanishes from an active snapshot. Never
    hard-deleted here.
    """
    tenant_id: str
    external_id: str
    call_type: str
    category: CallTypeCategory
    address: str
    call_received_time: datetime
    incident_id: str = field(default_factory=_generate_id)
    group_id: Optional[str] = None
    normalized_address: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    units: List[str] = field(default_factory=list)
    unit_statuses: List[UnitStatus] = field(default_factory=list)
    description: Optional[str] = None
    status: IncidentStatus = IncidentStatus.ACTIVE
    call_closed_time: Optional[datetime] = None
    posting: PostingRecord = field(default_factory=PostingRecord)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def is_medical(self) -> bool:
        return self.category == CallTypeCategory.MEDICAL

    @property
    def is_active(self) -> bool:
        return self.status == IncidentStatus.ACTIVE

    @classmethod
    def from_raw(cls, tenant_id: str, raw: RawIncident) -> "Incident":
        return cls(
            tenant_id=tenant_id,
            external_id=raw.external_id,
            call_type=raw.call_type,
            category=raw.category,
            address=raw.address,
            normalized_address=raw.normalized_address,
            latitude=raw.latitude,
            longitude=raw.longitude,
            units=list(raw.units),
            unit_statuses=list(raw.unit_statuses),
            description=raw.description,
            status=raw.status,
            call_received_time=raw.call_received_time,
            call_closed_time=raw.call_closed_time,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "incident_id": self.incident_id,
            "tenant_id": self.tenant_id,
            "external_id": self.external_id,
            "group_id": self.group_id,
            "call_type": self.call_type,
            "category": self.category.value,
            "address": self.address,
            "normalized_address": self.normalized_address,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "units": list(self.units),
            "unit_statuses": [u.to_dict() for u in self.unit_statuses],
            "description": self.description,
            "status": self.status.value,
            "call_received_time": _iso(self.call_received_time),
            "call_closed_time": _iso(self.call_closed_time),
            "posting": self.posting.to_dict(),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Incident":
        return cls(
            incident_id=data["incident_id"],
            tenant_id=data["tenant_id"],
            external_id=data["external_id"],
            group_id=data.get("group_id"),
            call_type=data["call_type"],
            category=CallTypeCategory(data["category"]),
            address=data["address"],
            normalized_address=data.get("normalized_address", ""),
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            units=list(data.get("units") or []),
            unit_statuses=[
                UnitStatus.from_dict(u) for u in data.get("unit_statuses") or []
            ],
            description=data.get("description"),
            status=IncidentStatus(data["status"]),
            call_received_time=_parse_dt(data["call_received_time"]),
            call_closed_time=_parse_dt(data.get("call_closed_time")),
            posting=PostingRecord.from_dict(data.get("posting") or {}),
            created_at=_parse_dt(data.get("created_at")) or _now(),
            updated_at=_parse_dt(data.get("updated_at")) or _now(),
        )
