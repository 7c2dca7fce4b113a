"""
models.py — Tenant configuration as seen by the sync pipeline.

Tenants are created and edited by administrative code outside this
service. The pipeline reads them and writes back only the sync
bookkeeping fields (last_incident_sync, last_weather_sync, unit_legend)
and, from the OAuth callback, the social page connection.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class TenantStatus(str, Enum):
    PENDING     = "pending_approval"
    ACTIVE      = "active"
    SUSPENDED   = "suspended"
    DEACTIVATED = "deactivated"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class UnitLegendEntry:
    """Feed unit key → human description ("E1" → "Engine 1")."""
    unit_key: str
    description: str

    def to_dict(self) -> Dict[str, str]:
        return {"UnitKey": self.unit_key, "Description": self.description}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UnitLegendEntry":
        return cls(
            unit_key=str(data.get("UnitKey") or data.get("unit_key") or ""),
            description=str(data.get("Description") or data.get("description") or ""),
        )


@dataclass
class FacebookConnection:
    """Page the tenant publishes to. Tokens are read-only here."""
    page_id: str
    page_name: str = ""
    page_token: str = ""
    token_expires_at: Optional[datetime] = None

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        """Page id and token present and the token not expired."""
        if not self.page_id or not self.page_token:
            return False
        if self.token_expires_at is None:
            return True
        return self.token_expires_at > (now or datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page_id": self.page_id,
            "page_name": self.page_name,
            "has_token": bool(self.page_token),
            "token_expires_at": _iso(self.token_expires_at),
        }


@dataclass
class AutoPostRules:
    """
    Per-tenant filter deciding which incidents get auto-published.

    call_types: categories ("fire"), codes ("SF") or description words;
    empty means every type. Medical exclusion is fixed on for this service.
    """
    enabled: bool = False
    call_types: List[str] = field(default_factory=list)
    exclude_medical: bool = True
    min_units: int = 0
    delay_seconds: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "call_types": list(self.call_types),
            "exclude_medical": self.exclude_medical,
            "min_units": self.min_units,
            "delay_seconds": self.delay_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AutoPostRules":
        return cls(
            enabled=bool(data.get("enabled", False)),
            call_types=list(data.get("call_types") or []),
            exclude_medical=True,
            min_units=int(data.get("min_units") or 0),
            delay_seconds=int(data.get("delay_seconds") or 0),
        )


@dataclass
class Tenant:
    """An organisation whose feeds are synchronised."""
    tenant_id: str
    slug: str
    name: str
    status: TenantStatus = TenantStatus.ACTIVE
    agency_ids: List[str] = field(default_factory=list)
    feed_enabled: bool = True
    feed_secret: Optional[str] = None
    weather_zones: List[str] = field(default_factory=list)
    weather_enabled: bool = True
    timezone: Optional[str] = None
    facebook: Optional[FacebookConnection] = None
    auto_post_rules: AutoPostRules = field(default_factory=AutoPostRules)
    unit_legend: List[UnitLegendEntry] = field(default_factory=list)
    unit_legend_available: Optional[bool] = None
    last_incident_sync: Optional[datetime] = None
    last_weather_sync: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == TenantStatus.ACTIVE

    @property
    def has_incident_feed(self) -> bool:
        return self.feed_enabled and bool(self.agency_ids)

    @property
    def has_weather_feed(self) -> bool:
        return self.weather_enabled and bool(self.weather_zones)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "slug": self.slug,
            "name": self.name,
            "status": self.status.value,
            "agency_ids": list(self.agency_ids),
            "feed_enabled": self.feed_enabled,
            "weather_zones": list(self.weather_zones),
            "weather_enabled": self.weather_enabled,
            "timezone": self.timezone,
            "facebook": self.facebook.to_dict() if self.facebook else None,
            "auto_post_rules": self.auto_post_rules.to_dict(),
            "unit_legend": [u.to_dict() for u in self.unit_legend],
            "unit_legend_available": self.unit_legend_available,
            "last_incident_sync": _iso(self.last_incident_sync),
            "last_weather_sync": _iso(self.last_weather_sync),
        }
