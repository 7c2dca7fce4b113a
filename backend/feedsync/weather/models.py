"""
models.py — Weather alert data structures.

Defines:
    • AlertSeverity / AlertUrgency / AlertCertainty — CAP enums
    • MessageType  — Alert / Update / Cancel
    • AlertState   — active / expired / cancelled
    • AlertMessage — one message from the weather service
    • WeatherAlert — stored, tenant-scoped record with lineage

Identity (no mutable lookup key):
    alert_id            — tenant-scoped id minted on create, never changes
    current_external_id — id of the latest message folded into this record
    superseded_ids      — every earlier message id, oldest first
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

class AlertSeverity(str, Enum):
    EXTREME  = "Extreme"
    SEVERE   = "Severe"
    MODERATE = "Moderate"
    MINOR    = "Minor"
    UNKNOWN  = "Unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "AlertSeverity":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class AlertUrgency(str, Enum):
    IMMEDIATE = "Immediate"
    EXPECTED  = "Expected"
    FUTURE    = "Future"
    PAST      = "Past"
    UNKNOWN   = "Unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "AlertUrgency":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class AlertCertainty(str, Enum):
    OBSERVED = "Observed"
    LIKELY   = "Likely"
    POSSIBLE = "Possible"
    UNLIKELY = "Unlikely"
    UNKNOWN  = "Unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> "AlertCertainty":
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class MessageType(str, Enum):
    ALERT  = "Alert"
    UPDATE = "Update"
    CANCEL = "Cancel"


class AlertState(str, Enum):
    ACTIVE    = "active"
    EXPIRED   = "expired"
    CANCELLED = "cancelled"


def _generate_id() -> str:
    return f"WXA-{uuid.uuid4().hex[:12].upper()}"


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
class AlertMessage:
    """A single alert message as received from the weather service."""
    external_id: str
    message_type: MessageType
    event: str
    headline: str = ""
    description: Optional[str] = None
    instruction: Optional[str] = None
    severity: AlertSeverity = AlertSeverity.UNKNOWN
    urgency: AlertUrgency = AlertUrgency.UNKNOWN
    certainty: AlertCertainty = AlertCertainty.UNKNOWN
    category: Optional[str] = None
    onset: Optional[datetime] = None
    expires: Optional[datetime] = None
    ends: Optional[datetime] = None
    affected_zones: List[str] = field(default_factory=list)
    references: List[str] = field(default_factory=list)


# Fields copied from a message onto the stored record on every patch
CONTENT_FIELDS = (
    "event", "headline", "description", "instruction",
    "severity", "urgency", "certainty", "category",
    "onset", "expires", "ends", "affected_zones",
)


@dataclass
class WeatherAlert:
    """Stored weather alert; one record per evolving chain of messages."""
    tenant_id: str
    current_external_id: str
    event: str
    alert_id: str = field(default_factory=_generate_id)
    superseded_ids: List[str] = field(default_factory=list)
    headline: str = ""
    description: Optional[str] = None
    instruction: Optional[str] = None
    severity: AlertSeverity = AlertSeverity.UNKNOWN
    urgency: AlertUrgency = AlertUrgency.UNKNOWN
    certainty: AlertCertainty = AlertCertainty.UNKNOWN
    category: Optional[str] = None
    onset: Optional[datetime] = None
    expires: Optional[datetime] = None
    ends: Optional[datetime] = None
    affected_zones: List[str] = field(default_factory=list)
    message_type: MessageType = MessageType.ALERT
    state: AlertState = AlertState.ACTIVE
    posting: PostingRecord = field(default_factory=PostingRecord)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @property
    def is_active(self) -> bool:
        return self.state == AlertState.ACTIVE

    def owns(self, external_id: str) -> bool:
        """True if ``external_id`` is this record's current id or in its lineage."""
        return external_id == self.current_external_id or external_id in self.superseded_ids

    def content_differs(self, message: AlertMessage) -> bool:
        return any(getattr(self, f) != getattr(message, f) for f in CONTENT_FIELDS)

    def apply_content(self, message: AlertMessage) -> None:
        for name in CONTENT_FIELDS:
            value = getattr(message, name)
            setattr(self, name, list(value) if isinstance(value, list) else value)
        self.message_type = message.message_type

    @classmethod
    def from_message(cls, tenant_id: str, message: AlertMessage) -> "WeatherAlert":
        alert = cls(
            tenant_id=tenant_id,
            current_external_id=message.external_id,
            event=message.event,
        )
        alert.apply_content(message)
        return alert

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "tenant_id": self.tenant_id,
            "current_external_id": self.current_external_id,
            "superseded_ids": list(self.superseded_ids),
            "event": self.event,
            "headline": self.headline,
            "description": self.description,
            "instruction": self.instruction,
            "severity": self.severity.value,
            "urgency": self.urgency.value,
            "certainty": self.certainty.value,
            "category": self.category,
            "onset": _iso(self.onset),
            "expires": _iso(self.expires),
            "ends": _iso(self.ends),
            "affected_zones": list(self.affected_zones),
            "message_type": self.message_type.value,
            "state": self.state.value,
            "posting": self.posting.to_dict(),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WeatherAlert":
        return cls(
            alert_id=data["alert_id"],
            tenant_id=data["tenant_id"],
            current_external_id=data["current_external_id"],
            superseded_ids=list(data.get("superseded_ids") or []),
            event=data["event"],
            headline=data.get("headline") or "",
            description=data.get("description"),
            instruction=data.get("instruction"),
            severity=AlertSeverity.parse(data.get("severity")),
            urgency=AlertUrgency.parse(data.get("urgency")),
            certainty=AlertCertainty.parse(data.get("certainty")),
            category=data.get("category"),
            onset=_parse_dt(data.get("onset")),
            expires=_parse_dt(data.get("expires")),
            ends=_parse_dt(data.get("ends")),
            affected_zones=list(data.get("affected_zones") or []),
            message_type=MessageType(data.get("message_type", MessageType.ALERT.value)),
            state=AlertState(data.get("state", AlertState.ACTIVE.value)),
            posting=PostingRecord.from_dict(data.get("posting") or {}),
            created_at=_parse_dt(data.get("created_at")) or _now(),
            updated_at=_parse_dt(data.get("updated_at")) or _now(),
        )
