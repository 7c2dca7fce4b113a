"""
views.py — Per-tenant posting queues.

Three disjoint selections over the consolidated incident view and the
tenant's weather alerts:

    pending   active, effective state pending
    posted    effective state posted or needs_update (badge flag included)
    failed    effective state failed

A group's effective state is the least-advanced state among its members
(failed < pending < needs_update < posted), so one failed member puts the
whole group in the failed queue.

Medical incidents never appear in any queue.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from backend.feedsync.incidents.grouping import ConsolidatedIncident, consolidate_incidents
from backend.feedsync.incidents.models import Incident
from backend.feedsync.posting.models import PostingState
from backend.feedsync.weather.models import WeatherAlert


def _postable(incidents: List[Incident]) -> List[ConsolidatedIncident]:
    return [c for c in consolidate_incidents(incidents) if not c.is_medical]


def pending_incidents(incidents: List[Incident]) -> List[ConsolidatedIncident]:
    return [
        c for c in _postable(incidents)
        if c.is_active and c.effective_state == PostingState.PENDING
    ]


def posted_incidents(incidents: List[Incident]) -> List[ConsolidatedIncident]:
    return [
        c for c in _postable(incidents)
        if c.effective_state in (PostingState.POSTED, PostingState.NEEDS_UPDATE)
    ]


def needs_update_incidents(incidents: List[Incident]) -> List[ConsolidatedIncident]:
    return [
        c for c in _postable(incidents)
        if c.effective_state == PostingState.NEEDS_UPDATE
    ]


def failed_incidents(incidents: List[Incident]) -> List[ConsolidatedIncident]:
    return [
        c for c in _postable(incidents)
        if c.effective_state == PostingState.FAILED
    ]


def pending_alerts(alerts: List[WeatherAlert]) -> List[WeatherAlert]:
    return [
        a for a in alerts
        if a.is_active and a.posting.state == PostingState.PENDING
    ]


def posted_alerts(alerts: List[WeatherAlert]) -> List[WeatherAlert]:
    return [
        a for a in alerts
        if a.posting.state in (PostingState.POSTED, PostingState.NEEDS_UPDATE)
    ]


def failed_alerts(alerts: List[WeatherAlert]) -> List[WeatherAlert]:
    return [a for a in alerts if a.posting.state == PostingState.FAILED]


@dataclass
class PostingQueues:
    """All three queues for one tenant, built from one snapshot."""
    tenant_id: str
    pending: List[ConsolidatedIncident] = field(default_factory=list)
    posted: List[ConsolidatedIncident] = field(default_factory=list)
    failed: List[ConsolidatedIncident] = field(default_factory=list)
    pending_alerts: List[WeatherAlert] = field(default_factory=list)
    posted_alerts: List[WeatherAlert] = field(default_factory=list)
    failed_alerts: List[WeatherAlert] = field(default_factory=list)
    medical_excluded: int = 0

    @classmethod
    def build(
        cls,
        tenant_id: str,
        incidents: List[Incident],
        alerts: List[WeatherAlert],
    ) -> "PostingQueues":
        return cls(
            tenant_id=tenant_id,
            pending=pending_incidents(incidents),
            posted=posted_incidents(incidents),
            failed=failed_incidents(incidents),
            pending_alerts=pending_alerts(alerts),
            posted_alerts=posted_alerts(alerts),
            failed_alerts=failed_alerts(alerts),
            medical_excluded=sum(
                1 for c in consolidate_incidents(incidents) if c.is_medical
            ),
        )

    def stats(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "incidents": {
                "pending": len(self.pending),
                "posted": len(self.posted),
                "needs_update": sum(
                    1 for c in self.posted
                    if c.effective_state == PostingState.NEEDS_UPDATE
                ),
                "failed": len(self.failed),
                "medical_excluded": self.medical_excluded,
            },
            "alerts": {
                "pending": len(self.pending_alerts),
                "posted": len(self.posted_alerts),
                "needs_update": sum(
                    1 for a in self.posted_alerts
                    if a.posting.state == PostingState.NEEDS_UPDATE
                ),
                "failed": len(self.failed_alerts),
            },
        }
