"""
grouping.py — Read-time consolidation of dispatch groups.

Incidents sharing a non-null group_id are shown and published as one
entry. The projection is recomputed on every read from a snapshot of
stored records and never written back.

    members (any order)          representative
    ───────────────────          ──────────────────────────────────────
    A  09:00  units [1, 2]       A's fields, received 09:00
    B  09:04  units [2, 3]   ─▶  units [1, 2, 3]   (first-seen order)
    C  09:07  units []           unit_statuses keyed by unit, first wins

Members are ordered by call_received_time before merging, so "first seen"
means "seen on the earliest member". The final list is sorted by
call_received_time, newest first.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from backend.feedsync.incidents.models import Incident, IncidentStatus, UnitStatus
from backend.feedsync.incidents.normalizer import dedupe_units
from backend.feedsync.posting.models import STATE_RANK, PostingState


@dataclass
class ConsolidatedIncident:
    """One logical incident: a representative plus the members behind it."""
    representative: Incident
    members: List[Incident] = field(default_factory=list)
    units: List[str] = field(default_factory=list)
    unit_statuses: List[UnitStatus] = field(default_factory=list)

    @property
    def group_id(self) -> Optional[str]:
        return self.representative.group_id

    @property
    def is_grouped(self) -> bool:
        return len(self.members) > 1

    @property
    def member_ids(self) -> List[str]:
        return [m.incident_id for m in self.members]

    @property
    def is_medical(self) -> bool:
        return any(m.is_medical for m in self.members)

    @property
    def is_active(self) -> bool:
        return any(m.is_active for m in self.members)

    @property
    def effective_state(self) -> PostingState:
        """Least-advanced posting state among members."""
        return min((m.posting.state for m in self.members), key=STATE_RANK.__getitem__)

    @property
    def post_id(self) -> Optional[str]:
        return next((m.posting.post_id for m in self.members if m.posting.post_id), None)

    @property
    def needs_repost(self) -> bool:
        return any(m.posting.needs_repost for m in self.members)

    @property
    def sync_error(self) -> Optional[str]:
        return next((m.posting.error for m in self.members if m.posting.error), None)

    def view(self) -> Incident:
        """The representative with merged units, as a detached copy."""
        merged = Incident.from_dict(self.representative.to_dict())
        merged.units = list(self.units)
        merged.unit_statuses = list(self.unit_statuses)
        if self.is_active:
            merged.status = IncidentStatus.ACTIVE
            merged.call_closed_time = None
        return merged

    def to_dict(self) -> Dict[str, Any]:
        d = self.view().to_dict()
        d["member_ids"] = self.member_ids
        d["group_size"] = len(self.members)
        d["posting"]["state"] = self.effective_state.value
        d["posting"]["needs_repost"] = self.needs_repost
        return d


def _merge(members: List[Incident]) -> ConsolidatedIncident:
    ordered = sorted(members, key=lambda m: m.call_received_time)
    units: List[str] = []
    statuses: Dict[str, UnitStatus] = {}
    for member in ordered:
        units.extend(member.units)
        for status in member.unit_statuses:
            statuses.setdefault(status.unit_id, status)
    return ConsolidatedIncident(
        representative=ordered[0],
        members=ordered,
        units=dedupe_units(units),
        unit_statuses=list(statuses.values()),
    )


def consolidate_incidents(incidents: List[Incident]) -> List[ConsolidatedIncident]:
    """
    Collapse dispatch groups into single entries.

    Pure: the input list and its incidents are left untouched, and
    consolidating an already-consolidated view yields the same result.
    """
    by_group: Dict[str, List[Incident]] = {}
    entries: List[ConsolidatedIncident] = []
    for incident in incidents:
        if incident.group_id:
            by_group.setdefault(incident.group_id, []).append(incident)
        else:
            entries.append(_merge([incident]))
    entries.extend(_merge(members) for members in by_group.values())
    entries.sort(key=lambda e: e.representative.call_received_time, reverse=True)
    return entries


def group_count(incidents: List[Incident]) -> int:
    """Number of logical incidents after consolidation."""
    groups = {i.group_id for i in incidents if i.group_id}
    return len(groups) + sum(1 for i in incidents if not i.group_id)
