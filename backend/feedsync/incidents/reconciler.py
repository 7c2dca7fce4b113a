"""
reconciler.py — Diff a feed snapshot against stored incidents.

═══════════════════════════════════════════════════════════════════════════
RECONCILIATION PASS
═══════════════════════════════════════════════════════════════════════════

    stored incidents ─┐
                      ├──▶ plan_reconciliation() ──▶ ReconciliationPlan
    feed snapshot  ───┘       (pure, no I/O)          creates / updates /
                                                      closes / errors
                                    │
                                    ▼
                           apply_plan(store)  creates → updates → closes

Matching is by external id:
    • a stored non-closed incident wins
    • otherwise the most recently closed one (a call the feed reopened)
    • otherwise the record is new

Per record:
    new                    → create (auto-grouped, see below)
    content changed        → update; posted → needs_update
    only description moved → update, posting state untouched
    nothing changed        → no-op (second pass over the same snapshot
                             produces an empty plan)

Stored active incidents absent from the snapshot are closed with
call_closed_time = now. When the caller passes `active_ids` (every id the
feed still lists as open, before any windowing) an incident is only closed
when it is missing from both.

Auto-grouping: a new incident whose normalised address, call type and
received-time window match another open incident joins (or opens) that
dispatch group. If the group already has a post, the newcomer takes the
post reference and is queued as an update so the group never gets a
second post.

Errors on a single record are collected on the plan and logged; they
never stop the rest of the snapshot. A stored state with two open
incidents for one external id is a broken invariant and aborts the pass
with ReconciliationError.
"""

from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from backend.feedsync.core.config import settings
from backend.feedsync.core.errors import ReconciliationError
from backend.feedsync.incidents.models import Incident, IncidentStatus, RawIncident
from backend.feedsync.incidents.normalizer import group_merge_key, has_incident_changed
from backend.feedsync.posting.state_machine import PostingStateMachine
from backend.feedsync.storage.base import SyncStore

logger = logging.getLogger(__name__)


def _generate_group_id() -> str:
    return f"GRP-{uuid.uuid4().hex[:12].upper()}"


# ═══════════════════════════════════════════════════════════════════════════
# Plan & Result
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class RecordError:
    external_id: str
    error: str

    def to_dict(self) -> Dict[str, str]:
        return {"external_id": self.external_id, "error": self.error}


@dataclass
class ReconciliationPlan:
    """Mutations for one tenant, in apply order."""
    tenant_id: str
    creates: List[Incident] = field(default_factory=list)
    updates: List[Incident] = field(default_factory=list)
    closes: List[Incident] = field(default_factory=list)
    errors: List[RecordError] = field(default_factory=list)
    flagged_for_update: int = 0

    @property
    def is_empty(self) -> bool:
        return not (self.creates or self.updates or self.closes)

    def operations(self) -> List[Incident]:
        return [*self.creates, *self.updates, *self.closes]


@dataclass
class ReconciliationResult:
    tenant_id: str
    created: int = 0
    updated: int = 0
    closed: int = 0
    flagged_for_update: int = 0
    errors: List[RecordError] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "created": self.created,
            "updated": self.updated,
            "closed": self.closed,
            "flagged_for_update": self.flagged_for_update,
            "errors": [e.to_dict() for e in self.errors],
        }


# ═══════════════════════════════════════════════════════════════════════════
# Planning
# ═══════════════════════════════════════════════════════════════════════════

class IncidentReconciler:
    """
    Builds and applies reconciliation plans for one tenant at a time.

    Parameters
    ----------
    state_machine : PostingStateMachine | None
    group_window_minutes : int | None
        Received-time bucket for auto-grouping (default 10 min).
    """

    def __init__(
        self,
        state_machine: Optional[PostingStateMachine] = None,
        group_window_minutes: Optional[int] = None,
    ):
        self.state_machine = state_machine or PostingStateMachine()
        self.group_window_minutes = group_window_minutes or settings.GROUP_MERGE_WINDOW_MINUTES

    # ── Indexing ──

    def _index_stored(
        self, tenant_id: str, stored: List[Incident],
    ) -> Dict[str, Incident]:
        """external_id → the stored incident a feed record should match."""
        open_by_ext: Dict[str, Incident] = {}
        closed_by_ext: Dict[str, Incident] = {}

        for incident in stored:
            if incident.tenant_id != tenant_id:
                raise ReconciliationError(
                    tenant_id, "stored incident belongs to another tenant",
                    incident_id=incident.incident_id,
                )
            ext = incident.external_id
            if incident.status == IncidentStatus.ACTIVE:
                if ext in open_by_ext:
                    raise ReconciliationError(
                        tenant_id,
                        f"more than one open incident for external id {ext}",
                        incident_ids=[open_by_ext[ext].incident_id, incident.incident_id],
                    )
                open_by_ext[ext] = incident
            elif incident.status == IncidentStatus.CLOSED:
                prev = closed_by_ext.get(ext)
                if prev is None or _closed_sort_key(incident) > _closed_sort_key(prev):
                    closed_by_ext[ext] = incident

        return {**closed_by_ext, **open_by_ext}

    def _group_key(self, incident: Incident) -> str:
        return group_merge_key(
            incident.normalized_address,
            incident.call_type,
            incident.call_received_time,
            self.group_window_minutes,
        )

    # ── Record handlers ──

    def _patch(self, incident: Incident, raw: RawIncident, now: datetime) -> None:
        incident.call_type = raw.call_type
        incident.category = raw.category
        incident.address = raw.address
        incident.normalized_address = raw.normalized_address
        incident.latitude = raw.latitude
        incident.longitude = raw.longitude
        incident.units = list(raw.units)
        incident.unit_statuses = list(raw.unit_statuses)
        incident.description = raw.description
        incident.status = raw.status
        incident.call_closed_time = raw.call_closed_time
        incident.updated_at = now

    def _attach_to_group(
        self,
        incident: Incident,
        open_incidents: List[Incident],
        created: Dict[str, Incident],
        updated: Dict[str, Incident],
    ) -> None:
        """Auto-group a newly created incident with a matching open one."""
        if incident.status != IncidentStatus.ACTIVE or not incident.normalized_address:
            return
        key = self._group_key(incident)
        peer = next(
            (o for o in open_incidents
             if o.incident_id != incident.incident_id and self._group_key(o) == key),
            None,
        )
        if peer is None:
            return

        if peer.group_id is None:
            peer.group_id = _generate_group_id()
            if peer.incident_id not in created:
                updated[peer.incident_id] = peer
        incident.group_id = peer.group_id

        members = [o for o in open_incidents if o.group_id == peer.group_id]
        post_id = next((m.posting.post_id for m in members if m.posting.post_id), None)
        if post_id:
            self.state_machine.adopt_group_post(incident.posting, post_id)
        logger.debug(
            "Incident %s joined group %s", incident.external_id, incident.group_id,
            extra={"tenant_id": incident.tenant_id, "external_id": incident.external_id},
        )

    def plan_reconciliation(
        self,
        tenant_id: str,
        snapshot: List[RawIncident],
        stored: List[Incident],
        now: Optional[datetime] = None,
        active_ids: Optional[Iterable[str]] = None,
    ) -> ReconciliationPlan:
        """
        Compute the create/update/close operations for one snapshot.

        ``stored`` is read but never mutated; every returned incident is a
        patched copy ready to be written back. Ids in ``active_ids`` are
        never closed for being absent from ``snapshot``.

        Raises
        ------
        ReconciliationError
            Stored state violates the one-open-incident-per-external-id rule.
        """
        now = now or datetime.now(timezone.utc)
        plan = ReconciliationPlan(tenant_id=tenant_id)

        working = {i.incident_id: _clone(i) for i in stored}
        match_by_ext = {
            ext: working[i.incident_id]
            for ext, i in self._index_stored(tenant_id, stored).items()
        }
        open_incidents = [i for i in working.values() if i.status == IncidentStatus.ACTIVE]

        created: Dict[str, Incident] = {}
        updated: Dict[str, Incident] = {}
        seen_ext = set()

        for raw in snapshot:
            if raw.external_id in seen_ext:
                continue
            seen_ext.add(raw.external_id)
            try:
                match = match_by_ext.get(raw.external_id)
                if match is None:
                    incident = Incident.from_raw(tenant_id, raw)
                    incident.created_at = incident.updated_at = now
                    self._attach_to_group(incident, open_incidents, created, updated)
                    created[incident.incident_id] = incident
                    if incident.status == IncidentStatus.ACTIVE:
                        open_incidents.append(incident)
                    continue

                content_changed = has_incident_changed(match, raw)
                if not content_changed and match.description == raw.description:
                    continue

                was_open = match.status == IncidentStatus.ACTIVE
                self._patch(match, raw, now)
                if content_changed and self.state_machine.flag_content_change(match.posting):
                    plan.flagged_for_update += 1
                updated[match.incident_id] = match
                if not was_open and match.status == IncidentStatus.ACTIVE:
                    open_incidents.append(match)
            except Exception as e:
                logger.warning(
                    "Skipping feed record %s: %s", raw.external_id, e,
                    extra={"tenant_id": tenant_id, "external_id": raw.external_id},
                )
                plan.errors.append(RecordError(raw.external_id, str(e)))

        # Open incidents the feed no longer reports have ended
        still_open = seen_ext | set(active_ids or ())
        closed: Dict[str, Incident] = {}
        for incident in list(working.values()):
            if incident.status != IncidentStatus.ACTIVE or incident.external_id in still_open:
                continue
            incident.status = IncidentStatus.CLOSED
            incident.call_closed_time = now
            incident.updated_at = now
            if self.state_machine.flag_content_change(incident.posting):
                plan.flagged_for_update += 1
            closed[incident.incident_id] = incident
            updated.pop(incident.incident_id, None)

        plan.creates = list(created.values())
        plan.updates = list(updated.values())
        plan.closes = list(closed.values())
        return plan

    # ── Apply ──

    async def apply_plan(self, store: SyncStore, plan: ReconciliationPlan) -> ReconciliationResult:
        """Write a plan in order: creates, then updates, then closes."""
        await store.save_incidents(plan.creates)
        await store.save_incidents(plan.updates)
        await store.save_incidents(plan.closes)
        return ReconciliationResult(
            tenant_id=plan.tenant_id,
            created=len(plan.creates),
            updated=len(plan.updates),
            closed=len(plan.closes),
            flagged_for_update=plan.flagged_for_update,
            errors=list(plan.errors),
        )

    async def reconcile(
        self,
        store: SyncStore,
        tenant_id: str,
        snapshot: List[RawIncident],
        now: Optional[datetime] = None,
        active_ids: Optional[Iterable[str]] = None,
    ) -> ReconciliationResult:
        """Plan against current stored state and apply."""
        stored = await store.list_incidents(tenant_id)
        plan = self.plan_reconciliation(tenant_id, snapshot, stored, now, active_ids)
        result = await self.apply_plan(store, plan)
        logger.info(
            "Reconciled tenant %s: %d created, %d updated, %d closed",
            tenant_id, result.created, result.updated, result.closed,
            extra={
                "tenant_id": tenant_id,
                "created": result.created,
                "updated": result.updated,
                "closed": result.closed,
            },
        )
        return result


# ═══════════════════════════════════════════════════════════════════════════
# Maintenance
# ═══════════════════════════════════════════════════════════════════════════

async def close_stale_incidents(
    store: SyncStore,
    tenant_id: str,
    *,
    max_age: Optional[timedelta] = None,
    now: Optional[datetime] = None,
    state_machine: Optional[PostingStateMachine] = None,
) -> int:
    """Close open incidents received longer ago than ``max_age`` (2 h)."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - (max_age or timedelta(hours=settings.STALE_INCIDENT_HOURS))
    machine = state_machine or PostingStateMachine()

    closed = 0
    for incident in await store.list_incidents(tenant_id, status=IncidentStatus.ACTIVE):
        if incident.call_received_time >= cutoff:
            continue
        incident.status = IncidentStatus.CLOSED
        incident.call_closed_time = now
        incident.updated_at = now
        machine.flag_content_change(incident.posting)
        await store.save_incident(incident)
        closed += 1
    if closed:
        logger.info("Closed %d stale incidents", closed, extra={"tenant_id": tenant_id})
    return closed


async def archive_closed_incidents(
    store: SyncStore,
    tenant_id: str,
    *,
    older_than: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> int:
    """Move incidents closed more than ``older_than`` ago to archived."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - (older_than or timedelta(days=settings.ARCHIVE_CLOSED_AFTER_DAYS))

    archived = 0
    for incident in await store.list_incidents(tenant_id, status=IncidentStatus.CLOSED):
        if incident.call_closed_time is None or incident.call_closed_time >= cutoff:
            continue
        incident.status = IncidentStatus.ARCHIVED
        incident.updated_at = now
        await store.save_incident(incident)
        archived += 1
    return archived


def _closed_sort_key(incident: Incident) -> datetime:
    return incident.call_closed_time or incident.updated_at


def _clone(incident: Incident) -> Incident:
    return copy.deepcopy(incident)
