"""
test_incident_reconciler.py — Tests for incident normalisation,
reconciliation and the consolidated (grouped) view.

Covers:
    • Address normalisation and call-type mapping
    • Change detection (content vs cosmetic)
    • Reconciliation passes (create, update, close, reopen, idempotence)
    • Posting-state side effects (needs_update only on content change)
    • Broken stored state (two open incidents for one external id)
    • Auto-grouping and adoption of an existing group post
    • Consolidation of dispatch groups (units merge, purity, ordering)
    • Maintenance (stale close, archive)

Run with:
    pytest tests/test_incident_reconciler.py -v
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from backend.feedsync.core.errors import ReconciliationError
from backend.feedsync.incidents.call_types import (
    format_unit_status,
    get_call_type_description,
    is_medical_call_type,
    map_call_type_to_category,
)
from backend.feedsync.incidents.grouping import consolidate_incidents, group_count
from backend.feedsync.incidents.models import (
    CallTypeCategory,
    Incident,
    IncidentStatus,
    RawIncident,
    UnitStatus,
)
from backend.feedsync.incidents.normalizer import (
    dedupe_units,
    group_merge_key,
    has_incident_changed,
    normalize_address,
)
from backend.feedsync.incidents.reconciler import (
    IncidentReconciler,
    archive_closed_incidents,
    close_stale_incidents,
)
from backend.feedsync.posting.models import PostingState
from backend.feedsync.posting.state_machine import PostingStateMachine
from backend.feedsync.storage.memory import InMemoryStore


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

TENANT = "t1"
T0 = datetime(2025, 3, 1, 17, 31, tzinfo=timezone.utc)


def _make_raw(
    external_id: str = "ext-100",
    call_type: str = "SF",
    address: str = "123 Main Street",
    received: datetime = T0,
    units: Optional[List[str]] = None,
    status: IncidentStatus = IncidentStatus.ACTIVE,
    description: Optional[str] = None,
    lat: Optional[float] = 35.7796,
    lon: Optional[float] = -78.6382,
) -> RawIncident:
    """Build a parsed feed record."""
    units = ["E1"] if units is None else units
    return RawIncident(
        external_id=external_id,
        call_type=call_type,
        category=map_call_type_to_category(call_type),
        address=address,
        normalized_address=normalize_address(address),
        call_received_time=received,
        status=status,
        call_closed_time=received + timedelta(minutes=30) if status == IncidentStatus.CLOSED else None,
        latitude=lat,
        longitude=lon,
        units=list(units),
        unit_statuses=[UnitStatus(unit_id=u) for u in units],
        description=description,
    )


def _make_incident(
    external_id: str = "ext-100",
    received: datetime = T0,
    units: Optional[List[str]] = None,
    group_id: Optional[str] = None,
    status: IncidentStatus = IncidentStatus.ACTIVE,
    call_type: str = "SF",
) -> Incident:
    """Build a stored incident directly (bypassing reconciliation)."""
    incident = Incident.from_raw(TENANT, _make_raw(external_id, call_type=call_type, received=received, units=units))
    incident.group_id = group_id
    incident.status = status
    return incident


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def reconciler() -> IncidentReconciler:
    return IncidentReconciler(PostingStateMachine(max_attempts=3), group_window_minutes=10)


async def _by_ext(store: InMemoryStore, external_id: str) -> Incident:
    matches = [i for i in await store.list_incidents(TENANT) if i.external_id == external_id]
    assert len(matches) == 1
    return matches[0]


async def _mark_posted(store: InMemoryStore, external_id: str, post_id: str = "P1") -> None:
    incident = await _by_ext(store, external_id)
    PostingStateMachine().mark_published(incident.posting, post_id)
    await store.save_incident(incident)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Normalisation & call types
# ═══════════════════════════════════════════════════════════════════════════

class TestNormalizeAddress:
    @pytest.mark.parametrize("address, expected", [
        ("123  Main Street, Apartment #4", "123 MAIN ST, APT 4"),
        ("9 north oak avenue", "9 N OAK AVE"),
        ("  500 W. Highway 70 ", "500 W HWY 70"),
        ("", ""),
        (None, ""),
    ])
    def test_canonical_form(self, address, expected):
        assert normalize_address(address) == expected

    def test_idempotent(self):
        once = normalize_address("1 Court Place Suite 2")
        assert normalize_address(once) == once


class TestCallTypes:
    @pytest.mark.parametrize("call_type, category", [
        ("SF", CallTypeCategory.FIRE),
        ("sf", CallTypeCategory.FIRE),
        ("FA", CallTypeCategory.FIRE),
        ("ME", CallTypeCategory.MEDICAL),
        ("TC", CallTypeCategory.TRAFFIC),
        ("WD", CallTypeCategory.HAZMAT),
        ("Cardiac arrest", CallTypeCategory.MEDICAL),
        ("Person trapped in elevator", CallTypeCategory.RESCUE),
        ("Something odd", CallTypeCategory.OTHER),
    ])
    def test_category(self, call_type, category):
        assert map_call_type_to_category(call_type) == category

    def test_description_lookup(self):
        assert get_call_type_description("SF") == "Structure Fire"
        assert get_call_type_description("Brush fire") == "Brush fire"

    def test_medical_predicate(self):
        assert is_medical_call_type("ME")
        assert not is_medical_call_type("SF")

    def test_unit_status_codes(self):
        assert format_unit_status("os") == "On Scene"
        assert format_unit_status("ZZ") == "ZZ"


class TestChangeDetection:
    def test_identical_is_unchanged(self):
        stored = Incident.from_raw(TENANT, _make_raw())
        assert not has_incident_changed(stored, _make_raw())

    def test_unit_added(self):
        stored = Incident.from_raw(TENANT, _make_raw())
        assert has_incident_changed(stored, _make_raw(units=["E1", "E2"]))

    def test_unit_order_ignored(self):
        stored = Incident.from_raw(TENANT, _make_raw(units=["E1", "E2"]))
        raw = _make_raw(units=["E2", "E1"])
        raw.unit_statuses = list(reversed(raw.unit_statuses))
        assert not has_incident_changed(stored, raw)

    def test_unit_status_moved(self):
        stored = Incident.from_raw(TENANT, _make_raw())
        raw = _make_raw()
        raw.unit_statuses[0].status = "OS"
        assert has_incident_changed(stored, raw)

    def test_coordinate_jitter_is_cosmetic(self):
        stored = Incident.from_raw(TENANT, _make_raw())
        assert not has_incident_changed(stored, _make_raw(lat=35.77961))

    def test_coordinate_move_is_content(self):
        stored = Incident.from_raw(TENANT, _make_raw())
        assert has_incident_changed(stored, _make_raw(lat=35.79))

    def test_description_is_cosmetic(self):
        stored = Incident.from_raw(TENANT, _make_raw())
        assert not has_incident_changed(stored, _make_raw(description="Smoke showing"))

    def test_address_spelling_is_cosmetic(self):
        stored = Incident.from_raw(TENANT, _make_raw(address="123 Main Street"))
        assert not has_incident_changed(stored, _make_raw(address="123 MAIN ST"))


class TestGroupKey:
    def test_same_window(self):
        a = group_merge_key("1 MAIN ST", "SF", T0, 10)
        b = group_merge_key("1 MAIN ST", "sf", T0 + timedelta(minutes=2), 10)
        assert a == b

    def test_different_window(self):
        a = group_merge_key("1 MAIN ST", "SF", T0, 10)
        b = group_merge_key("1 MAIN ST", "SF", T0 + timedelta(minutes=15), 10)
        assert a != b

    def test_dedupe_units(self):
        assert dedupe_units(["E1", "E2", "E1", "L3"]) == ["E1", "E2", "L3"]


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Reconciliation passes
# ═══════════════════════════════════════════════════════════════════════════

class TestReconcile:
    def test_incident_lifecycle_across_three_snapshots(self, store, reconciler):
        """Create, add a unit (posted → needs_update), then close on absence."""
        t1, t2, t3 = T0, T0 + timedelta(minutes=2), T0 + timedelta(minutes=4)

        first = _run(reconciler.reconcile(store, TENANT, [_make_raw(units=["E1"])], t1))
        assert (first.created, first.updated, first.closed) == (1, 0, 0)
        incident = _run(_by_ext(store, "ext-100"))
        assert incident.category == CallTypeCategory.FIRE
        assert incident.posting.state == PostingState.PENDING

        _run(_mark_posted(store, "ext-100"))

        second = _run(reconciler.reconcile(store, TENANT, [_make_raw(units=["E1", "E2"])], t2))
        assert (second.created, second.updated, second.closed) == (0, 1, 0)
        assert second.flagged_for_update == 1
        incident = _run(_by_ext(store, "ext-100"))
        assert incident.units == ["E1", "E2"]
        assert incident.posting.state == PostingState.NEEDS_UPDATE
        assert incident.posting.post_id == "P1"

        third = _run(reconciler.reconcile(store, TENANT, [], t3))
        assert (third.created, third.updated, third.closed) == (0, 0, 1)
        incident = _run(_by_ext(store, "ext-100"))
        assert incident.status == IncidentStatus.CLOSED
        assert incident.call_closed_time == t3

    def test_second_pass_over_same_snapshot_is_a_no_op(self, store, reconciler):
        snapshot = [_make_raw("a"), _make_raw("b", call_type="ME", address="9 Oak Ave")]
        _run(reconciler.reconcile(store, TENANT, snapshot, T0))
        before = [i.to_dict() for i in _run(store.list_incidents(TENANT))]

        again = _run(reconciler.reconcile(store, TENANT, snapshot, T0 + timedelta(minutes=1)))
        assert (again.created, again.updated, again.closed) == (0, 0, 0)
        assert [i.to_dict() for i in _run(store.list_incidents(TENANT))] == before

    def test_active_ids_outside_snapshot_stay_open(self, store, reconciler):
        _run(reconciler.reconcile(store, TENANT, [_make_raw("a"), _make_raw("b", address="9 Oak Ave")], T0))

        result = _run(reconciler.reconcile(
            store, TENANT, [], T0 + timedelta(minutes=2), active_ids={"a"},
        ))
        assert result.closed == 1
        statuses = {i.external_id: i.status for i in _run(store.list_incidents(TENANT))}
        assert statuses == {"a": IncidentStatus.ACTIVE, "b": IncidentStatus.CLOSED}

    def test_plan_does_not_mutate_stored_list(self, reconciler):
        stored = [Incident.from_raw(TENANT, _make_raw())]
        snapshot_copy = copy.deepcopy(stored)
        plan = reconciler.plan_reconciliation(TENANT, [], stored, T0)
        assert len(plan.closes) == 1
        assert stored[0].to_dict() == snapshot_copy[0].to_dict()

    def test_description_only_change_keeps_posting_state(self, store, reconciler):
        _run(reconciler.reconcile(store, TENANT, [_make_raw()], T0))
        _run(_mark_posted(store, "ext-100"))

        result = _run(reconciler.reconcile(store, TENANT, [_make_raw(description="Smoke showing")], T0))
        assert result.updated == 1
        assert result.flagged_for_update == 0
        incident = _run(_by_ext(store, "ext-100"))
        assert incident.description == "Smoke showing"
        assert incident.posting.state == PostingState.POSTED

    def test_cosmetic_jitter_writes_nothing(self, store, reconciler):
        _run(reconciler.reconcile(store, TENANT, [_make_raw()], T0))
        _run(_mark_posted(store, "ext-100"))
        result = _run(reconciler.reconcile(store, TENANT, [_make_raw(lat=35.77961)], T0))
        assert result.updated == 0
        assert _run(_by_ext(store, "ext-100")).posting.state == PostingState.POSTED

    def test_closed_in_feed(self, store, reconciler):
        _run(reconciler.reconcile(store, TENANT, [_make_raw()], T0))
        result = _run(reconciler.reconcile(
            store, TENANT, [_make_raw(status=IncidentStatus.CLOSED)], T0 + timedelta(minutes=5),
        ))
        assert result.updated == 1
        incident = _run(_by_ext(store, "ext-100"))
        assert incident.status == IncidentStatus.CLOSED
        assert incident.call_closed_time == T0 + timedelta(minutes=30)

    def test_reopened_call_reuses_closed_record(self, store, reconciler):
        _run(reconciler.reconcile(store, TENANT, [_make_raw()], T0))
        _run(reconciler.reconcile(store, TENANT, [], T0 + timedelta(minutes=5)))

        result = _run(reconciler.reconcile(store, TENANT, [_make_raw()], T0 + timedelta(minutes=10)))
        assert result.created == 0
        assert result.updated == 1
        incident = _run(_by_ext(store, "ext-100"))
        assert incident.status == IncidentStatus.ACTIVE
        assert incident.call_closed_time is None

    def test_duplicate_records_in_snapshot_counted_once(self, store, reconciler):
        result = _run(reconciler.reconcile(store, TENANT, [_make_raw(), _make_raw()], T0))
        assert result.created == 1

    def test_two_open_incidents_for_one_external_id(self, store, reconciler):
        _run(store.save_incident(_make_incident("ext-100")))
        _run(store.save_incident(_make_incident("ext-100")))
        with pytest.raises(ReconciliationError) as exc:
            _run(reconciler.reconcile(store, TENANT, [_make_raw()], T0))
        assert len(exc.value.details["incident_ids"]) == 2

    def test_other_tenant_untouched(self, store, reconciler):
        _run(reconciler.reconcile(store, "t2", [_make_raw()], T0))
        _run(reconciler.reconcile(store, TENANT, [], T0))
        assert _run(store.list_incidents("t2"))[0].status == IncidentStatus.ACTIVE


class TestAutoGrouping:
    def test_same_address_type_and_window_grouped(self, store, reconciler):
        snapshot = [
            _make_raw("a", received=T0, units=["E1"]),
            _make_raw("b", received=T0 + timedelta(minutes=2), units=["L2"]),
        ]
        _run(reconciler.reconcile(store, TENANT, snapshot, T0))
        a, b = _run(_by_ext(store, "a")), _run(_by_ext(store, "b"))
        assert a.group_id is not None
        assert a.group_id == b.group_id
        assert group_count(_run(store.list_incidents(TENANT))) == 1

    def test_different_address_not_grouped(self, store, reconciler):
        snapshot = [_make_raw("a"), _make_raw("b", address="9 Oak Ave")]
        _run(reconciler.reconcile(store, TENANT, snapshot, T0))
        assert _run(_by_ext(store, "a")).group_id is None
        assert _run(_by_ext(store, "b")).group_id is None

    def test_newcomer_adopts_group_post(self, store, reconciler):
        _run(reconciler.reconcile(store, TENANT, [_make_raw("a")], T0))
        _run(_mark_posted(store, "a", "P9"))

        snapshot = [_make_raw("a"), _make_raw("b", received=T0 + timedelta(minutes=1), units=["L2"])]
        _run(reconciler.reconcile(store, TENANT, snapshot, T0 + timedelta(minutes=1)))

        a, b = _run(_by_ext(store, "a")), _run(_by_ext(store, "b"))
        assert a.group_id == b.group_id
        assert a.posting.state == PostingState.POSTED
        assert b.posting.state == PostingState.NEEDS_UPDATE
        assert b.posting.post_id == "P9"

        entry = consolidate_incidents(_run(store.list_incidents(TENANT)))[0]
        assert entry.effective_state == PostingState.NEEDS_UPDATE
        assert entry.post_id == "P9"


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Consolidated view
# ═══════════════════════════════════════════════════════════════════════════

class TestConsolidation:
    def _group(self) -> List[Incident]:
        return [
            _make_incident("c", received=T0 + timedelta(minutes=6), units=[], group_id="G"),
            _make_incident("a", received=T0, units=["1", "2"], group_id="G"),
            _make_incident("b", received=T0 + timedelta(minutes=3), units=["2", "3"], group_id="G"),
        ]

    def test_units_merged_in_first_seen_order(self):
        entries = consolidate_incidents(self._group())
        assert len(entries) == 1
        entry = entries[0]
        assert entry.units == ["1", "2", "3"]
        assert entry.representative.external_id == "a"
        assert entry.view().call_received_time == T0
        assert [u.unit_id for u in entry.unit_statuses] == ["1", "2", "3"]

    def test_input_not_mutated(self):
        members = self._group()
        before = [m.to_dict() for m in members]
        consolidate_incidents(members)
        assert [m.to_dict() for m in members] == before

    def test_consolidating_twice_is_stable(self):
        members = self._group()
        first = consolidate_incidents(members)
        assert [e.to_dict() for e in consolidate_incidents(members)] == [e.to_dict() for e in first]

        again = consolidate_incidents([e.view() for e in first])
        assert again[0].units == first[0].units

    def test_newest_first_with_ungrouped(self):
        incidents = self._group() + [
            _make_incident("solo", received=T0 + timedelta(hours=1), units=["9"]),
        ]
        entries = consolidate_incidents(incidents)
        assert [e.representative.external_id for e in entries] == ["solo", "a"]

    def test_effective_state_least_advanced(self):
        members = self._group()
        machine = PostingStateMachine()
        machine.mark_published(members[0].posting, "P1")
        machine.mark_published(members[1].posting, "P1")
        machine.mark_failed(members[2].posting, "boom")
        entry = consolidate_incidents(members)[0]
        assert entry.effective_state == PostingState.FAILED
        assert entry.sync_error == "boom"

    def test_group_active_when_any_member_active(self):
        members = self._group()
        members[0].status = IncidentStatus.CLOSED
        members[1].status = IncidentStatus.CLOSED
        assert consolidate_incidents(members)[0].view().status == IncidentStatus.ACTIVE

    def test_to_dict_shape(self):
        d = consolidate_incidents(self._group())[0].to_dict()
        assert d["group_size"] == 3
        assert d["units"] == ["1", "2", "3"]
        assert d["posting"]["state"] == "pending"


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Maintenance
# ═══════════════════════════════════════════════════════════════════════════

class TestMaintenance:
    def test_stale_incidents_closed(self, store):
        now = T0 + timedelta(hours=3)
        old = _make_incident("old", received=T0)
        PostingStateMachine().mark_published(old.posting, "P1")
        fresh = _make_incident("fresh", received=now - timedelta(minutes=10))
        _run(store.save_incident(old))
        _run(store.save_incident(fresh))

        closed = _run(close_stale_incidents(store, TENANT, max_age=timedelta(hours=2), now=now))
        assert closed == 1
        old = _run(_by_ext(store, "old"))
        assert old.status == IncidentStatus.CLOSED
        assert old.call_closed_time == now
        assert old.posting.state == PostingState.NEEDS_UPDATE
        assert _run(_by_ext(store, "fresh")).status == IncidentStatus.ACTIVE

    def test_archive_old_closed(self, store):
        now = T0 + timedelta(days=10)
        old = _make_incident("old", status=IncidentStatus.CLOSED)
        old.call_closed_time = T0
        recent = _make_incident("recent", status=IncidentStatus.CLOSED)
        recent.call_closed_time = now - timedelta(days=1)
        _run(store.save_incident(old))
        _run(store.save_incident(recent))

        archived = _run(archive_closed_incidents(store, TENANT, older_than=timedelta(days=7), now=now))
        assert archived == 1
        assert _run(_by_ext(store, "old")).status == IncidentStatus.ARCHIVED
        assert _run(_by_ext(store, "recent")).status == IncidentStatus.CLOSED
