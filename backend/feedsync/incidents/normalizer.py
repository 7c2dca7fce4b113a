"""
normalizer.py — Address normalisation, change detection and group keys.

Three pure helpers used by the reconciler:

    normalize_address     — canonical address string for matching
    has_incident_changed  — the "content-affecting" predicate
    group_merge_key       — address | call type | received-time window

Only fields that appear in a published post count as content. Anything
else (description wording, updated_at, coordinate jitter below 1e-4
degrees) is a cosmetic no-op and never moves a posted item to
needs_update.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from backend.feedsync.incidents.models import Incident, RawIncident, UnitStatus

COORDINATE_TOLERANCE = 0.0001

_ABBREVIATIONS = (
    (r"\bSTREET\b", "ST"),
    (r"\bAVENUE\b", "AVE"),
    (r"\bBOULEVARD\b", "BLVD"),
    (r"\bDRIVE\b", "DR"),
    (r"\bROAD\b", "RD"),
    (r"\bLANE\b", "LN"),
    (r"\bCOURT\b", "CT"),
    (r"\bCIRCLE\b", "CIR"),
    (r"\bPLACE\b", "PL"),
    (r"\bNORTH\b", "N"),
    (r"\bSOUTH\b", "S"),
    (r"\bEAST\b", "E"),
    (r"\bWEST\b", "W"),
    (r"\bAPARTMENT\b", "APT"),
    (r"\bSUITE\b", "STE"),
    (r"\bHIGHWAY\b", "HWY"),
)
_COMPILED = [(re.compile(p), repl) for p, repl in _ABBREVIATIONS]
_WHITESPACE = re.compile(r"\s+")
_PUNCT = re.compile(r"[.#]")


def normalize_address(address: Optional[str]) -> str:
    """
    Canonical form used for change detection and auto-grouping.

    >>> normalize_address("123  Main Street, Apartment #4")
    '123 MAIN ST, APT 4'
    """
    if not address:
        return ""
    text = _WHITESPACE.sub(" ", address.upper().strip())
    for pattern, repl in _COMPILED:
        text = pattern.sub(repl, text)
    text = _PUNCT.sub("", text)
    return _WHITESPACE.sub(" ", text).strip()


def _coords_changed(
    a_lat: Optional[float], a_lon: Optional[float],
    b_lat: Optional[float], b_lon: Optional[float],
) -> bool:
    if (a_lat is None) != (b_lat is None) or (a_lon is None) != (b_lon is None):
        return True
    if a_lat is not None and abs(a_lat - b_lat) > COORDINATE_TOLERANCE:
        return True
    if a_lon is not None and abs(a_lon - b_lon) > COORDINATE_TOLERANCE:
        return True
    return False


def _unit_timeline_changed(
    stored: Sequence[UnitStatus], fresh: Sequence[UnitStatus],
) -> bool:
    if len(stored) != len(fresh):
        return True
    by_id: Dict[str, UnitStatus] = {u.unit_id: u for u in stored}
    for unit in fresh:
        old = by_id.get(unit.unit_id)
        if old is None:
            return True
        if (
            old.status != unit.status
            or old.time_dispatched != unit.time_dispatched
            or old.time_acknowledged != unit.time_acknowledged
            or old.time_enroute != unit.time_enroute
            or old.time_on_scene != unit.time_on_scene
            or old.time_cleared != unit.time_cleared
        ):
            return True
    return False


def has_incident_changed(stored: Incident, raw: RawIncident) -> bool:
    """True when the feed record differs from the stored one in a way a
    reader of the published post would notice."""
    if stored.call_type != raw.call_type:
        return True
    if stored.status != raw.status:
        return True
    if stored.call_closed_time != raw.call_closed_time:
        return True
    if stored.normalized_address != raw.normalized_address:
        return True
    if _coords_changed(
        stored.latitude, stored.longitude, raw.latitude, raw.longitude,
    ):
        return True
    if sorted(stored.units) != sorted(raw.units):
        return True
    return _unit_timeline_changed(stored.unit_statuses, raw.unit_statuses)


def group_merge_key(
    normalized_address: str,
    call_type: str,
    received: datetime,
    window_minutes: int,
) -> str:
    """Key shared by incidents that should be auto-grouped together."""
    window = window_minutes * 60
    bucket = int(received.timestamp()) // window * window
    return f"{normalized_address}|{call_type.lower()}|{bucket}"


def dedupe_units(units: List[str]) -> List[str]:
    """Drop repeated unit ids, keeping first-seen order."""
    seen = set()
    out: List[str] = []
    for unit in units:
        if unit not in seen:
            seen.add(unit)
            out.append(unit)
    return out
