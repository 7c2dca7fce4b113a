"""
pulsepoint.py — Encrypted incident feed client.

Fetch path per agency:

    GET {primary}?resource=incidents&agencyid=X     (timeout 10 s)
        │ non-2xx / network error / timeout
        ▼
    GET {fallback}?resource=incidents&agencyid=X
        │ still failing
        ▼
    FeedFetchError

The body is an encrypted envelope (see decryptor.py). The decrypted
document looks like::

    {"incidents": {"active": [...], "recent": [...], "closed": [...]}}

All three buckets are collected. Agencies report the same incident under
slightly different field names, so each field is read through a list of
aliases. A record that cannot be parsed is logged and skipped; the rest of
the document still goes through.

The returned FeedSnapshot carries two views of the document:

    incidents   parsed records inside the window (6 h, newest 200)
    active_ids  every id the feed still reports as open, window or not

Only `incidents` is created or patched. Closing an incident for being
absent is decided against `active_ids`, so a long-running call that fell
out of the window stays open.

A snapshot is all-or-nothing: if any agency fails the whole fetch raises,
because reconciling a partial snapshot would close incidents that were
merely missing from the failed agency.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

import httpx

from backend.feedsync.core.config import settings
from backend.feedsync.core.errors import FeedFetchError
from backend.feedsync.feeds.decryptor import decrypt_envelope
from backend.feedsync.feeds.timestamps import parse_timestamp
from backend.feedsync.incidents.call_types import map_call_type_to_category
from backend.feedsync.incidents.models import IncidentStatus, RawIncident, UnitStatus
from backend.feedsync.incidents.normalizer import normalize_address
from backend.feedsync.tenants.models import UnitLegendEntry

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Constants
# ═══════════════════════════════════════════════════════════════════════════

SERVICE_NAME = "pulsepoint"

BROWSER_HEADERS = {
    "Accept": "application/json, text/plain, */*",
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
    "Referer": "https://web.pulsepoint.org/",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}

FEED_BUCKETS = ("active", "recent", "closed")

_ID_FIELDS = ("PulsePointIncidentID", "ID", "id", "IncidentID")
_CALL_TYPE_FIELDS = ("PulsePointIncidentCallType", "CallType", "CallTypeDescription")
_ADDRESS_FIELDS = ("FullDisplayAddress", "Address", "DisplayAddress")
_OPENED_FIELDS = ("CallReceivedDateTime", "TimeCallOpened", "CallTime", "IncidentTime")
_CLOSED_FIELDS = ("TimeCallClosed", "CloseTime", "ClosedDateTime")

VIRTUAL_UNIT_MARKER = "VTAC"


# ═══════════════════════════════════════════════════════════════════════════
# Record parsing
# ═══════════════════════════════════════════════════════════════════════════

def _first(record: Dict[str, Any], fields: Iterable[str]) -> Any:
    for name in fields:
        value = record.get(name)
        if value not in (None, ""):
            return value
    return None


def _parse_coordinate(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _is_virtual(unit_id: str) -> bool:
    return VIRTUAL_UNIT_MARKER in unit_id.upper()


def unit_records(record: Dict[str, Any]) -> List[Dict[str, Any]]:
    """The record's ``Unit`` entries; a lone object counts as one unit."""
    units = record.get("Unit")
    if isinstance(units, dict):
        units = [units]
    if not isinstance(units, list):
        return []
    return [u for u in units if isinstance(u, dict)]


def transform_unit_statuses(units: Optional[List[Dict[str, Any]]]) -> List[UnitStatus]:
    """
    Build per-unit dispatch timelines.

    Virtual (VTAC) units are dropped. A unit with a cleared time is always
    reported as "CL" whatever the feed's dispatch status says.
    """
    out: List[UnitStatus] = []
    for unit in units or []:
        if not isinstance(unit, dict):
            continue
        unit_id = str(unit.get("UnitID") or "").strip()
        if not unit_id or _is_virtual(unit_id):
            continue
        cleared = unit.get("TimeCleared") or unit.get("UnitClearedDateTime")
        status = "CL" if cleared else (unit.get("PulsePointDispatchStatus") or "DP")
        out.append(UnitStatus(
            unit_id=unit_id,
            status=status,
            time_dispatched=parse_timestamp(unit.get("TimeDispatched")),
            time_acknowledged=parse_timestamp(unit.get("TimeAcknowledged")),
            time_enroute=parse_timestamp(unit.get("TimeEnroute")),
            time_on_scene=parse_timestamp(unit.get("TimeOnScene")),
            time_cleared=parse_timestamp(cleared),
        ))
    return out


def parse_incident(
    record: Dict[str, Any],
    now: Optional[datetime] = None,
) -> Optional[RawIncident]:
    """
    Convert one feed record into a RawIncident.

    Returns None for records without an id. Missing received times fall
    back to ``now``; ``0,0`` coordinates are treated as unknown.
    """
    now = now or datetime.now(timezone.utc)
    external_id = _first(record, _ID_FIELDS)
    if external_id is None:
        logger.info("Skipping feed record without id: %s", str(record)[:200])
        return None

    call_type = str(_first(record, _CALL_TYPE_FIELDS) or "Unknown")
    address = str(_first(record, _ADDRESS_FIELDS) or "Unknown Address")
    received = parse_timestamp(_first(record, _OPENED_FIELDS)) or now
    closed = parse_timestamp(_first(record, _CLOSED_FIELDS))

    lat = _parse_coordinate(record.get("Latitude"))
    lon = _parse_coordinate(record.get("Longitude"))
    if lat == 0 and lon == 0:
        lat = lon = None

    units_raw = unit_records(record)
    units = [
        str(u.get("UnitID")).strip()
        for u in units_raw
        if u.get("UnitID") and not _is_virtual(str(u.get("UnitID")))
    ]

    return RawIncident(
        external_id=str(external_id),
        call_type=call_type,
        category=map_call_type_to_category(call_type),
        address=address,
        normalized_address=normalize_address(address),
        latitude=lat,
        longitude=lon,
        units=units,
        unit_statuses=transform_unit_statuses(units_raw),
        status=IncidentStatus.CLOSED if closed else IncidentStatus.ACTIVE,
        call_received_time=received,
        call_closed_time=closed,
    )


@dataclass
class FeedSnapshot:
    """One fetch across all of a tenant's agencies."""
    incidents: List[RawIncident] = field(default_factory=list)
    active_ids: Set[str] = field(default_factory=set)
    skipped: int = 0


def parse_records(
    records: List[Dict[str, Any]],
    now: Optional[datetime] = None,
) -> FeedSnapshot:
    """
    Parse every record, skipping the ones that fail.

    ``active_ids`` holds the ids of open records and of records that could
    not be parsed, since nothing says the latter have ended.
    """
    snapshot = FeedSnapshot()
    for record in records:
        try:
            incident = parse_incident(record, now)
        except Exception as e:
            external_id = _first(record, _ID_FIELDS)
            logger.warning(
                "Skipping malformed feed record %s: %s", external_id, e,
                extra={"external_id": external_id},
            )
            snapshot.skipped += 1
            if external_id is not None:
                snapshot.active_ids.add(str(external_id))
            continue
        if incident is None:
            continue
        snapshot.incidents.append(incident)
        if incident.status == IncidentStatus.ACTIVE:
            snapshot.active_ids.add(incident.external_id)
    return snapshot


def filter_and_limit(
    incidents: List[RawIncident],
    *,
    max_incidents: int,
    window: timedelta,
    now: Optional[datetime] = None,
) -> List[RawIncident]:
    """Drop records older than ``window``, newest first, cap the count."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - window
    recent = [i for i in incidents if i.call_received_time >= cutoff]
    recent.sort(key=lambda i: i.call_received_time, reverse=True)
    return recent[:max_incidents]


def extract_records(document: Any) -> List[Dict[str, Any]]:
    """Pull incident records out of every bucket of a decrypted document."""
    if not isinstance(document, dict):
        return []
    buckets = document.get("incidents") or {}
    records: List[Dict[str, Any]] = []
    for name in FEED_BUCKETS:
        records.extend(r for r in buckets.get(name) or [] if isinstance(r, dict))
    return records


def extract_unit_legend(document: Any) -> Optional[List[UnitLegendEntry]]:
    """Legend documents come as a bare list, ``.units`` or ``.UnitLegend``."""
    entries = None
    if isinstance(document, list):
        entries = document
    elif isinstance(document, dict):
        for key in ("units", "UnitLegend"):
            if isinstance(document.get(key), list):
                entries = document[key]
                break
    if entries is None:
        logger.warning("Unexpected unit legend format: %s", str(document)[:200])
        return None
    return [UnitLegendEntry.from_dict(e) for e in entries if isinstance(e, dict)]


# ═══════════════════════════════════════════════════════════════════════════
# HTTP client
# ═══════════════════════════════════════════════════════════════════════════

class PulsePointClient:
    """
    Async client for the encrypted incident feed.

    Usage:
        client = PulsePointClient()
        snapshot = await client.fetch_incidents(["EMS1234"], secret)
        await client.close()
    """

    def __init__(
        self,
        primary_url: Optional[str] = None,
        fallback_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.primary_url = primary_url or settings.PULSEPOINT_PRIMARY_URL
        self.fallback_url = fallback_url or settings.PULSEPOINT_FALLBACK_URL
        self.timeout = timeout if timeout is not None else settings.FEED_FETCH_TIMEOUT
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=BROWSER_HEADERS,
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def _get(self, url: str, resource: str, agency_id: str) -> httpx.Response:
        client = await self._get_client()
        return await client.get(url, params={"resource": resource, "agencyid": agency_id})

    async def _fetch_envelope(self, resource: str, agency_id: str) -> Any:
        """Primary endpoint, then fallback. Raises FeedFetchError."""
        try:
            response = await self._get(self.primary_url, resource, agency_id)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.info(
                "Primary feed endpoint failed for agency %s, trying fallback: %s",
                agency_id, e,
            )

        try:
            response = await self._get(self.fallback_url, resource, agency_id)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise FeedFetchError(
                SERVICE_NAME,
                f"both endpoints failed (fallback returned {e.response.status_code})",
                agency_id=agency_id,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise FeedFetchError(
                SERVICE_NAME, f"both endpoints failed: {e}", agency_id=agency_id,
            ) from e

    async def _fetch_agency(
        self, agency_id: str, secret: str, now: datetime,
    ) -> FeedSnapshot:
        envelope = await self._fetch_envelope("incidents", agency_id)
        document = decrypt_envelope(envelope, secret)
        snapshot = parse_records(extract_records(document), now)
        logger.info(
            "Fetched %d incidents from agency %s (%d skipped)",
            len(snapshot.incidents), agency_id, snapshot.skipped,
            extra={"endpoint": "incidents"},
        )
        return snapshot

    async def fetch_incidents(
        self,
        agency_ids: List[str],
        secret: str,
        *,
        now: Optional[datetime] = None,
        window_hours: Optional[float] = None,
        max_incidents: Optional[int] = None,
    ) -> FeedSnapshot:
        """
        Fetch, decrypt and parse the current snapshot for all agencies.

        The window and cap apply to ``incidents`` only; ``active_ids`` keeps
        every open id the agencies reported.

        Raises
        ------
        FeedFetchError
            Any agency unreachable on both endpoints.
        DecryptionError
            Any agency envelope undecryptable.
        """
        now = now or datetime.now(timezone.utc)
        batches = await asyncio.gather(
            *(self._fetch_agency(a, secret, now) for a in agency_ids)
        )

        # Agencies with overlapping coverage report the same incident
        merged: Dict[str, RawIncident] = {}
        snapshot = FeedSnapshot()
        for batch in batches:
            for incident in batch.incidents:
                merged.setdefault(incident.external_id, incident)
            snapshot.active_ids |= batch.active_ids
            snapshot.skipped += batch.skipped

        snapshot.incidents = filter_and_limit(
            list(merged.values()),
            max_incidents=max_incidents or settings.MAX_INCIDENTS_PER_SYNC,
            window=timedelta(hours=window_hours or settings.INCIDENT_WINDOW_HOURS),
            now=now,
        )
        return snapshot

    async def fetch_unit_legend(
        self, agency_id: str, secret: str,
    ) -> Optional[List[UnitLegendEntry]]:
        """
        Fetch the agency's unit legend. None when the agency publishes none
        (404) or the document has an unexpected shape.
        """
        client = await self._get_client()
        try:
            response = await client.get(
                self.primary_url,
                params={"resource": "unitlegend", "agencyid": agency_id},
            )
        except httpx.HTTPError as e:
            raise FeedFetchError(SERVICE_NAME, str(e), agency_id=agency_id) from e

        if response.status_code == 404:
            logger.info("Unit legend not available for agency %s", agency_id)
            return None
        if response.is_error:
            raise FeedFetchError(
                SERVICE_NAME,
                f"unit legend returned {response.status_code}",
                agency_id=agency_id,
            )
        return extract_unit_legend(decrypt_envelope(response.json(), secret))
