"""
formatter.py — Social post bodies for incidents and weather alerts.

Incident post:

    🚨 ACTIVE INCIDENT

    📋 Type: Structure Fire
    📍 123 MAIN ST

    🚒 Units:
    • E1 (Engine 1) - On Scene
    • L2 - En Route

    ⏰ 9:05 PM

    #EmergencyAlert #FirstResponders

Weather post: severity marker and event, WHERE / WHAT / WHEN / IMPACTS
sections pulled from the alert description, instructions cut to a few
sentences, then state and event hashtags.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from backend.feedsync.core.config import settings
from backend.feedsync.incidents.call_types import format_unit_status, get_call_type_description
from backend.feedsync.incidents.models import Incident
from backend.feedsync.tenants.models import UnitLegendEntry
from backend.feedsync.weather.models import AlertSeverity, AlertState, WeatherAlert

SEVERITY_MARKERS: Dict[AlertSeverity, str] = {
    AlertSeverity.EXTREME: "🔴",
    AlertSeverity.SEVERE: "🟠",
    AlertSeverity.MODERATE: "🟡",
    AlertSeverity.MINOR: "🔵",
    AlertSeverity.UNKNOWN: "⚠️",
}

_SECTION_RE = re.compile(
    r"\*\s*(WHAT|WHERE|WHEN|IMPACTS|ADDITIONAL DETAILS)\.{3}([^*]*)", re.IGNORECASE,
)
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_ZONE_STATE_RE = re.compile(r"/([A-Z]{2})Z\d{3}$")
_NWS_OFFICE_RE = re.compile(r"NWS\s+([\w-]+)", re.IGNORECASE)


def _zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or settings.DEFAULT_TIMEZONE)
    except ZoneInfoNotFoundError:
        return ZoneInfo(settings.DEFAULT_TIMEZONE)


def _clock(value: datetime, tz: ZoneInfo) -> str:
    local = value.astimezone(tz)
    return f"{local.hour % 12 or 12}:{local.minute:02d} {'AM' if local.hour < 12 else 'PM'}"


def _day(value: datetime, tz: ZoneInfo) -> str:
    local = value.astimezone(tz)
    return f"{local:%A}, {local:%b} {local.day}"


def unit_display_name(unit_id: str, legend: Optional[List[UnitLegendEntry]]) -> str:
    """``E1`` → ``E1 (Engine 1)`` when the legend knows the unit."""
    for entry in legend or []:
        if entry.unit_key.lower() == unit_id.lower() and entry.description:
            return f"{unit_id} ({entry.description})"
    return unit_id


# ═══════════════════════════════════════════════════════════════════════════
# Incidents
# ═══════════════════════════════════════════════════════════════════════════

def format_incident_post(
    incident: Incident,
    *,
    timezone: Optional[str] = None,
    unit_legend: Optional[List[UnitLegendEntry]] = None,
) -> str:
    tz = _zone(timezone)
    lines: List[str] = []

    if incident.is_active:
        lines.append("🚨 ACTIVE INCIDENT")
    else:
        lines.append("✅ INCIDENT CLOSED")
    lines.append("")
    lines.append(f"📋 Type: {get_call_type_description(incident.call_type)}")
    lines.append(f"📍 {incident.address}")
    lines.append("")

    if incident.units:
        lines.append("🚒 Units:")
        if incident.unit_statuses:
            by_status: Dict[str, List[str]] = {}
            for status in incident.unit_statuses:
                by_status.setdefault(status.status or "Unknown", []).append(status.unit_id)
            for code, units in by_status.items():
                label = format_unit_status(code)
                for unit in units:
                    lines.append(f"• {unit_display_name(unit, unit_legend)} - {label}")
        else:
            for unit in incident.units:
                lines.append(f"• {unit_display_name(unit, unit_legend)}")
        lines.append("")

    lines.append(f"⏰ {_clock(incident.call_received_time, tz)}")
    lines.append("")
    lines.append("#EmergencyAlert #FirstResponders")
    return "\n".join(lines)


# ═══════════════════════════════════════════════════════════════════════════
# Weather
# ═══════════════════════════════════════════════════════════════════════════

def parse_description_sections(description: str) -> Dict[str, str]:
    """Pull ``* WHAT...`` style sections out of an alert description."""
    sections: Dict[str, str] = {}
    for match in _SECTION_RE.finditer(description):
        key = match.group(1).lower().replace(" details", "")
        sections[key] = " ".join(match.group(2).split())
    return sections


def truncate_sentences(text: str, max_sentences: int = 3) -> str:
    sentences = [s for s in _SENTENCE_SPLIT.split(text.strip()) if s.strip()]
    if len(sentences) <= max_sentences:
        return text.strip()
    return " ".join(sentences[:max_sentences]).strip()


def alert_hashtags(alert: WeatherAlert) -> List[str]:
    tags: List[str] = []
    for zone in alert.affected_zones:
        match = _ZONE_STATE_RE.search(zone)
        if match and f"#{match.group(1)}wx" not in tags:
            tags.append(f"#{match.group(1)}wx")
    tags.append("#" + "".join(alert.event.split()))
    office = _NWS_OFFICE_RE.search(alert.headline or "")
    if office:
        tags.append("#NWS" + re.sub(r"[^a-zA-Z]", "", office.group(1)))
    return tags


def format_weather_post(
    alert: WeatherAlert,
    *,
    timezone: Optional[str] = None,
    max_instruction_sentences: int = 3,
) -> str:
    tz = _zone(timezone)
    sections = parse_description_sections(alert.description or "")
    lines: List[str] = [f"{SEVERITY_MARKERS[alert.severity]} {alert.event.upper()}"]
    if alert.state == AlertState.CANCELLED:
        lines.append("✅ CANCELLED by the National Weather Service")
    elif alert.state == AlertState.EXPIRED:
        lines.append("✅ EXPIRED")

    if alert.headline:
        lines.append(alert.headline)
    if sections.get("where"):
        lines.append(f"📍 WHERE: {sections['where']}")
    lines.append("")

    if sections.get("what"):
        lines.append(f"WHAT: {sections['what']}")
        lines.append("")

    ends = alert.ends or alert.expires
    if sections.get("when"):
        when = f"⏰ WHEN: {sections['when']}"
        if alert.onset and ends:
            when += f" ({_day(alert.onset, tz)} - {_day(ends, tz)})"
        lines.append(when)
        lines.append("")
    elif ends:
        lines.append(f"⏰ Until {_day(ends, tz)} {_clock(ends, tz)}")
        lines.append("")

    if sections.get("impacts"):
        lines.append("⚠️ IMPACTS:")
        lines.append(sections["impacts"])
        lines.append("")

    if alert.instruction:
        lines.append("📋 INSTRUCTIONS:")
        lines.append(truncate_sentences(alert.instruction, max_instruction_sentences))
        lines.append("")

    lines.append(" ".join(alert_hashtags(alert)))
    return "\n".join(lines)
