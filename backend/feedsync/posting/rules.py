"""
rules.py — Publication gates for incidents and weather alerts.

═══════════════════════════════════════════════════════════════════════════
INCIDENTS (per-tenant AutoPostRules)
═══════════════════════════════════════════════════════════════════════════

Checked in order; the first failing rule is the rejection reason:

    1. auto-posting enabled
    2. call-type filter  — category, exact code or description substring;
                           "other" catches every non-standard category
    3. medical exclusion — always on
    4. minimum unit count
    5. delay             — seconds since the call was received;
                           deferred, the item stays pending

═══════════════════════════════════════════════════════════════════════════
WEATHER ALERTS (threat score)
═══════════════════════════════════════════════════════════════════════════

    score = severity + urgency + certainty          (max 100)

    Severity        Urgency          Certainty
    Extreme   40    Immediate  30    Observed  30
    Severe    30    Expected   20    Likely    25
    Moderate  20    Future     10    Possible  15
    Minor     10    Unknown     5    Unlikely   5
    Unknown    5                     Unknown    5

Posted when the event is on the always-post list, severity is Extreme,
or score >= 55.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from backend.feedsync.incidents.call_types import (
    get_call_type_description,
    map_call_type_to_category,
)
from backend.feedsync.incidents.models import CallTypeCategory, Incident
from backend.feedsync.tenants.models import AutoPostRules
from backend.feedsync.weather.models import (
    AlertCertainty,
    AlertSeverity,
    AlertUrgency,
    WeatherAlert,
)

STANDARD_CATEGORIES = frozenset({
    CallTypeCategory.FIRE.value,
    CallTypeCategory.MEDICAL.value,
    CallTypeCategory.RESCUE.value,
    CallTypeCategory.TRAFFIC.value,
    CallTypeCategory.HAZMAT.value,
})


@dataclass
class RuleDecision:
    """``deferred`` rejections are retried later without counting an attempt."""
    allowed: bool
    reason: Optional[str] = None
    deferred: bool = False


def should_auto_post(
    incident: Incident,
    rules: Optional[AutoPostRules],
    now: Optional[datetime] = None,
) -> RuleDecision:
    """Decide whether an incident may be auto-published."""
    if rules is None or not rules.enabled:
        return RuleDecision(False, "Auto-posting disabled")

    category = map_call_type_to_category(incident.call_type).value
    description = get_call_type_description(incident.call_type).lower()
    code = incident.call_type.lower()

    if rules.call_types:
        def matches(filter_value: str) -> bool:
            f = filter_value.lower().strip()
            return (
                f == category
                or f == code
                or f in category
                or f in description
                or (f == CallTypeCategory.OTHER.value and category not in STANDARD_CATEGORIES)
            )

        if not any(matches(ct) for ct in rules.call_types):
            return RuleDecision(
                False,
                f"Call type {incident.call_type} ({category}) not in filter "
                f"[{', '.join(rules.call_types)}]",
            )

    if incident.is_medical or category == CallTypeCategory.MEDICAL.value:
        return RuleDecision(False, "Medical calls excluded")

    if rules.min_units > 0 and len(incident.units) < rules.min_units:
        return RuleDecision(
            False, f"Only {len(incident.units)} units, minimum is {rules.min_units}",
        )

    if rules.delay_seconds > 0:
        now = now or datetime.now(timezone.utc)
        age = (now - incident.call_received_time).total_seconds()
        if age < rules.delay_seconds:
            return RuleDecision(
                False, f"Waiting for delay ({int(age)}s of {rules.delay_seconds}s)",
                deferred=True,
            )

    return RuleDecision(True)


# ═══════════════════════════════════════════════════════════════════════════
# Weather
# ═══════════════════════════════════════════════════════════════════════════

SEVERITY_POINTS: Dict[AlertSeverity, int] = {
    AlertSeverity.EXTREME: 40,
    AlertSeverity.SEVERE: 30,
    AlertSeverity.MODERATE: 20,
    AlertSeverity.MINOR: 10,
    AlertSeverity.UNKNOWN: 5,
}

URGENCY_POINTS: Dict[AlertUrgency, int] = {
    AlertUrgency.IMMEDIATE: 30,
    AlertUrgency.EXPECTED: 20,
    AlertUrgency.FUTURE: 10,
    AlertUrgency.PAST: 5,
    AlertUrgency.UNKNOWN: 5,
}

CERTAINTY_POINTS: Dict[AlertCertainty, int] = {
    AlertCertainty.OBSERVED: 30,
    AlertCertainty.LIKELY: 25,
    AlertCertainty.POSSIBLE: 15,
    AlertCertainty.UNLIKELY: 5,
    AlertCertainty.UNKNOWN: 5,
}

THREAT_SCORE_THRESHOLD = 55

ALWAYS_POST_EVENTS = frozenset({
    "Tornado Warning",
    "Tornado Watch",
    "Severe Thunderstorm Warning",
    "Flash Flood Warning",
    "Hurricane Warning",
    "Extreme Wind Warning",
    "Storm Surge Warning",
    "Tsunami Warning",
})


def threat_score(alert: WeatherAlert) -> int:
    return (
        SEVERITY_POINTS[alert.severity]
        + URGENCY_POINTS[alert.urgency]
        + CERTAINTY_POINTS[alert.certainty]
    )


def should_post_alert(alert: WeatherAlert) -> RuleDecision:
    if alert.event in ALWAYS_POST_EVENTS:
        return RuleDecision(True)
    if alert.severity == AlertSeverity.EXTREME:
        return RuleDecision(True)
    score = threat_score(alert)
    if score >= THREAT_SCORE_THRESHOLD:
        return RuleDecision(True)
    return RuleDecision(
        False, f"Threat score {score} below threshold {THREAT_SCORE_THRESHOLD}",
    )
