"""
call_types.py — Call-type code table and category mapping.

Feed call types arrive either as short dispatch codes ("SF", "TC", "ME")
or, for some agencies, as free-text descriptions. Codes are looked up in
the table below; anything else falls back to keyword matching.

═══════════════════════════════════════════════════════════════════════════
DISPATCH GROUP → CATEGORY
═══════════════════════════════════════════════════════════════════════════

    Dispatch group      Category
    ────────────────    ────────
    Alarm, Explosion,   fire
    Fire
    Medical             medical
    Rescue              rescue
    Aircraft, Vehicle   traffic
    Hazard, Wires       hazmat
    everything else     other

Medical is the category that matters most: medical calls are stored and
tracked but never published.
"""

from __future__ import annotations

from typing import Dict, Tuple

from backend.feedsync.incidents.models import CallTypeCategory

_GROUP_TO_CATEGORY: Dict[str, CallTypeCategory] = {
    "Aid":              CallTypeCategory.OTHER,
    "Aircraft":         CallTypeCategory.TRAFFIC,
    "Alarm":            CallTypeCategory.FIRE,
    "Assist":           CallTypeCategory.OTHER,
    "Explosion":        CallTypeCategory.FIRE,
    "Fire":             CallTypeCategory.FIRE,
    "Hazard":           CallTypeCategory.HAZMAT,
    "Investigation":    CallTypeCategory.OTHER,
    "Lockout":          CallTypeCategory.OTHER,
    "Medical":          CallTypeCategory.MEDICAL,
    "Natural Disaster": CallTypeCategory.OTHER,
    "Rescue":           CallTypeCategory.RESCUE,
    "Vehicle":          CallTypeCategory.TRAFFIC,
    "Wires":            CallTypeCategory.HAZMAT,
    "Other":            CallTypeCategory.OTHER,
    "Alert":            CallTypeCategory.OTHER,
    "Unknown":          CallTypeCategory.OTHER,
}

# code → (description, dispatch group)
CALL_TYPES: Dict[str, Tuple[str, str]] = {
    "AA": ("Auto Aid", "Aid"),
    "MU": ("Mutual Aid", "Aid"),
    "ST": ("Strike Team/Task Force", "Aid"),
    "AC": ("Aircraft Crash", "Aircraft"),
    "AE": ("Aircraft Emergency", "Aircraft"),
    "AES": ("Aircraft Emergency Standby", "Aircraft"),
    "LZ": ("Landing Zone", "Aircraft"),
    "AED": ("AED Alarm", "Alarm"),
    "OA": ("Alarm", "Alarm"),
    "CMA": ("Carbon Monoxide Alarm", "Alarm"),
    "FA": ("Fire Alarm", "Alarm"),
    "MA": ("Manual Alarm", "Alarm"),
    "SD": ("Smoke Detector", "Alarm"),
    "TRBL": ("Trouble Alarm", "Alarm"),
    "WFA": ("Waterflow Alarm", "Alarm"),
    "FL": ("Flooding", "Assist"),
    "LR": ("Ladder Request", "Assist"),
    "LA": ("Lift Assist", "Assist"),
    "PA": ("Police Assist", "Assist"),
    "PS": ("Public Service", "Assist"),
    "SH": ("Sheared Hydrant", "Assist"),
    "EX": ("Explosion", "Explosion"),
    "PE": ("Pipeline Emergency", "Explosion"),
    "TE": ("Transformer Explosion", "Explosion"),
    "AF": ("Appliance Fire", "Fire"),
    "CHIM": ("Chimney Fire", "Fire"),
    "CF": ("Commercial Fire", "Fire"),
    "WSF": ("Confirmed Structure Fire", "Fire"),
    "WVEG": ("Confirmed Vegetation Fire", "Fire"),
    "CB": ("Controlled Burn", "Fire"),
    "ELF": ("Electrical Fire", "Fire"),
    "EF": ("Extinguished Fire", "Fire"),
    "FIRE": ("Fire", "Fire"),
    "FULL": ("Full Assignment", "Fire"),
    "IF": ("Illegal Fire", "Fire"),
    "MF": ("Marine Fire", "Fire"),
    "OF": ("Outside Fire", "Fire"),
    "PF": ("Pole Fire", "Fire"),
    "GF": ("Refuse/Garbage Fire", "Fire"),
    "RF": ("Residential Fire", "Fire"),
    "SF": ("Structure Fire", "Fire"),
    "TF": ("Tank Fire", "Fire"),
    "VEG": ("Vegetation Fire", "Fire"),
    "VF": ("Vehicle Fire", "Fire"),
    "WF": ("Confirmed Fire", "Fire"),
    "WCF": ("Working Commercial Fire", "Fire"),
    "WRF": ("Working Residential Fire", "Fire"),
    "BT": ("Bomb Threat", "Hazard"),
    "EE": ("Electrical Emergency", "Hazard"),
    "EM": ("Emergency", "Hazard"),
    "ER": ("Emergency Response", "Hazard"),
    "GAS": ("Gas Leak", "Hazard"),
    "HC": ("Hazardous Condition", "Hazard"),
    "HMR": ("Hazmat Response", "Hazard"),
    "TD": ("Tree Down", "Hazard"),
    "WE": ("Water Emergency", "Hazard"),
    "AI": ("Arson Investigation", "Investigation"),
    "FWI": ("Fireworks Investigation", "Investigation"),
    "HMI": ("Hazmat Investigation", "Investigation"),
    "INV": ("Investigation", "Investigation"),
    "OI": ("Odor Investigation", "Investigation"),
    "SI": ("Smoke Investigation", "Investigation"),
    "CL": ("Commercial Lockout", "Lockout"),
    "LO": ("Lockout", "Lockout"),
    "RL": ("Residential Lockout", "Lockout"),
    "VL": ("Vehicle Lockout", "Lockout"),
    "CP": ("Community Paramedicine", "Medical"),
    "IFT": ("Interfacility Transfer", "Medical"),
    "ME": ("Medical Emergency", "Medical"),
    "MCI": ("Mass Casualty Incident", "Medical"),
    "EQ": ("Earthquake", "Natural Disaster"),
    "FLW": ("Flood Warning", "Natural Disaster"),
    "TOW": ("Tornado Warning", "Natural Disaster"),
    "TSW": ("Tsunami Warning", "Natural Disaster"),
    "WX": ("Weather Incident", "Natural Disaster"),
    "AR": ("Animal Rescue", "Rescue"),
    "CR": ("Cliff Rescue", "Rescue"),
    "CSR": ("Confined Space Rescue", "Rescue"),
    "ELR": ("Elevator Rescue", "Rescue"),
    "EER": ("Elevator/Escalator Rescue", "Rescue"),
    "IR": ("Ice Rescue", "Rescue"),
    "IA": ("Industrial Accident", "Rescue"),
    "RES": ("Rescue", "Rescue"),
    "RR": ("Rope Rescue", "Rescue"),
    "SC": ("Structural Collapse", "Rescue"),
    "TR": ("Technical Rescue", "Rescue"),
    "TNR": ("Trench Rescue", "Rescue"),
    "USAR": ("Urban Search and Rescue", "Rescue"),
    "VS": ("Vessel Sinking", "Rescue"),
    "WR": ("Water Rescue", "Rescue"),
    "TCP": ("Collision Involving Pedestrian", "Vehicle"),
    "TCS": ("Collision Involving Structure", "Vehicle"),
    "TCT": ("Collision Involving Train", "Vehicle"),
    "TCE": ("Expanded Traffic Collision", "Vehicle"),
    "RTE": ("Railroad/Train Emergency", "Vehicle"),
    "TC": ("Traffic Collision", "Vehicle"),
    "MVA": ("Motor Vehicle Accident", "Vehicle"),
    "MVC": ("Motor Vehicle Collision", "Vehicle"),
    "PLE": ("Powerline Emergency", "Wires"),
    "WA": ("Wires Arcing", "Wires"),
    "WD": ("Wires Down", "Wires"),
    "WDA": ("Wires Down/Arcing", "Wires"),
    "BP": ("Burn Permit", "Other"),
    "CA": ("Community Activity", "Other"),
    "FW": ("Fire Watch", "Other"),
    "MC": ("Move-up/Cover", "Other"),
    "NO": ("Notification", "Other"),
    "STBY": ("Standby", "Other"),
    "TEST": ("Test", "Other"),
    "TRNG": ("Training", "Other"),
    "NEWS": ("News", "Alert"),
    "CERT": ("CERT Activation", "Alert"),
    "DISASTER": ("Disaster", "Alert"),
    "UNK": ("Unknown", "Unknown"),
}

# Keyword fallback, checked in order
_KEYWORDS: Tuple[Tuple[CallTypeCategory, Tuple[str, ...]], ...] = (
    (CallTypeCategory.FIRE, ("fire", "smoke", "alarm", "explosion")),
    (CallTypeCategory.MEDICAL, (
        "medical", "ems", "ambulance", "cardiac", "breathing",
        "unconscious", "injury", "sick", "casualty",
    )),
    (CallTypeCategory.RESCUE, ("rescue", "trapped", "missing", "collapse")),
    (CallTypeCategory.TRAFFIC, (
        "accident", "collision", "mva", "mvc", "vehicle",
        "traffic", "aircraft", "train",
    )),
    (CallTypeCategory.HAZMAT, (
        "hazmat", "hazardous", "spill", "chemical", "leak",
        "gas", "wires", "powerline", "electrical",
    )),
)


def map_call_type_to_category(call_type: str) -> CallTypeCategory:
    """Map a feed call type (code or description) to a category."""
    entry = CALL_TYPES.get(call_type.upper().strip())
    if entry is not None:
        return _GROUP_TO_CATEGORY[entry[1]]

    lower = call_type.lower()
    for category, words in _KEYWORDS:
        if any(w in lower for w in words):
            return category
    return CallTypeCategory.OTHER


def get_call_type_description(call_type: str) -> str:
    """Human description for a code; unknown codes are returned as-is."""
    entry = CALL_TYPES.get(call_type.upper().strip())
    return entry[0] if entry else call_type


def is_medical_call_type(call_type: str) -> bool:
    return map_call_type_to_category(call_type) == CallTypeCategory.MEDICAL


# ═══════════════════════════════════════════════════════════════════════════
# Unit dispatch status codes
# ═══════════════════════════════════════════════════════════════════════════

UNIT_STATUS_CODES: Dict[str, str] = {
    "DP": "Dispatched",
    "AK": "Acknowledged",
    "ER": "En Route",
    "OS": "On Scene",
    "TR": "Transport",
    "TA": "Transport Arrived",
    "AQ": "Available in Quarters",
    "AR": "Available on Radio",
    "AE": "Available on Scene",
    "CL": "Cleared",
}


def format_unit_status(status: str) -> str:
    """Expand a unit status code ("OS" → "On Scene"); unknown codes pass through."""
    return UNIT_STATUS_CODES.get(status.upper().strip(), status)
