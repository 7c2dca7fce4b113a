"""Timestamp parsing shared by the incident and weather feed clients."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

# Epoch values above this are taken as milliseconds (year 5138 in seconds)
_EPOCH_MS_THRESHOLD = 1e11


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Feed timestamp → aware UTC datetime (None if unparseable).

    Accepts ISO-8601 strings (``Z`` suffix, offsets, naive as UTC) and
    epoch numbers in seconds or milliseconds.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) > _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
