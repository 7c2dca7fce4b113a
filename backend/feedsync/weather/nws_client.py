"""
nws_client.py — National Weather Service active-alerts client.

    GET https://api.weather.gov/alerts/active?zone=NCZ060,NCZ061
    User-Agent: <required by the service, identifies the caller>
    Accept: application/geo+json

Each ``features[].properties`` object becomes an AlertMessage. Messages
are returned in feed order; the chain resolver depends on that order.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from backend.feedsync.core.config import settings
from backend.feedsync.core.errors import FeedFetchError
from backend.feedsync.feeds.timestamps import parse_timestamp
from backend.feedsync.weather.models import (
    AlertCertainty,
    AlertMessage,
    AlertSeverity,
    AlertUrgency,
    MessageType,
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "nws"


def parse_alert_properties(props: Dict[str, Any]) -> Optional[AlertMessage]:
    """Map one feature's properties to an AlertMessage (None without an id)."""
    external_id = props.get("id")
    if not external_id:
        return None
    try:
        message_type = MessageType(props.get("messageType") or "Alert")
    except ValueError:
        message_type = MessageType.ALERT

    references = [
        ref.get("identifier")
        for ref in props.get("references") or []
        if isinstance(ref, dict) and ref.get("identifier")
    ]

    return AlertMessage(
        external_id=str(external_id),
        message_type=message_type,
        event=props.get("event") or "Weather Alert",
        headline=props.get("headline") or "",
        description=props.get("description"),
        instruction=props.get("instruction"),
        severity=AlertSeverity.parse(props.get("severity")),
        urgency=AlertUrgency.parse(props.get("urgency")),
        certainty=AlertCertainty.parse(props.get("certainty")),
        category=props.get("category"),
        onset=parse_timestamp(props.get("onset")),
        expires=parse_timestamp(props.get("expires")),
        ends=parse_timestamp(props.get("ends")),
        affected_zones=list(props.get("affectedZones") or []),
        references=references,
    )


class NWSClient:
    """Async client for ``/alerts/active``."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.NWS_ALERTS_URL
        self.user_agent = user_agent or settings.NWS_USER_AGENT
        self.timeout = timeout if timeout is not None else settings.WEATHER_FETCH_TIMEOUT
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={
                    "User-Agent": self.user_agent,
                    "Accept": "application/geo+json",
                },
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def fetch_active_alerts(self, zones: List[str]) -> List[AlertMessage]:
        """
        Fetch active alerts for the given zone codes.

        Raises FeedFetchError on network errors, timeouts, non-2xx
        responses or an unparseable body.
        """
        if not zones:
            return []
        client = await self._get_client()
        try:
            response = await client.get(self.base_url, params={"zone": ",".join(zones)})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise FeedFetchError(
                SERVICE_NAME, f"returned {e.response.status_code}", zones=zones,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise FeedFetchError(SERVICE_NAME, str(e), zones=zones) from e

        messages: List[AlertMessage] = []
        for feature in data.get("features") or []:
            message = parse_alert_properties(feature.get("properties") or {})
            if message is not None:
                messages.append(message)
        logger.info("Fetched %d weather alerts for zones %s", len(messages), ",".join(zones))
        return messages
