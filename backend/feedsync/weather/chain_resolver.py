"""
chain_resolver.py — Collapse weather alert revision chains into one record.

The weather service issues a new id for every revision of an alert and
lists the ids it replaces under ``references``. Without lineage tracking
each revision would look like a brand-new alert and be posted again.

═══════════════════════════════════════════════════════════════════════════
RESOLUTION RULES (per message, in feed order)
═══════════════════════════════════════════════════════════════════════════

    1. exact id already stored as a current id
           → content refresh in place, lineage unchanged
             (a Cancel carrying the current id cancels in place)
    2. id already sits in some lineage
           → replayed revision, ignored
    3. search active alerts for a lineage owner: current id or lineage
       contains any referenced id; first match wins (no ambiguity error)
    4. Update with owner   → append owner's current id to its lineage,
                             adopt the new id, patch content, flag repost
       Alert / Update without owner → new record
    5. Cancel with owner   → state = cancelled, same lineage shift
       Cancel without owner → dropped, nothing stored

A Cancel that arrives before the Update it references (same batch) finds
no owner and is dropped. The batch is not reordered.

Example:
    X1 Alert                      → {current X1, lineage []}
    X2 Update refs [X1]           → {current X2, lineage [X1]}
    X3 Cancel refs [X2]           → {current X3, lineage [X1, X2], cancelled}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from backend.feedsync.posting.state_machine import PostingStateMachine
from backend.feedsync.storage.base import SyncStore
from backend.feedsync.weather.models import (
    AlertMessage,
    AlertSeverity,
    AlertState,
    MessageType,
    WeatherAlert,
)

logger = logging.getLogger(__name__)


@dataclass
class ChainResolutionResult:
    tenant_id: str
    created: int = 0
    updated: int = 0
    cancelled: int = 0
    dropped: int = 0
    ignored: int = 0
    touched: List[WeatherAlert] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "created": self.created,
            "updated": self.updated,
            "cancelled": self.cancelled,
            "dropped": self.dropped,
            "ignored": self.ignored,
        }


class WeatherChainResolver:
    """Applies alert message batches to a tenant's stored alerts."""

    def __init__(self, state_machine: Optional[PostingStateMachine] = None):
        self.state_machine = state_machine or PostingStateMachine()

    @staticmethod
    def _find_owner(
        alerts: List[WeatherAlert], references: List[str],
    ) -> Optional[WeatherAlert]:
        for alert in alerts:
            if not alert.is_active:
                continue
            if any(alert.owns(ref) for ref in references):
                return alert
        return None

    def _supersede(self, owner: WeatherAlert, message: AlertMessage, now: datetime) -> None:
        owner.superseded_ids.append(owner.current_external_id)
        owner.current_external_id = message.external_id
        owner.apply_content(message)
        owner.updated_at = now
        self.state_machine.flag_content_change(owner.posting)

    def resolve_batch(
        self,
        tenant_id: str,
        messages: List[AlertMessage],
        stored: List[WeatherAlert],
        now: Optional[datetime] = None,
    ) -> ChainResolutionResult:
        """
        Fold ``messages`` into ``stored`` (mutated in place) and report
        which alerts changed. Pure apart from those mutations.
        """
        now = now or datetime.now(timezone.utc)
        result = ChainResolutionResult(tenant_id=tenant_id)
        alerts = list(stored)
        touched: Dict[str, WeatherAlert] = {}

        for message in messages:
            # 1. exact current id
            current = next(
                (a for a in alerts if a.current_external_id == message.external_id),
                None,
            )
            if current is not None:
                if message.message_type == MessageType.CANCEL:
                    if current.is_active:
                        current.state = AlertState.CANCELLED
                        current.updated_at = now
                        touched[current.alert_id] = current
                        result.cancelled += 1
                    continue
                if current.content_differs(message):
                    current.apply_content(message)
                    current.updated_at = now
                    self.state_machine.flag_content_change(current.posting)
                    touched[current.alert_id] = current
                    result.updated += 1
                continue

            # 2. replay of a revision already folded into a lineage
            if any(message.external_id in a.superseded_ids for a in alerts):
                result.ignored += 1
                continue

            # 3. lineage owner
            owner = None
            if message.references and message.message_type in (
                MessageType.UPDATE, MessageType.CANCEL,
            ):
                owner = self._find_owner(alerts, message.references)

            if message.message_type == MessageType.CANCEL:
                if owner is None:
                    logger.info(
                        "Dropping cancel %s: no stored alert in its lineage",
                        message.external_id,
                        extra={"tenant_id": tenant_id, "alert_id": message.external_id},
                    )
                    result.dropped += 1
                    continue
                self._supersede(owner, message, now)
                owner.state = AlertState.CANCELLED
                touched[owner.alert_id] = owner
                result.cancelled += 1
                continue

            if owner is not None:
                self._supersede(owner, message, now)
                touched[owner.alert_id] = owner
                result.updated += 1
                continue

            # 4. new record
            alert = WeatherAlert.from_message(tenant_id, message)
            alert.created_at = alert.updated_at = now
            alerts.append(alert)
            touched[alert.alert_id] = alert
            result.created += 1

        result.touched = list(touched.values())
        return result

    async def resolve(
        self,
        store: SyncStore,
        tenant_id: str,
        messages: List[AlertMessage],
        now: Optional[datetime] = None,
    ) -> ChainResolutionResult:
        """Load the tenant's alerts, resolve the batch, save what changed."""
        stored = await store.list_alerts(tenant_id)
        result = self.resolve_batch(tenant_id, messages, stored, now)
        for alert in result.touched:
            await store.save_alert(alert)
        logger.info(
            "Resolved %d weather messages for tenant %s: %d created, %d updated, "
            "%d cancelled, %d dropped",
            len(messages), tenant_id, result.created, result.updated,
            result.cancelled, result.dropped,
            extra={"tenant_id": tenant_id, "created": result.created, "updated": result.updated},
        )
        return result


# ═══════════════════════════════════════════════════════════════════════════
# Expiry & views
# ═══════════════════════════════════════════════════════════════════════════

async def expire_alerts(
    store: SyncStore, tenant_id: str, now: Optional[datetime] = None,
) -> int:
    """Mark active alerts whose ``expires`` has passed as expired."""
    now = now or datetime.now(timezone.utc)
    expired = 0
    for alert in await store.list_alerts(tenant_id, state=AlertState.ACTIVE):
        if alert.expires is not None and alert.expires <= now:
            alert.state = AlertState.EXPIRED
            alert.updated_at = now
            await store.save_alert(alert)
            expired += 1
    if expired:
        logger.info("Expired %d weather alerts", expired, extra={"tenant_id": tenant_id})
    return expired


def group_by_severity(alerts: List[WeatherAlert]) -> Dict[str, List[WeatherAlert]]:
    """Bucket alerts by severity, every bucket present even when empty."""
    buckets: Dict[str, List[WeatherAlert]] = {s.value: [] for s in AlertSeverity}
    for alert in alerts:
        buckets[alert.severity.value].append(alert)
    return buckets
