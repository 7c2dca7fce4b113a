"""
publisher.py — Drives the posting queues against the social platform.

One publish pass per tenant, in this order:

    1. retry_failed     failed items under the attempt cap go back to
                        pending / needs_update
    2. publish_pending  auto-post rules, then a new post per logical
                        incident (a dispatch group gets one post)
    3. publish_updates  edit the existing post, falling back to a new one
    4. publish_alerts   threat gate, then new posts and edits for alerts

Each step handles at most ``batch_limit`` items. Outcomes are written to
every member of a dispatch group so the group never splits across
states. A tenant whose page connection is missing or expired is skipped
untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from backend.feedsync.core.config import settings
from backend.feedsync.core.errors import InvalidTransitionError, NotFoundError, PublishError
from backend.feedsync.incidents.grouping import ConsolidatedIncident
from backend.feedsync.incidents.models import Incident, IncidentStatus
from backend.feedsync.posting.facebook_client import FacebookClient
from backend.feedsync.posting.formatter import format_incident_post, format_weather_post
from backend.feedsync.posting.models import PostingState
from backend.feedsync.posting.rules import should_auto_post, should_post_alert
from backend.feedsync.posting.state_machine import PostingStateMachine
from backend.feedsync.posting.views import (
    failed_alerts,
    failed_incidents,
    needs_update_incidents,
    pending_alerts,
    pending_incidents,
)
from backend.feedsync.storage.base import SyncStore
from backend.feedsync.tenants.models import Tenant
from backend.feedsync.weather.models import AlertState, WeatherAlert

logger = logging.getLogger(__name__)


@dataclass
class PublishResult:
    tenant_id: str
    published: int = 0
    updated: int = 0
    skipped: int = 0
    deferred: int = 0
    failed: int = 0
    retried: int = 0
    alerts_published: int = 0
    alerts_updated: int = 0
    alerts_skipped: int = 0
    alerts_failed: int = 0
    skipped_reason: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "published": self.published,
            "updated": self.updated,
            "skipped": self.skipped,
            "deferred": self.deferred,
            "failed": self.failed,
            "retried": self.retried,
            "alerts_published": self.alerts_published,
            "alerts_updated": self.alerts_updated,
            "alerts_skipped": self.alerts_skipped,
            "alerts_failed": self.alerts_failed,
            "skipped_reason": self.skipped_reason,
            "error": self.error,
        }


class Publisher:
    """
    Publishes a tenant's queues and writes outcomes back through the
    posting state machine.

    Parameters
    ----------
    store : SyncStore
    client : FacebookClient | None
    state_machine : PostingStateMachine | None
    batch_limit : int | None
        Items per step per pass (default 20).
    """

    def __init__(
        self,
        store: SyncStore,
        client: Optional[FacebookClient] = None,
        state_machine: Optional[PostingStateMachine] = None,
        batch_limit: Optional[int] = None,
    ):
        self.store = store
        self.client = client or FacebookClient()
        self.state_machine = state_machine or PostingStateMachine()
        self.batch_limit = batch_limit or settings.PUBLISH_BATCH_LIMIT

    async def close(self) -> None:
        await self.client.close()

    # ═══════════════════════════════════════════════════════════════════════
    # Pass
    # ═══════════════════════════════════════════════════════════════════════

    async def publish_tenant(
        self, tenant: Tenant, now: Optional[datetime] = None,
    ) -> PublishResult:
        now = now or datetime.now(timezone.utc)
        result = PublishResult(tenant_id=tenant.tenant_id)

        if tenant.facebook is None or not tenant.facebook.is_usable(now):
            result.skipped_reason = "No usable social page connection"
            logger.info(
                "Skipping publish for tenant %s: %s", tenant.slug, result.skipped_reason,
                extra={"tenant_id": tenant.tenant_id},
            )
            return result

        await self.retry_failed(tenant.tenant_id, result)
        await self.publish_pending(tenant, result, now)
        await self.publish_updates(tenant, result, now)
        await self.publish_alerts(tenant, result, now)

        logger.info(
            "Publish pass for tenant %s: %d new, %d updated, %d skipped, %d failed, "
            "%d alerts posted",
            tenant.slug, result.published, result.updated, result.skipped,
            result.failed, result.alerts_published,
            extra={"tenant_id": tenant.tenant_id},
        )
        return result

    # ── Step 1 ──

    async def retry_failed(self, tenant_id: str, result: PublishResult) -> None:
        """Scheduled retry: failed items with attempts left rejoin the queues."""
        incidents = await self.store.list_incidents(tenant_id)
        for entry in failed_incidents(incidents)[: self.batch_limit]:
            changed = [
                m for m in entry.members
                if m.posting.state == PostingState.FAILED
                and self.state_machine.can_retry(m.posting)
            ]
            for member in changed:
                self.state_machine.retry(member.posting)
            await self.store.save_incidents(changed)
            if changed:
                result.retried += 1

        alerts = await self.store.list_alerts(tenant_id)
        for alert in failed_alerts(alerts)[: self.batch_limit]:
            if self.state_machine.can_retry(alert.posting):
                self.state_machine.retry(alert.posting)
                await self.store.save_alert(alert)
                result.retried += 1

    # ── Step 2 ──

    async def publish_pending(
        self, tenant: Tenant, result: PublishResult, now: datetime,
    ) -> None:
        incidents = await self.store.list_incidents(tenant.tenant_id)
        connection = tenant.facebook
        for entry in pending_incidents(incidents)[: self.batch_limit]:
            view = entry.view()
            decision = should_auto_post(view, tenant.auto_post_rules, now)
            if not decision.allowed:
                if decision.deferred:
                    result.deferred += 1
                    continue
                logger.info(
                    "Skipping incident %s: %s", view.incident_id, decision.reason,
                    extra={"tenant_id": tenant.tenant_id, "external_id": view.external_id},
                )
                await self._fail_members(entry, f"Skipped: {decision.reason}", now)
                result.skipped += 1
                continue

            message = format_incident_post(
                view, timezone=tenant.timezone, unit_legend=tenant.unit_legend,
            )
            try:
                post_id = await self.client.publish(
                    connection.page_id, connection.page_token, message,
                )
            except PublishError as e:
                logger.warning(
                    "Failed to publish incident %s: %s", view.incident_id, e.message,
                    extra={"tenant_id": tenant.tenant_id, "external_id": view.external_id},
                )
                await self._fail_members(entry, e.message, now)
                result.failed += 1
                continue

            await self._mark_members_posted(entry, post_id, now)
            result.published += 1

    # ── Step 3 ──

    async def publish_updates(
        self, tenant: Tenant, result: PublishResult, now: datetime,
    ) -> None:
        incidents = await self.store.list_incidents(tenant.tenant_id)
        connection = tenant.facebook
        for entry in needs_update_incidents(incidents)[: self.batch_limit]:
            post_id = entry.post_id
            if not post_id:
                continue
            view = entry.view()
            message = format_incident_post(
                view, timezone=tenant.timezone, unit_legend=tenant.unit_legend,
            )
            try:
                outcome = await self.client.update_or_repost(
                    connection.page_id, post_id, connection.page_token, message,
                )
            except PublishError as e:
                await self._fail_members(entry, e.message, now)
                result.failed += 1
                continue

            await self._mark_members_posted(entry, outcome.new_post_id or post_id, now)
            result.updated += 1

    # ── Step 4 ──

    async def publish_alerts(
        self, tenant: Tenant, result: PublishResult, now: datetime,
    ) -> None:
        connection = tenant.facebook
        alerts = await self.store.list_alerts(tenant.tenant_id)

        for alert in pending_alerts(alerts)[: self.batch_limit]:
            decision = should_post_alert(alert)
            if not decision.allowed:
                result.alerts_skipped += 1
                continue
            message = format_weather_post(alert, timezone=tenant.timezone)
            try:
                post_id = await self.client.publish(
                    connection.page_id, connection.page_token, message,
                )
            except PublishError as e:
                self.state_machine.mark_failed(alert.posting, e.message, now)
                result.alerts_failed += 1
            else:
                self.state_machine.mark_published(alert.posting, post_id, now)
                result.alerts_published += 1
            await self.store.save_alert(alert)

        stale = [
            a for a in alerts
            if a.posting.state == PostingState.NEEDS_UPDATE and a.posting.post_id
        ]
        for alert in stale[: self.batch_limit]:
            message = format_weather_post(alert, timezone=tenant.timezone)
            try:
                outcome = await self.client.update_or_repost(
                    connection.page_id, alert.posting.post_id,
                    connection.page_token, message,
                )
            except PublishError as e:
                self.state_machine.mark_failed(alert.posting, e.message, now)
                result.alerts_failed += 1
            else:
                self.state_machine.mark_updated(alert.posting, outcome.new_post_id, now)
                result.alerts_updated += 1
            await self.store.save_alert(alert)

    # ═══════════════════════════════════════════════════════════════════════
    # Group writes
    # ═══════════════════════════════════════════════════════════════════════

    async def _mark_members_posted(
        self, entry: ConsolidatedIncident, post_id: str, now: datetime,
    ) -> None:
        for member in entry.members:
            record = member.posting
            if record.state == PostingState.PENDING:
                self.state_machine.mark_published(record, post_id, now)
            elif record.state == PostingState.NEEDS_UPDATE:
                self.state_machine.mark_updated(record, post_id, now)
            elif record.state == PostingState.POSTED:
                # already current; only the reference may have moved
                record.post_id = post_id
        await self.store.save_incidents(entry.members)

    async def _fail_members(
        self, entry: ConsolidatedIncident, error: str, now: datetime,
    ) -> None:
        failed: List[Incident] = []
        for member in entry.members:
            if member.posting.state in (PostingState.PENDING, PostingState.NEEDS_UPDATE):
                self.state_machine.mark_failed(member.posting, error, now)
                failed.append(member)
        await self.store.save_incidents(failed)

    # ═══════════════════════════════════════════════════════════════════════
    # Manual actions
    # ═══════════════════════════════════════════════════════════════════════

    async def retry_incident(self, tenant_id: str, incident_id: str) -> PostingState:
        """Manual retry of a failed incident (and its group). Resets attempts."""
        incident = await self.store.get_incident(tenant_id, incident_id)
        if incident is None:
            raise NotFoundError("Incident", tenant_id=tenant_id, incident_id=incident_id)

        members = (
            await self.store.list_group(tenant_id, incident.group_id)
            if incident.group_id else [incident]
        )
        failed = [m for m in members if m.posting.state == PostingState.FAILED]
        if not failed:
            raise InvalidTransitionError(incident.posting.state.value, "retry")

        state = incident.posting.state
        for member in failed:
            state = self.state_machine.retry(member.posting, manual=True)
        await self.store.save_incidents(failed)
        logger.info(
            "Manual retry of incident %s (%d records)", incident_id, len(failed),
            extra={"tenant_id": tenant_id},
        )
        return state

    async def retry_alert(self, tenant_id: str, alert_id: str) -> PostingState:
        alert = await self.store.get_alert(tenant_id, alert_id)
        if alert is None:
            raise NotFoundError("WeatherAlert", tenant_id=tenant_id, alert_id=alert_id)
        state = self.state_machine.retry(alert.posting, manual=True)
        await self.store.save_alert(alert)
        return state

    async def reset_posting_state(self, tenant_id: str) -> Dict[str, int]:
        """
        Return every active item that was posted, queued for update or failed
        to pending with no post reference. Used after the tenant switches
        pages, since old references point at the previous page.
        """
        incidents = await self.store.list_incidents(tenant_id, status=IncidentStatus.ACTIVE)
        reset_incidents = [
            i for i in incidents
            if i.posting.state != PostingState.PENDING or i.posting.post_id
        ]
        for incident in reset_incidents:
            self.state_machine.reset(incident.posting)
        await self.store.save_incidents(reset_incidents)

        reset_alerts: List[WeatherAlert] = []
        for alert in await self.store.list_alerts(tenant_id, state=AlertState.ACTIVE):
            if alert.posting.state != PostingState.PENDING or alert.posting.post_id:
                self.state_machine.reset(alert.posting)
                await self.store.save_alert(alert)
                reset_alerts.append(alert)

        logger.info(
            "Reset posting state for tenant %s: %d incidents, %d alerts",
            tenant_id, len(reset_incidents), len(reset_alerts),
            extra={"tenant_id": tenant_id},
        )
        return {"incidents": len(reset_incidents), "alerts": len(reset_alerts)}
