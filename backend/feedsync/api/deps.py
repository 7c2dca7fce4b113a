"""
Shared route dependencies — service singletons and the cron bearer check.

The lifespan in main.py calls ``init_services()`` once; routes receive the
store, orchestrator and publisher through ``Depends`` so tests can swap
them with ``app.dependency_overrides``.
"""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import Depends, Header

from backend.feedsync.core.config import settings
from backend.feedsync.core.errors import AuthenticationError
from backend.feedsync.posting.publisher import Publisher
from backend.feedsync.storage.base import SyncStore
from backend.feedsync.storage.memory import InMemoryStore
from backend.feedsync.sync.lease import create_lease_manager
from backend.feedsync.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger(__name__)

_store: Optional[SyncStore] = None
_orchestrator: Optional[SyncOrchestrator] = None


def create_store() -> SyncStore:
    """Build the configured backend (``STORAGE_BACKEND``)."""
    if settings.STORAGE_BACKEND == "database":
        from backend.feedsync.storage.sql import SqlStore

        return SqlStore()
    return InMemoryStore()


async def init_services() -> SyncOrchestrator:
    global _store, _orchestrator
    if settings.STORAGE_BACKEND == "database":
        from backend.feedsync.core.database import init_db

        await init_db()
    _store = create_store()
    _orchestrator = SyncOrchestrator(_store, await create_lease_manager())
    logger.info(
        "Services ready (storage=%s, leases=%s)",
        settings.STORAGE_BACKEND, settings.LEASE_BACKEND,
    )
    return _orchestrator


async def close_services() -> None:
    global _store, _orchestrator
    if _orchestrator is not None:
        await _orchestrator.close()
    if _store is not None:
        await _store.close()
    _store = None
    _orchestrator = None


# ── Dependencies ──

def current_store() -> Optional[SyncStore]:
    """The live store, or None before startup (health probes)."""
    return _store


def get_store() -> SyncStore:
    if _store is None:
        raise RuntimeError("Services not initialised")
    return _store


def get_orchestrator() -> SyncOrchestrator:
    if _orchestrator is None:
        raise RuntimeError("Services not initialised")
    return _orchestrator


def get_publisher(orchestrator: SyncOrchestrator = Depends(get_orchestrator)) -> Publisher:
    return orchestrator.publisher


def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """``Authorization: Bearer <CRON_SECRET>``; refused when no secret is set."""
    expected = settings.CRON_SECRET
    if not expected:
        raise AuthenticationError("Cron secret not configured")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token, expected):
        raise AuthenticationError()
