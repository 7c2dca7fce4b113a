"""
FastAPI routes: social page connection (OAuth callback).

    GET  /api/v1/auth/facebook/callback?code=…&state=…
    POST /api/v1/auth/facebook/select

``state`` is either JSON ``{"tenantId": "...", "slug": "..."}`` or a bare
tenant id. One managed page is connected straight away; several pages
are held in-process and listed (without tokens) until one is selected.

Connecting a different page than before resets the tenant's posting
state, since stored post references point at the old page.
"""

from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query

from backend.feedsync.api.deps import get_publisher, get_store
from backend.feedsync.api.schemas import (
    FacebookCallbackResponse,
    PageSelectionRequest,
    PageSummary,
)
from backend.feedsync.core.errors import NotFoundError, ValidationError
from backend.feedsync.posting.facebook_client import FacebookPage
from backend.feedsync.posting.publisher import Publisher
from backend.feedsync.storage.base import SyncStore
from backend.feedsync.tenants.models import FacebookConnection

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/auth/facebook", tags=["facebook-auth"])

# tenant_id → pages awaiting a selection
_pending_pages: Dict[str, List[FacebookPage]] = {}


def parse_state(state: str) -> str:
    """Tenant id from the OAuth ``state`` parameter."""
    try:
        data = json.loads(state)
    except ValueError:
        return state
    if isinstance(data, dict):
        if data.get("tenantId"):
            return str(data["tenantId"])
        raise ValidationError("Invalid state parameter", field="state")
    return data if isinstance(data, str) else state


async def _connect(
    store: SyncStore,
    publisher: Publisher,
    tenant_id: str,
    page: FacebookPage,
) -> FacebookCallbackResponse:
    tenant = await store.get_tenant(tenant_id)
    if tenant is None:
        raise NotFoundError("Tenant", tenant_id=tenant_id)

    previous = tenant.facebook.page_id if tenant.facebook else None
    tenant.facebook = FacebookConnection(
        page_id=page.page_id,
        page_name=page.name,
        page_token=page.access_token,
    )
    await store.save_tenant(tenant)
    logger.info(
        "Connected page %s (%s) for tenant %s", page.name, page.page_id, tenant.slug,
        extra={"tenant_id": tenant_id},
    )

    reset = None
    if previous and previous != page.page_id:
        reset = await publisher.reset_posting_state(tenant_id)

    return FacebookCallbackResponse(
        status="connected",
        tenant_id=tenant_id,
        page=PageSummary(**page.to_dict()),
        reset=reset,
    )


@router.get("/callback", response_model=FacebookCallbackResponse)
async def facebook_callback(
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_reason: Optional[str] = Query(None),
    store: SyncStore = Depends(get_store),
    publisher: Publisher = Depends(get_publisher),
) -> FacebookCallbackResponse:
    if error:
        logger.warning("Authorization denied: %s (%s)", error, error_reason)
        raise ValidationError("Facebook authorization was denied", reason=error_reason)
    if not code or not state:
        raise ValidationError("Invalid callback parameters")

    tenant_id = parse_state(state)
    if await store.get_tenant(tenant_id) is None:
        raise NotFoundError("Tenant", tenant_id=tenant_id)

    client = publisher.client
    short_lived = await client.exchange_code(code)
    long_lived = await client.get_long_lived_token(short_lived)
    pages = await client.get_user_pages(long_lived)

    if not pages:
        raise ValidationError(
            "No Facebook pages found. An admin role on at least one page is required.",
        )
    if len(pages) == 1:
        return await _connect(store, publisher, tenant_id, pages[0])

    _pending_pages[tenant_id] = pages
    logger.info("Found %d pages for tenant %s, awaiting selection", len(pages), tenant_id)
    return FacebookCallbackResponse(
        status="select_page",
        tenant_id=tenant_id,
        pages=[PageSummary(**p.to_dict()) for p in pages],
    )


@router.post("/select", response_model=FacebookCallbackResponse)
async def select_page(
    request: PageSelectionRequest,
    store: SyncStore = Depends(get_store),
    publisher: Publisher = Depends(get_publisher),
) -> FacebookCallbackResponse:
    pages = _pending_pages.get(request.tenant_id) or []
    page = next((p for p in pages if p.page_id == request.page_id), None)
    if page is None:
        raise NotFoundError("Pending page", tenant_id=request.tenant_id, page_id=request.page_id)
    response = await _connect(store, publisher, request.tenant_id, page)
    _pending_pages.pop(request.tenant_id, None)
    return response
