"""
Pydantic schemas for the sync API.

Separated from the route handlers so they are reusable across the
routers and tests. Most read endpoints return the domain objects'
``to_dict()`` output directly; these models cover request bodies and the
small fixed-shape responses.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class SyncRequest(BaseModel):
    """Body for cron and manual sync triggers (optional)."""
    force: bool = Field(
        False,
        description="Ignore the minimum interval between passes",
    )


class ManualSyncRequest(SyncRequest):
    force: bool = Field(True, description="Manual passes skip the interval check by default")
    incidents: bool = Field(True, description="Run the incident feed step")
    weather: bool = Field(True, description="Run the weather feed step")


class PageSelectionRequest(BaseModel):
    """Pick one page after a callback that returned several."""
    tenant_id: str = Field(..., examples=["t1"])
    page_id: str = Field(..., examples=["1234567890"])


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class RetryResponse(BaseModel):
    id: str
    state: str


class ResetResponse(BaseModel):
    tenant_id: str
    incidents: int
    alerts: int


class PageSummary(BaseModel):
    id: str
    name: str


class FacebookCallbackResponse(BaseModel):
    status: str = Field(..., description="connected | select_page")
    tenant_id: str
    page: Optional[PageSummary] = None
    pages: List[PageSummary] = Field(default_factory=list)
    reset: Optional[Dict[str, int]] = None


class PostingQueueResponse(BaseModel):
    tenant_id: str
    queue: str
    incidents: List[Dict[str, Any]]
    alerts: List[Dict[str, Any]]
