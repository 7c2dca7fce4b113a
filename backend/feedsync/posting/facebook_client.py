"""
facebook_client.py — Graph API calls used by the publisher and OAuth callback.

Publishing:

    POST {graph}/{page_id}/feed     {"message", "access_token"}  → {"id"}
    POST {graph}/{post_id}          {"message", "access_token"}  → {"success"}

The platform often refuses edits on older posts, so ``update_or_repost``
falls back to a fresh post and hands back the new id.

OAuth (authorization code → short-lived → long-lived → page tokens):

    GET {graph}/oauth/access_token?client_id&client_secret&redirect_uri&code
    GET {graph}/oauth/access_token?grant_type=fb_exchange_token&...
    GET {graph}/me/accounts?fields=id,name,access_token

Page tokens are only read here; refreshing them is someone else's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from backend.feedsync.core.config import settings
from backend.feedsync.core.errors import ExternalServiceError, PublishError

logger = logging.getLogger(__name__)

SERVICE_NAME = "facebook"


@dataclass
class FacebookPage:
    page_id: str
    name: str
    access_token: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.page_id, "name": self.name}


@dataclass
class UpdateOutcome:
    """Result of an edit attempt. ``new_post_id`` is set when it fell back."""
    post_id: str
    new_post_id: Optional[str] = None

    @property
    def reposted(self) -> bool:
        return self.new_post_id is not None


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:300]
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        return str(body["error"].get("message") or body["error"])
    return str(body)[:300]


class FacebookClient:
    """
    Async Graph API client.

    Usage:
        client = FacebookClient()
        post_id = await client.publish(page_id, page_token, "hello")
        await client.close()
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.facebook_graph_base).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.FACEBOOK_TIMEOUT
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    # ── Publishing ──

    async def _post_message(self, path: str, token: str, message: str) -> Dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.post(
                f"{self.base_url}/{path}",
                json={"message": message, "access_token": token},
            )
        except httpx.TimeoutException as e:
            raise PublishError(f"Timed out calling {path}") from e
        except httpx.HTTPError as e:
            raise PublishError(f"Network error calling {path}: {e}") from e

        if response.is_error:
            raise PublishError(
                f"Post rejected ({response.status_code}): {_error_text(response)}",
                status=response.status_code,
            )
        try:
            return response.json()
        except ValueError as e:
            raise PublishError(f"Invalid response body from {path}") from e

    async def publish(self, page_id: str, token: str, message: str) -> str:
        """Create a page post and return its id. Raises PublishError."""
        body = await self._post_message(f"{page_id}/feed", token, message)
        post_id = body.get("id") if isinstance(body, dict) else None
        if not post_id:
            raise PublishError("Post accepted but no id returned")
        logger.info("Published post %s to page %s", post_id, page_id, extra={"post_id": post_id})
        return str(post_id)

    async def update(self, post_id: str, token: str, message: str) -> None:
        """Edit an existing post in place. Raises PublishError."""
        await self._post_message(post_id, token, message)
        logger.info("Updated post %s", post_id, extra={"post_id": post_id})

    async def update_or_repost(
        self, page_id: str, post_id: str, token: str, message: str,
    ) -> UpdateOutcome:
        """
        Edit ``post_id``; when the edit is refused, publish a new post.

        Raises PublishError only when both calls fail.
        """
        try:
            await self.update(post_id, token, message)
            return UpdateOutcome(post_id=post_id)
        except PublishError as e:
            logger.info(
                "Edit of post %s refused, creating a new post: %s", post_id, e.message,
                extra={"post_id": post_id},
            )
            try:
                new_id = await self.publish(page_id, token, message)
            except PublishError as fallback:
                raise PublishError(
                    f"Update failed and fallback also failed. Original error: {e.message}",
                    status=fallback.details.get("remote_status"),
                ) from fallback
            return UpdateOutcome(post_id=post_id, new_post_id=new_id)

    # ── OAuth ──

    async def _get_json(self, path: str, params: Dict[str, str], what: str) -> Dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.get(f"{self.base_url}/{path}", params=params)
        except httpx.HTTPError as e:
            raise ExternalServiceError(SERVICE_NAME, f"{what}: {e}") from e
        if response.is_error:
            logger.error("%s failed: %s", what, _error_text(response))
            raise ExternalServiceError(
                SERVICE_NAME, f"{what} failed", status=response.status_code,
            )
        return response.json()

    async def exchange_code(self, code: str, redirect_uri: Optional[str] = None) -> str:
        """Authorization code → short-lived user token."""
        data = await self._get_json(
            "oauth/access_token",
            {
                "client_id": settings.FACEBOOK_APP_ID or "",
                "client_secret": settings.FACEBOOK_APP_SECRET or "",
                "redirect_uri": redirect_uri or settings.FACEBOOK_REDIRECT_URI,
                "code": code,
            },
            "Token exchange",
        )
        return data["access_token"]

    async def get_long_lived_token(self, short_lived_token: str) -> str:
        data = await self._get_json(
            "oauth/access_token",
            {
                "grant_type": "fb_exchange_token",
                "client_id": settings.FACEBOOK_APP_ID or "",
                "client_secret": settings.FACEBOOK_APP_SECRET or "",
                "fb_exchange_token": short_lived_token,
            },
            "Long-lived token exchange",
        )
        return data["access_token"]

    async def get_user_pages(self, user_token: str) -> List[FacebookPage]:
        """Pages the user manages, each with its own page token."""
        data = await self._get_json(
            "me/accounts",
            {"access_token": user_token, "fields": "id,name,access_token"},
            "Get pages",
        )
        return [
            FacebookPage(
                page_id=str(p["id"]),
                name=p.get("name") or "",
                access_token=p.get("access_token") or "",
            )
            for p in data.get("data") or []
            if p.get("id")
        ]
