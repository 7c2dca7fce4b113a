"""
state_machine.py — Posting lifecycle transitions.

Every transition on a PostingRecord goes through PostingStateMachine so
the invariants in posting/models.py hold at all times:

    Action                 From                    To
    ─────────────────────  ──────────────────────  ──────────────────────
    mark_published         pending                 posted
    mark_updated           needs_update            posted
    mark_failed            pending, needs_update   failed
    flag_content_change    posted                  needs_update
                           failed (with post_id)   failed, needs_repost set
                           pending, needs_update   unchanged
    retry                  failed                  needs_update if post_id
                                                   else pending
    reset                  any                     pending (reference dropped)
    adopt_group_post       pending                 needs_update

Illegal transitions raise InvalidTransitionError. Callers in the publish
loop catch nothing here; a raise means the loop itself is wrong.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from backend.feedsync.core.config import settings
from backend.feedsync.core.errors import InvalidTransitionError
from backend.feedsync.posting.models import PostingRecord, PostingState


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PostingStateMachine:
    """
    Stateless transition helper; the record carries all the state.

    Parameters
    ----------
    max_attempts : int
        Failed attempts after which scheduled retries stop. Manual retries
        are always allowed and reset the counter.
    """

    def __init__(self, max_attempts: Optional[int] = None):
        self.max_attempts = max_attempts or settings.MAX_SYNC_ATTEMPTS

    # ── Publication outcomes ──

    def mark_published(
        self, record: PostingRecord, post_id: str, now: Optional[datetime] = None,
    ) -> None:
        if record.state != PostingState.PENDING:
            raise InvalidTransitionError(record.state.value, "publish")
        if not post_id:
            raise ValueError("post_id is required to mark an item published")
        now = now or _now()
        record.state = PostingState.POSTED
        record.post_id = post_id
        record.needs_repost = False
        record.error = None
        record.attempts = 0
        record.last_attempt_at = now
        record.posted_at = now

    def mark_updated(
        self,
        record: PostingRecord,
        post_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Update call succeeded; ``post_id`` replaces the reference when the
        update fell back to a fresh post."""
        if record.state != PostingState.NEEDS_UPDATE:
            raise InvalidTransitionError(record.state.value, "update")
        now = now or _now()
        record.state = PostingState.POSTED
        if post_id:
            record.post_id = post_id
        record.needs_repost = False
        record.error = None
        record.attempts = 0
        record.last_attempt_at = now
        record.posted_at = now

    def mark_failed(
        self, record: PostingRecord, error: str, now: Optional[datetime] = None,
    ) -> None:
        if record.state not in (PostingState.PENDING, PostingState.NEEDS_UPDATE):
            raise InvalidTransitionError(record.state.value, "fail")
        if not error or not error.strip():
            raise ValueError("a failed item must carry a non-empty error")
        record.state = PostingState.FAILED
        record.error = error
        record.attempts += 1
        record.last_attempt_at = now or _now()

    # ── Content changes ──

    def flag_content_change(self, record: PostingRecord) -> bool:
        """
        Record that published content is stale.

        Returns True when the record moved to needs_update.
        """
        if record.state == PostingState.POSTED:
            record.state = PostingState.NEEDS_UPDATE
            record.needs_repost = True
            return True
        if record.state == PostingState.FAILED and record.post_id:
            record.needs_repost = True
        return False

    def adopt_group_post(self, record: PostingRecord, post_id: str) -> None:
        """A new group member shares the group's existing post."""
        if record.state != PostingState.PENDING:
            raise InvalidTransitionError(record.state.value, "adopt group post")
        record.post_id = post_id
        record.needs_repost = True
        record.state = PostingState.NEEDS_UPDATE

    # ── Recovery ──

    def can_retry(self, record: PostingRecord) -> bool:
        return record.state == PostingState.FAILED and record.attempts < self.max_attempts

    def retry(self, record: PostingRecord, *, manual: bool = False) -> PostingState:
        """
        Move a failed item back into the publish queue.

        Scheduled retries stop once ``max_attempts`` is reached; a manual
        retry always proceeds and clears the attempt counter.
        """
        if record.state != PostingState.FAILED:
            raise InvalidTransitionError(record.state.value, "retry")
        if not manual and record.attempts >= self.max_attempts:
            raise InvalidTransitionError(record.state.value, "retry (attempts exhausted)")
        if manual:
            record.attempts = 0
        record.error = None
        if record.post_id:
            record.state = PostingState.NEEDS_UPDATE
            record.needs_repost = True
        else:
            record.state = PostingState.PENDING
        return record.state

    def reset(self, record: PostingRecord) -> None:
        """Forget the publication entirely (page switched or disconnected)."""
        record.state = PostingState.PENDING
        record.post_id = None
        record.needs_repost = False
        record.error = None
        record.attempts = 0
        record.posted_at = None
