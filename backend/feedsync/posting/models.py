"""
models.py — Publication lifecycle record shared by incidents and alerts.

═══════════════════════════════════════════════════════════════════════════
POSTING STATES
═══════════════════════════════════════════════════════════════════════════

    pending ──publish ok──▶ posted ──content change──▶ needs_update
       │                      ▲                             │
       │                      └────────update ok────────────┘
       │                                                    │
       └──call failed──▶ failed ◀────────call failed────────┘
                           │
                           └──retry──▶ pending        (no post reference)
                                       needs_update   (post reference held)

Invariants:
    • failed  ⇒ error is a non-empty string
    • posted  ⇒ post_id is not None
    • needs_update ⇒ post_id is not None

Advancement order (used to pick a consolidated group's effective state,
the least-advanced member wins):

    failed < pending < needs_update < posted
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class PostingState(str, Enum):
    """Social-publication lifecycle state."""
    PENDING      = "pending"
    POSTED       = "posted"
    NEEDS_UPDATE = "needs_update"
    FAILED       = "failed"


STATE_RANK: Dict[PostingState, int] = {
    PostingState.FAILED:       0,
    PostingState.PENDING:      1,
    PostingState.NEEDS_UPDATE: 2,
    PostingState.POSTED:       3,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PostingRecord:
    """
    Sync metadata attached to a postable item.

    Attributes
    ----------
    state : PostingState
    post_id : str | None
        External post reference returned by the social platform.
    needs_repost : bool
        Content changed after publication; survives a failed update so a
        retry lands back in needs_update.
    error : str | None
        Last failure message (always set while state is failed).
    attempts : int
        Failed publish/update attempts since the last success.
    last_attempt_at : datetime | None
    posted_at : datetime | None
        Time of the last successful publish or update.
    """
    state: PostingState = PostingState.PENDING
    post_id: Optional[str] = None
    needs_repost: bool = False
    error: Optional[str] = None
    attempts: int = 0
    last_attempt_at: Optional[datetime] = None
    posted_at: Optional[datetime] = None

    @property
    def is_posted(self) -> bool:
        return self.post_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "is_posted": self.is_posted,
            "post_id": self.post_id,
            "needs_repost": self.needs_repost,
            "sync_error": self.error,
            "sync_attempts": self.attempts,
            "last_sync_attempt": (
                self.last_attempt_at.isoformat() if self.last_attempt_at else None
            ),
            "posted_at": self.posted_at.isoformat() if self.posted_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PostingRecord":
        return cls(
            state=PostingState(data.get("state", PostingState.PENDING.value)),
            post_id=data.get("post_id"),
            needs_repost=bool(data.get("needs_repost", False)),
            error=data.get("sync_error"),
            attempts=int(data.get("sync_attempts", 0)),
            last_attempt_at=_parse_dt(data.get("last_sync_attempt")),
            posted_at=_parse_dt(data.get("posted_at")),
        )


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None
