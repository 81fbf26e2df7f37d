"""
Broadcast Bot — Data Models.

Scheduled broadcasts persist in SQLite so pending work survives bot restarts.
Tracked users are every chat that has ever talked to the bot.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class TaskStatus(str, Enum):
    PENDING = "pending"
    DISPATCHING = "dispatching"
    SENT = "sent"
    FAILED = "failed"
    CANCELED = "canceled"


class AudienceKind(str, Enum):
    ALL = "all"
    CONNECTED = "connected"
    INACTIVE = "inactive"
    EXPLICIT = "explicit"


@dataclass(frozen=True)
class Audience:
    """Who a broadcast targets: a symbolic class or an explicit ID list."""

    kind: AudienceKind
    chat_ids: tuple[int, ...] = ()

    def describe(self) -> str:
        if self.kind is AudienceKind.ALL:
            return "all users"
        if self.kind is AudienceKind.CONNECTED:
            return "users with connected wallets"
        if self.kind is AudienceKind.INACTIVE:
            return "users without connected wallets"
        if len(self.chat_ids) == 1:
            return f"specific user (ID: {self.chat_ids[0]})"
        return f"{len(self.chat_ids)} specific users"

    def to_column(self) -> str:
        """Serialize for the tasks table: 'all', 'connected', ... or '1,2,3'."""
        if self.kind is AudienceKind.EXPLICIT:
            return ",".join(str(cid) for cid in self.chat_ids)
        return self.kind.value

    @classmethod
    def from_column(cls, value: str) -> Audience:
        if value in (AudienceKind.ALL.value, AudienceKind.CONNECTED.value,
                     AudienceKind.INACTIVE.value):
            return cls(AudienceKind(value))
        ids = tuple(int(part) for part in value.split(",") if part)
        return cls(AudienceKind.EXPLICIT, ids)


@dataclass
class ScheduledTask:
    """A broadcast message awaiting or having completed dispatch.

    Times are epoch milliseconds. ``sent_time`` is stamped when dispatch
    begins, not when it ends.
    """

    id: str
    content: str
    scheduled_time: int
    audience: Audience
    created_by: int
    status: TaskStatus = TaskStatus.PENDING
    parse_mode: str | None = "Markdown"
    created_at: int = 0
    sent_time: int | None = None
    error_summary: str | None = None
    recipient_count: int | None = None   # None until the audience snapshot is taken
    success_count: int = 0
    failure_count: int = 0

    def preview(self, limit: int) -> str:
        if len(self.content) <= limit:
            return self.content
        return self.content[:limit] + "..."


@dataclass
class TrackedUser:
    """A chat that has interacted with the bot at least once."""

    chat_id: int
    first_seen: int
    last_activity: int
    display_name: str | None = None
    username: str | None = None
    wallet_connected: bool = field(default=False)
    wallet_address: str | None = None
