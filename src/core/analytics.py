"""
Broadcast Bot — Audience statistics for the /stats command.

Computed on demand from the tracked-user list; nothing is cached.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.data.models import TrackedUser

DAY_MS = 24 * 60 * 60 * 1000


@dataclass
class AudienceStats:
    total_users: int
    connected: int
    inactive: int
    active_last_day: int
    new_last_day: int
    pending_tasks: int


def collect_stats(users: list[TrackedUser], pending_tasks: int, now: int) -> AudienceStats:
    cutoff = now - DAY_MS
    connected = sum(1 for u in users if u.wallet_connected)
    return AudienceStats(
        total_users=len(users),
        connected=connected,
        inactive=len(users) - connected,
        active_last_day=sum(1 for u in users if u.last_activity >= cutoff),
        new_last_day=sum(1 for u in users if u.first_seen >= cutoff),
        pending_tasks=pending_tasks,
    )


def format_stats(stats: AudienceStats) -> str:
    return "\n".join([
        "📊 *Bot statistics*",
        "",
        f"👥 Tracked users: {stats.total_users}",
        f"💼 Wallet connected: {stats.connected}",
        f"💤 Without wallet: {stats.inactive}",
        f"👤 Active (24h): {stats.active_last_day}",
        f"🆕 New (24h): {stats.new_last_day}",
        "",
        f"📅 Pending broadcasts: {stats.pending_tasks}",
    ])
