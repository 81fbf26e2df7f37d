"""
Broadcast Bot — Command Parser.

Turns the raw argument text of ``/schedule`` into a structured request:

    /schedule <time> [<audience>] <message...>

<time> is relative (``10s``, ``+5m``, ``2h``) or an ISO datetime.
<audience> is optional: ``-all``, ``-connected``/``-active``, ``-inactive``
(bare words work too) or numeric chat IDs, comma-separated. Without it the
broadcast goes to everyone.

Nothing here touches storage; every rejection is a ScheduleInputError.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime
from zoneinfo import ZoneInfo

from pydantic import BaseModel

from src.core.errors import (
    EmptyMessage,
    InvalidTargetList,
    InvalidTimeFormat,
    TimeNotInFuture,
)
from src.data.models import Audience, AudienceKind

logger = logging.getLogger(__name__)

_RELATIVE_RE = re.compile(r"^\+?(\d+)([smh])$", re.IGNORECASE)
# Looks relative but the unit is wrong, e.g. "5d" or "+3x"
_RELATIVE_SHAPE_RE = re.compile(r"^\+?\d+[a-z]+$", re.IGNORECASE)
_UNIT_MS = {"s": 1000, "m": 60 * 1000, "h": 60 * 60 * 1000}
# Any longer amount is past year 9999 in every unit
_MAX_AMOUNT_DIGITS = 15

_AUDIENCE_WORDS = {
    "all": AudienceKind.ALL,
    "connected": AudienceKind.CONNECTED,
    "active": AudienceKind.CONNECTED,
    "inactive": AudienceKind.INACTIVE,
}
# Telegram chat IDs fit in 52 bits
_CHAT_ID_RE = re.compile(r"^-?\d{1,16}$")
_ID_LIST_START_RE = re.compile(r"^-?\d+(,|$)")

TIME_FORMAT_HELP = (
    "Time format: 10s (seconds), 5m (minutes), 2h (hours), "
    "or an ISO datetime like 2026-05-15T20:00"
)


def now_ms() -> int:
    return int(time.time() * 1000)


def latest_instant(tz: ZoneInfo | None = None) -> int:
    """Last epoch-ms instant that still has a calendar date in ``tz``."""
    last = datetime(9999, 12, 31, 23, 59, 59, tzinfo=tz or ZoneInfo("UTC"))
    return int(last.timestamp() * 1000)


class ScheduleRequest(BaseModel):
    """A validated /schedule command, ready to hand to the scheduler."""

    scheduled_time: int   # epoch ms
    audience: Audience
    content: str


def parse_time_spec(
    token: str, now: int | None = None, tz: ZoneInfo | None = None,
) -> int:
    """Convert a time token into an absolute epoch-ms instant after ``now``.

    Raises:
        InvalidTimeFormat: the token is neither a relative spec nor a datetime,
            or it lies beyond the last representable date.
        TimeNotInFuture: the instant is not strictly after ``now``.
    """
    if now is None:
        now = now_ms()
    token = token.strip()
    shown = token if len(token) <= 32 else token[:32] + "..."
    too_far = InvalidTimeFormat(f"Time '{shown}' is too far in the future. {TIME_FORMAT_HELP}")

    match = _RELATIVE_RE.match(token)
    if match:
        if len(match.group(1)) > _MAX_AMOUNT_DIGITS:
            raise too_far
        amount = int(match.group(1))
        scheduled = now + amount * _UNIT_MS[match.group(2).lower()]
    elif _RELATIVE_SHAPE_RE.match(token):
        raise InvalidTimeFormat(f"Unknown time unit in '{shown}'. {TIME_FORMAT_HELP}")
    else:
        try:
            parsed = datetime.fromisoformat(token)
        except ValueError:
            raise InvalidTimeFormat(f"Invalid time '{shown}'. {TIME_FORMAT_HELP}") from None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=tz or ZoneInfo("UTC"))
        scheduled = int(parsed.timestamp() * 1000)

    if scheduled > latest_instant(tz):
        raise too_far
    if scheduled <= now:
        raise TimeNotInFuture("Scheduled time must be in the future.")
    return scheduled


def parse_audience_token(token: str) -> Audience | None:
    """Interpret a token as an audience selector.

    Returns None when the token is ordinary message text.

    Raises:
        InvalidTargetList: the token starts like an ID list but has a bad entry.
    """
    word = token.lower()
    if word.startswith("-") and word[1:] in _AUDIENCE_WORDS:
        return Audience(_AUDIENCE_WORDS[word[1:]])
    if word in _AUDIENCE_WORDS:
        return Audience(_AUDIENCE_WORDS[word])

    if not _ID_LIST_START_RE.match(token):
        return None

    ids: list[int] = []
    for part in token.split(","):
        part = part.strip()
        if not part:
            continue
        if not _CHAT_ID_RE.match(part) or int(part) == 0:
            shown = part if len(part) <= 32 else part[:32] + "..."
            raise InvalidTargetList(
                f"Invalid user ID '{shown}'. Use comma-separated numeric IDs, "
                "e.g. 123456789,987654321"
            )
        chat_id = int(part)
        if chat_id not in ids:
            ids.append(chat_id)
    if not ids:
        raise InvalidTargetList("The user ID list is empty.")
    return Audience(AudienceKind.EXPLICIT, tuple(ids))


def parse_schedule_command(
    args_text: str, now: int | None = None, tz: ZoneInfo | None = None,
) -> ScheduleRequest:
    """Parse everything after ``/schedule``.

    The message keeps its original whitespace and line breaks; only the time
    and audience tokens are split off the front.
    """
    parts = args_text.strip().split(None, 1)
    if not parts:
        raise InvalidTimeFormat(f"Missing time. {TIME_FORMAT_HELP}")

    scheduled_time = parse_time_spec(parts[0], now=now, tz=tz)
    rest = parts[1] if len(parts) > 1 else ""

    audience = Audience(AudienceKind.ALL)
    head = rest.split(None, 1)
    if head:
        selected = parse_audience_token(head[0])
        if selected is not None:
            audience = selected
            rest = head[1] if len(head) > 1 else ""

    content = rest.strip()
    if not content:
        raise EmptyMessage("Please provide a message to send.")

    logger.debug("Parsed /schedule: time=%d audience=%s", scheduled_time, audience.describe())
    return ScheduleRequest(scheduled_time=scheduled_time, audience=audience, content=content)
