"""
Broadcast Bot — Target Resolver.

Expands an Audience into the concrete chat IDs to deliver to. Always reads
the user directory fresh; the dispatcher snapshots the result.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from src.data.models import Audience, AudienceKind

if TYPE_CHECKING:
    from src.ports.user_directory_port import UserDirectory

logger = logging.getLogger(__name__)


def _dedupe(chat_ids: list[int] | tuple[int, ...]) -> list[int]:
    seen: set[int] = set()
    result: list[int] = []
    for chat_id in chat_ids:
        if chat_id not in seen:
            seen.add(chat_id)
            result.append(chat_id)
    return result


def resolve_audience(audience: Audience, directory: UserDirectory) -> list[int]:
    """Return the deduplicated recipients for ``audience``, in directory order.

    An empty directory yields an empty list.
    """
    if audience.kind is AudienceKind.EXPLICIT:
        recipients = _dedupe(audience.chat_ids)
    elif audience.kind is AudienceKind.ALL:
        recipients = _dedupe(directory.all_chat_ids())
    elif audience.kind is AudienceKind.CONNECTED:
        recipients = _dedupe(directory.connected_chat_ids())
    elif audience.kind is AudienceKind.INACTIVE:
        connected = set(directory.connected_chat_ids())
        recipients = [cid for cid in _dedupe(directory.all_chat_ids()) if cid not in connected]
    else:
        raise ValueError(f"Unknown audience kind: {audience.kind}")

    logger.debug("Resolved %s to %d recipients", audience.describe(), len(recipients))
    return recipients
