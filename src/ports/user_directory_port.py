"""User directory port — read-only view of the user-tracking store.

The broadcast core resolves audiences through this protocol and never writes
to the store. TrackedUserDB satisfies it.
"""

from __future__ import annotations

from typing import Protocol


class UserDirectory(Protocol):
    """Audience queries used by the target resolver."""

    def all_chat_ids(self) -> list[int]: ...

    def connected_chat_ids(self) -> list[int]: ...
