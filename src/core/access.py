"""Admin identity check used by the command layer."""

from __future__ import annotations

from typing import Iterable


class AdminPolicy:
    """Answers "is this Telegram user an administrator?"."""

    def __init__(self, admin_ids: Iterable[int]) -> None:
        self._admin_ids = frozenset(admin_ids)

    def is_admin(self, user_id: int | None) -> bool:
        return user_id is not None and user_id in self._admin_ids

    @property
    def admin_ids(self) -> frozenset[int]:
        return self._admin_ids
