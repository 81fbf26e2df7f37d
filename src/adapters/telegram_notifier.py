"""Telegram notification adapter — implements NotificationPort.

Wraps a telegram.Bot instance to satisfy the NotificationPort protocol.
When Telegram rejects a message because its Markdown/HTML doesn't parse, the
message is resent once as plain text.
"""

from __future__ import annotations

import logging

from telegram import Bot
from telegram.error import BadRequest

logger = logging.getLogger(__name__)

FORMATTING_REMOVED_NOTE = "\n\n(Note: Some formatting was removed due to technical issues)"


def _is_entity_parse_error(exc: BadRequest) -> bool:
    return "parse entities" in str(exc).lower()


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(
        self, user_id: int, text: str, parse_mode: str | None = None,
    ) -> None:
        try:
            await self._bot.send_message(chat_id=user_id, text=text, parse_mode=parse_mode)
        except BadRequest as exc:
            if parse_mode is None or not _is_entity_parse_error(exc):
                raise
            logger.warning(
                "Formatting rejected for chat %d (%s); resending as plain text",
                user_id, exc,
            )
            await self._bot.send_message(chat_id=user_id, text=text + FORMATTING_REMOVED_NOTE)
