"""Logging middleware – structured logging per update."""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

from aiogram import BaseMiddleware
from aiogram.types import TelegramObject, Update

logger = logging.getLogger("historybot.updates")

# Update fields that carry a chat, in the order they are checked.
_CHAT_UPDATES = (
    "message",
    "edited_message",
    "channel_post",
    "edited_channel_post",
    "business_message",
    "edited_business_message",
    "deleted_business_messages",
)


def describe_update(update: Update | None) -> tuple[str, int | None]:
    """Return (update type, chat id) for logging."""
    if update is None:
        return "unknown", None
    for name in _CHAT_UPDATES:
        payload = getattr(update, name, None)
        if payload is not None:
            return name, payload.chat.id
    return "other", None


class LoggingMiddleware(BaseMiddleware):
    """Log each update with timing and basic metadata."""

    async def __call__(
        self,
        handler: Callable[[TelegramObject, dict[str, Any]], Awaitable[Any]],
        event: TelegramObject,
        data: dict[str, Any],
    ) -> Any:
        start = time.perf_counter()

        update: Update | None = data.get("event_update")
        if isinstance(event, Update):
            update = event
        update_type, chat_id = describe_update(update)

        try:
            result = await handler(event, data)
            elapsed = (time.perf_counter() - start) * 1000
            logger.info(
                "update=%s chat=%s elapsed=%.1fms",
                update_type,
                chat_id,
                elapsed,
            )
            return result
        except Exception as e:
            elapsed = (time.perf_counter() - start) * 1000
            logger.error(
                "update=%s chat=%s elapsed=%.1fms error=%s",
                update_type,
                chat_id,
                elapsed,
                e,
            )
            raise
