"""Tracking handlers – feed every new, edited and deleted message into the history intake.

The ``intake`` argument is injected from the dispatcher's workflow data
(``dp["intake"]``), set up in ``app._on_startup``.
"""

from __future__ import annotations

import logging

from aiogram import Router
from aiogram.types import BusinessMessagesDeleted, Message

from historybot.services.intake import (
    MESSAGE_EDITED,
    MESSAGE_SENT,
    MESSAGES_DELETED,
    HistoryIntake,
)
from historybot.services.snapshot import normalize

logger = logging.getLogger(__name__)

tracking_router = Router(name="tracking")


# ── New messages ──────────────────────────────────────────────────────


@tracking_router.message()
async def on_message(message: Message, intake: HistoryIntake) -> None:
    """Track a new message."""
    _handle(intake, MESSAGE_SENT, message)


@tracking_router.channel_post()
async def on_channel_post(message: Message, intake: HistoryIntake) -> None:
    """Track a new channel post."""
    _handle(intake, MESSAGE_SENT, message)


@tracking_router.business_message()
async def on_business_message(message: Message, intake: HistoryIntake) -> None:
    """Track a new message in a connected business chat."""
    _handle(intake, MESSAGE_SENT, message)


# ── Edits ─────────────────────────────────────────────────────────────


@tracking_router.edited_message()
async def on_edited_message(message: Message, intake: HistoryIntake) -> None:
    _handle(intake, MESSAGE_EDITED, message)


@tracking_router.edited_channel_post()
async def on_edited_channel_post(message: Message, intake: HistoryIntake) -> None:
    _handle(intake, MESSAGE_EDITED, message)


@tracking_router.edited_business_message()
async def on_edited_business_message(message: Message, intake: HistoryIntake) -> None:
    _handle(intake, MESSAGE_EDITED, message)


# ── Deletions ─────────────────────────────────────────────────────────


@tracking_router.deleted_business_messages()
async def on_deleted_business_messages(
    event: BusinessMessagesDeleted, intake: HistoryIntake
) -> None:
    """Telegram only reports deletions that removed the messages for everyone."""
    intake.dispatch(
        MESSAGES_DELETED,
        {"peer_id": event.chat.id, "ids": list(event.message_ids), "revoked": True},
    )


def _handle(intake: HistoryIntake, event: str, message: Message) -> None:
    snapshot = normalize(message)
    intake.dispatch(event, {"message": snapshot})
