"""Shared fixtures for historybot tests."""

from __future__ import annotations

import os
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

# Ensure BOT_TOKEN is set before any historybot module triggers Settings validation
os.environ.setdefault("BOT_TOKEN", "0:TEST_TOKEN")

import pytest

from historybot.services.snapshot import SERVICE_FIELDS, ContentMessage
from historybot.services.store import ChangeLogStore
from historybot.utils.enums import MessageType


@pytest.fixture
def fake_redis():
    """In-memory mock that behaves like redis.asyncio.Redis for the subset we use."""

    store: dict[str, str] = {}

    redis = AsyncMock()

    async def _set(key, value, ex=None, nx=False):
        if nx and key in store:
            return None  # Key already exists
        store[key] = value
        return True

    async def _get(key):
        return store.get(key)

    async def _delete(*keys):
        count = 0
        for k in keys:
            if k in store:
                del store[k]
                count += 1
        return count

    redis.set = AsyncMock(side_effect=_set)
    redis.get = AsyncMock(side_effect=_get)
    redis.delete = AsyncMock(side_effect=_delete)

    redis._store = store  # Expose for assertions
    return redis


@pytest.fixture
def store():
    """A store without persistence."""
    return ChangeLogStore()


@pytest.fixture
def make_snapshot():
    """Factory for ContentMessage snapshots."""

    def _make(
        message_id: int = 5,
        chat_id: int = 100,
        text: str | None = "hi",
        entities=None,
        media=None,
        message_type: MessageType = MessageType.TEXT,
        edit_date: int | None = None,
    ) -> ContentMessage:
        return ContentMessage(
            chat_id=chat_id,
            message_id=message_id,
            message_type=message_type,
            date=1_700_000_000,
            edit_date=edit_date,
            from_user_id=999,
            text=text,
            entities=entities,
            media=media,
        )

    return _make


@pytest.fixture
def make_file():
    """Factory for Telegram file objects (PhotoSize, Video, Document …).

    SimpleNamespace so that attributes a file type does not have read as missing.
    """

    def _make(file_id="file_123", file_unique_id="uniq_file", **attrs):
        return SimpleNamespace(file_id=file_id, file_unique_id=file_unique_id, **attrs)

    return _make


@pytest.fixture
def make_message():
    """Factory to create a mock aiogram Message with desired attributes."""

    def _make(
        message_id: int = 1,
        chat_id: int = 100,
        chat_type: str = "private",
        text: str | None = None,
        photo: list | None = None,
        video=None,
        animation=None,
        audio=None,
        document=None,
        voice=None,
        video_note=None,
        sticker=None,
        caption: str | None = None,
        entities=None,
        caption_entities=None,
        date: int = 1_700_000_000,
        edit_date: int | None = None,
        from_user_id: int | None = 999,
        **service,
    ):
        msg = MagicMock()
        msg.message_id = message_id
        msg.chat = MagicMock()
        msg.chat.id = chat_id
        msg.chat.type = chat_type
        msg.text = text
        msg.photo = photo
        msg.video = video
        msg.animation = animation
        msg.audio = audio
        msg.document = document
        msg.voice = voice
        msg.video_note = video_note
        msg.sticker = sticker
        msg.caption = caption
        msg.entities = entities
        msg.caption_entities = caption_entities
        msg.date = date
        msg.edit_date = edit_date
        if from_user_id is None:
            msg.from_user = None
        else:
            msg.from_user = MagicMock()
            msg.from_user.id = from_user_id

        # Service fields are looked up with getattr; unset means absent
        for name in SERVICE_FIELDS:
            setattr(msg, name, service.get(name))

        return msg

    return _make
