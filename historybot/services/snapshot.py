"""Message snapshots – a serializable, aiogram-free copy of a message at one point in time.

A snapshot is either a ``ContentMessage`` (text / caption / media that can be
diffed) or a ``ServiceMessage`` (joins, pins, title changes …). The ``kind``
tag survives serialization so stored history can be matched on it later.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Union

from aiogram.types import Message, MessageEntity

from historybot.utils.enums import MessageType

logger = logging.getLogger(__name__)

CONTENT = "content"
SERVICE = "service"

# Checked in order; the first one present names the service action.
SERVICE_FIELDS = (
    "new_chat_members",
    "left_chat_member",
    "new_chat_title",
    "new_chat_photo",
    "delete_chat_photo",
    "group_chat_created",
    "supergroup_chat_created",
    "channel_chat_created",
    "pinned_message",
    "migrate_to_chat_id",
    "migrate_from_chat_id",
)


@dataclass
class ContentMessage:
    """A message whose text, entities and media can be compared across versions."""

    chat_id: int
    message_id: int
    message_type: MessageType = MessageType.TEXT
    date: int | None = None
    edit_date: int | None = None
    from_user_id: int | None = None

    # Text body (``text`` for plain messages, ``caption`` for media)
    text: str | None = None
    entities: list[dict[str, Any]] | None = None

    # Media payload, see ``_media_dict``
    media: dict[str, Any] | None = None

    kind: str = field(default=CONTENT, init=False)

    @property
    def is_edited(self) -> bool:
        return self.edit_date is not None


@dataclass
class ServiceMessage:
    """A message with no user content (member joined, chat renamed …)."""

    chat_id: int
    message_id: int
    action: str = "unknown"
    date: int | None = None
    edit_date: int | None = None
    from_user_id: int | None = None

    kind: str = field(default=SERVICE, init=False)

    @property
    def is_edited(self) -> bool:
        return self.edit_date is not None


Snapshot = Union[ContentMessage, ServiceMessage]


# ── Serialization ─────────────────────────────────────────────────────


def snapshot_to_dict(snapshot: Snapshot) -> dict[str, Any]:
    """Serialize a snapshot to a JSON-compatible dict (keeps the ``kind`` tag)."""
    d = asdict(snapshot)
    if isinstance(snapshot, ContentMessage):
        d["message_type"] = snapshot.message_type.value
    return d


def snapshot_from_dict(data: dict[str, Any]) -> Snapshot:
    """Inverse of ``snapshot_to_dict``."""
    data = dict(data)
    kind = data.pop("kind", CONTENT)
    if kind == SERVICE:
        return ServiceMessage(**data)
    if kind != CONTENT:
        raise ValueError(f"Unknown snapshot kind: {kind!r}")
    data["message_type"] = MessageType(data.get("message_type", MessageType.TEXT.value))
    return ContentMessage(**data)


# ── aiogram → snapshot ────────────────────────────────────────────────


def _timestamp(value: datetime | int | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return int(value.timestamp())
    return int(value)


def _entities_to_dicts(entities: list[MessageEntity] | None) -> list[dict[str, Any]] | None:
    """Convert MessageEntity list to serializable dicts."""
    if not entities:
        return None
    result = []
    for e in entities:
        d: dict[str, Any] = {
            "type": e.type,
            "offset": e.offset,
            "length": e.length,
        }
        if e.url:
            d["url"] = e.url
        if e.user:
            d["user"] = {"id": e.user.id, "is_bot": e.user.is_bot, "first_name": e.user.first_name}
        if e.language:
            d["language"] = e.language
        if e.custom_emoji_id:
            d["custom_emoji_id"] = e.custom_emoji_id
        result.append(d)
    return result


def _media_dict(media_type: MessageType, obj: Any, **extra: Any) -> dict[str, Any]:
    """Describe a Telegram file object; ``None`` values are dropped so equality stays structural."""
    d: dict[str, Any] = {
        "type": media_type.value,
        "file_id": obj.file_id,
        "file_unique_id": obj.file_unique_id,
        "file_size": getattr(obj, "file_size", None),
        "mime_type": getattr(obj, "mime_type", None),
        "file_name": getattr(obj, "file_name", None),
    }
    d.update(extra)
    return {k: v for k, v in d.items() if v is not None}


def _extract_media(message: Message) -> tuple[MessageType, dict[str, Any]] | None:
    if message.photo:
        largest = max(message.photo, key=lambda p: p.file_size or 0)
        return MessageType.PHOTO, _media_dict(
            MessageType.PHOTO, largest, width=largest.width, height=largest.height
        )

    if message.video:
        v = message.video
        return MessageType.VIDEO, _media_dict(
            MessageType.VIDEO, v, duration=v.duration, width=v.width, height=v.height
        )

    if message.animation:
        a = message.animation
        return MessageType.ANIMATION, _media_dict(
            MessageType.ANIMATION, a, duration=a.duration, width=a.width, height=a.height
        )

    if message.audio:
        au = message.audio
        return MessageType.AUDIO, _media_dict(
            MessageType.AUDIO, au, duration=au.duration, performer=au.performer, title=au.title
        )

    if message.document:
        return MessageType.DOCUMENT, _media_dict(MessageType.DOCUMENT, message.document)

    if message.voice:
        vo = message.voice
        return MessageType.VOICE, _media_dict(MessageType.VOICE, vo, duration=vo.duration)

    if message.video_note:
        vn = message.video_note
        return MessageType.VIDEO_NOTE, _media_dict(
            MessageType.VIDEO_NOTE, vn, duration=vn.duration, length=vn.length
        )

    if message.sticker:
        st = message.sticker
        return MessageType.STICKER, _media_dict(
            MessageType.STICKER, st, emoji=st.emoji, width=st.width, height=st.height
        )

    return None


def normalize(message: Message) -> Snapshot:
    """Build a snapshot from an incoming aiogram Message.

    Messages with text or a supported media type become ``ContentMessage``;
    everything else is recorded as a ``ServiceMessage``.
    """
    base = dict(
        chat_id=message.chat.id,
        message_id=message.message_id,
        date=_timestamp(message.date),
        edit_date=_timestamp(message.edit_date),
        from_user_id=message.from_user.id if message.from_user else None,
    )

    # ── Text ──────────────────────────────────────────────────────────
    if message.text:
        return ContentMessage(
            message_type=MessageType.TEXT,
            text=message.text,
            entities=_entities_to_dicts(message.entities),
            **base,
        )

    # ── Media (caption is the text body) ──────────────────────────────
    extracted = _extract_media(message)
    if extracted is not None:
        message_type, media = extracted
        return ContentMessage(
            message_type=message_type,
            text=message.caption,
            entities=_entities_to_dicts(message.caption_entities),
            media=media,
            **base,
        )

    # ── Service / unsupported ─────────────────────────────────────────
    action = next(
        (name for name in SERVICE_FIELDS if getattr(message, name, None)),
        "unknown",
    )
    logger.debug(
        "Message %d in chat %d has no content, recording as service (%s)",
        message.message_id,
        message.chat.id,
        action,
    )
    return ServiceMessage(action=action, **base)
