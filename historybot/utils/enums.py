"""Enums used across the bot."""

from __future__ import annotations

from enum import Enum


class MessageType(str, Enum):
    TEXT = "TEXT"
    PHOTO = "PHOTO"
    VIDEO = "VIDEO"
    ANIMATION = "ANIMATION"
    AUDIO = "AUDIO"
    DOCUMENT = "DOCUMENT"
    VOICE = "VOICE"
    VIDEO_NOTE = "VIDEO_NOTE"
    STICKER = "STICKER"


class HistoryAction(str, Enum):
    CREATED = "created"
    EDITED = "edited"
    DELETED = "deleted"
    MEDIA_UPDATED = "media_updated"


class MediaKind(str, Enum):
    PHOTO = "photo"
    DOCUMENT = "document"
    VIDEO = "video"
    AUDIO = "audio"
    VOICE = "voice"
    VIDEO_NOTE = "video_note"
    STICKER = "sticker"
    GIF = "gif"
    ANIMATION = "animation"
