"""Media references – describe the media attached to a snapshot and fetch its bytes locally."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import TYPE_CHECKING

from aiogram import Bot

from historybot.services.errors import MediaExtractionFailure
from historybot.services.records import MediaReference
from historybot.services.snapshot import ContentMessage, Snapshot
from historybot.utils.enums import MediaKind, MessageType

if TYPE_CHECKING:
    from historybot.services.store import ChangeLogStore

logger = logging.getLogger(__name__)

_DIRECT_KINDS = {
    MessageType.PHOTO: MediaKind.PHOTO,
    MessageType.VIDEO: MediaKind.VIDEO,
    MessageType.ANIMATION: MediaKind.ANIMATION,
    MessageType.AUDIO: MediaKind.AUDIO,
    MessageType.VOICE: MediaKind.VOICE,
    MessageType.VIDEO_NOTE: MediaKind.VIDEO_NOTE,
    MessageType.STICKER: MediaKind.STICKER,
}


def classify_document(mime_type: str | None) -> MediaKind:
    """Guess the media kind of a generic document from its mime type."""
    mime = (mime_type or "").lower()
    if mime == "image/gif":
        return MediaKind.GIF
    if mime.startswith("video/"):
        return MediaKind.VIDEO
    if mime.startswith("audio/"):
        return MediaKind.AUDIO
    return MediaKind.DOCUMENT


def extract_media_reference(snapshot: Snapshot) -> MediaReference | None:
    """Describe the media carried by *snapshot*, or None if it has none.

    Raises ``MediaExtractionFailure`` when the media payload has an unexpected shape.
    """
    if not isinstance(snapshot, ContentMessage) or not snapshot.media:
        return None

    media = snapshot.media
    if not isinstance(media, dict):
        raise MediaExtractionFailure(f"media is {type(media).__name__}, expected a mapping")

    unique_id = media.get("file_unique_id")
    if not unique_id:
        raise MediaExtractionFailure("media has no file_unique_id")

    try:
        media_type = MessageType(media.get("type", snapshot.message_type.value))
    except ValueError as e:
        raise MediaExtractionFailure(f"unknown media type {media.get('type')!r}") from e

    if media_type == MessageType.DOCUMENT:
        kind = classify_document(media.get("mime_type"))
    elif media_type in _DIRECT_KINDS:
        kind = _DIRECT_KINDS[media_type]
    else:
        raise MediaExtractionFailure(f"{media_type.value} cannot carry media")

    return MediaReference(
        id=str(unique_id),
        kind=kind,
        chat_id=snapshot.chat_id,
        message_id=snapshot.message_id,
        file_id=media.get("file_id"),
        size=media.get("file_size"),
        mime_type=media.get("mime_type"),
        filename=media.get("file_name") or (f"file_{unique_id}" if kind == MediaKind.DOCUMENT else None),
    )


class MediaFetcher:
    """Downloads media bytes in the background and flags the reference as stored.

    A failed download only leaves that one reference un-materialized.
    """

    def __init__(self, bot: Bot, media_dir: str | Path) -> None:
        self._bot = bot
        self._media_dir = Path(media_dir)
        self._tasks: set[asyncio.Task] = set()
        self._in_flight: set[str] = set()

    def schedule(self, store: ChangeLogStore, ref: MediaReference) -> None:
        """Fire-and-forget download of *ref*; skipped if stored or already downloading."""
        if ref.is_stored or not ref.file_id or ref.id in self._in_flight:
            return
        self._in_flight.add(ref.id)
        task = asyncio.create_task(self.materialize(store, ref), name=f"media-{ref.id}")
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(t, ref.id))

    def _finished(self, task: asyncio.Task, media_id: str) -> None:
        self._tasks.discard(task)
        self._in_flight.discard(media_id)

    async def materialize(self, store: ChangeLogStore, ref: MediaReference) -> None:
        destination = self._media_dir / ref.id
        try:
            self._media_dir.mkdir(parents=True, exist_ok=True)
            await self._bot.download(ref.file_id, destination=destination)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Failed to download media %s: %s", ref.id, e)
            return

        store.mark_media_stored(ref.id, str(destination), int(time.time()))
        logger.debug("Media %s stored at %s", ref.id, destination)

    async def wait(self) -> None:
        """Wait for in-flight downloads (shutdown, tests)."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
