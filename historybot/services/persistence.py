"""History persistence – document codec, storage backends and the ordered background writer.

The whole store is persisted as one JSON document::

    {"history": {"<chat>_<msg>": [entry, …]},
     "deleted": {"<chat>_<msg>": entry},
     "media":   {"<media id>": reference}}

Writes go through ``SnapshotWriter``: callers enqueue a serialized document and
return immediately; a single worker saves them in the order they were queued.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from historybot.db.repositories.history_repo import HistoryDocumentRepo
from historybot.services.errors import PersistenceFailure
from historybot.services.records import HistoryEntry, MediaReference

logger = logging.getLogger(__name__)

DEFAULT_REDIS_KEY = "history:document"
DEFAULT_DOCUMENT_NAME = "message_history"


# ── Document codec ────────────────────────────────────────────────────


def build_document(
    logs: dict[str, list[HistoryEntry]],
    deletions: dict[str, HistoryEntry],
    media: dict[str, MediaReference],
) -> dict[str, Any]:
    return {
        "history": {key: [e.to_dict() for e in entries] for key, entries in logs.items()},
        "deleted": {key: entry.to_dict() for key, entry in deletions.items()},
        "media": {media_id: ref.to_dict() for media_id, ref in media.items()},
    }


def parse_document(
    doc: dict[str, Any],
) -> tuple[dict[str, list[HistoryEntry]], dict[str, HistoryEntry], dict[str, MediaReference]]:
    """Inverse of ``build_document``. Missing sections are treated as empty."""
    try:
        logs = {
            key: [HistoryEntry.from_dict(e) for e in entries]
            for key, entries in (doc.get("history") or {}).items()
        }
        deletions = {
            key: HistoryEntry.from_dict(e) for key, e in (doc.get("deleted") or {}).items()
        }
        media = {
            media_id: MediaReference.from_dict(ref)
            for media_id, ref in (doc.get("media") or {}).items()
        }
    except (KeyError, TypeError, ValueError) as e:
        raise PersistenceFailure(f"Malformed history document: {e}") from e
    return logs, deletions, media


def serialize(doc: dict[str, Any]) -> str:
    try:
        return json.dumps(doc, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise PersistenceFailure(f"Cannot serialize history: {e}") from e


def deserialize(payload: str | bytes) -> dict[str, Any]:
    try:
        doc = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise PersistenceFailure(f"Cannot parse stored history: {e}") from e
    if not isinstance(doc, dict):
        raise PersistenceFailure("Stored history is not a mapping")
    return doc


# ── Backends ──────────────────────────────────────────────────────────


class HistoryBackend(Protocol):
    """Durable storage for the serialized history document."""

    async def load(self) -> str | None: ...

    async def save(self, payload: str) -> None: ...


class MemoryBackend:
    """Keeps the document in process memory (tests, ephemeral runs)."""

    def __init__(self, payload: str | None = None) -> None:
        self.payload = payload
        self.saves = 0

    async def load(self) -> str | None:
        return self.payload

    async def save(self, payload: str) -> None:
        self.payload = payload
        self.saves += 1


class RedisBackend:
    """Stores the document as a single Redis string."""

    def __init__(self, redis: aioredis.Redis, key: str = DEFAULT_REDIS_KEY) -> None:
        self._redis = redis
        self._key = key

    async def load(self) -> str | None:
        raw = await self._redis.get(self._key)
        if isinstance(raw, bytes):
            return raw.decode("utf-8")
        return raw

    async def save(self, payload: str) -> None:
        await self._redis.set(self._key, payload)


class DatabaseBackend:
    """Stores the document as one row of the ``history_documents`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        name: str = DEFAULT_DOCUMENT_NAME,
    ) -> None:
        self._session_factory = session_factory
        self._name = name

    async def load(self) -> str | None:
        async with self._session_factory() as session:
            return await HistoryDocumentRepo(session).get_payload(self._name)

    async def save(self, payload: str) -> None:
        async with self._session_factory() as session:
            await HistoryDocumentRepo(session).save_payload(self._name, payload)


# ── Ordered background writer ─────────────────────────────────────────


class SnapshotWriter:
    """Single-worker queue that saves serialized documents in submission order."""

    def __init__(self, backend: HistoryBackend) -> None:
        self.backend = backend
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    def submit(self, payload: str) -> None:
        """Queue *payload* for writing; never blocks."""
        self._queue.put_nowait(payload)

    async def start(self) -> None:
        """Start the writer task."""
        self._task = asyncio.create_task(self._loop(), name="history-writer")
        logger.info("History writer started (%s).", type(self.backend).__name__)

    async def stop(self) -> None:
        """Write everything still queued, then stop."""
        if self._task is None:
            return
        await self._queue.put(None)  # Poison pill
        await self._task
        self._task = None
        logger.info("History writer stopped.")

    async def flush(self) -> None:
        """Wait until every queued document has been written."""
        await self._queue.join()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _loop(self) -> None:
        while True:
            payload = await self._queue.get()
            try:
                if payload is None:
                    break
                await self.backend.save(payload)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("History write failed: %s", e)
            finally:
                self._queue.task_done()
