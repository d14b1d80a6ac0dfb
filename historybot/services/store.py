"""Change-log store – append-only per-message history, deletion index and media registry.

The store owns three maps:

- ``"<chat>_<msg>"`` → ordered list of ``HistoryEntry`` (append-only)
- ``"<chat>_<msg>"`` → last ``deleted`` entry, for O(1) "is it gone" checks
- media id → ``MediaReference``

Every mutation persists the whole store through the ``SnapshotWriter``.
Persistence is best effort: failures are logged and the in-memory store stays
authoritative. Callers always get deep copies, never the stored objects.
"""

from __future__ import annotations

import copy
import logging
import time
from typing import Any

from historybot.services.errors import PersistenceFailure
from historybot.services.persistence import (
    SnapshotWriter,
    build_document,
    deserialize,
    parse_document,
    serialize,
)
from historybot.services.records import (
    ChangeSet,
    DeletionMeta,
    EntityKey,
    HistoryEntry,
    HistoryExport,
    HistoryStats,
    MediaReference,
    generate_entry_id,
)
from historybot.services.snapshot import ContentMessage, Snapshot
from historybot.utils.enums import HistoryAction

logger = logging.getLogger(__name__)


class ChangeLogStore:
    """In-memory change-log with write-through persistence."""

    def __init__(self, writer: SnapshotWriter | None = None) -> None:
        self._writer = writer
        self._logs: dict[str, list[HistoryEntry]] = {}
        self._deleted: dict[str, HistoryEntry] = {}
        self._media: dict[str, MediaReference] = {}

    # ── Writes ────────────────────────────────────────────────────────

    def record(
        self,
        key: EntityKey,
        action: HistoryAction,
        *,
        snapshot_before: Snapshot | None = None,
        snapshot_after: Snapshot | None = None,
        changes: ChangeSet | None = None,
        deletion: DeletionMeta | None = None,
        timestamp: int | None = None,
    ) -> HistoryEntry:
        """Append a new entry to the log of *key* and persist the store.

        *timestamp* defaults to now; synthetic history passes its own.
        """
        entry = HistoryEntry(
            id=generate_entry_id(),
            chat_id=key.chat_id,
            message_id=key.message_id,
            action=action,
            timestamp=int(time.time()) if timestamp is None else int(timestamp),
            snapshot_before=copy.deepcopy(snapshot_before),
            snapshot_after=copy.deepcopy(snapshot_after),
            changes=copy.deepcopy(changes),
            deletion=deletion,
        )

        raw_key = str(key)
        self._logs.setdefault(raw_key, []).append(entry)
        if action == HistoryAction.DELETED:
            self._deleted[raw_key] = entry

        self._persist()
        logger.debug(
            "Recorded %s for message %d in chat %d",
            action.value,
            key.message_id,
            key.chat_id,
        )
        return copy.deepcopy(entry)

    def register_media(self, ref: MediaReference) -> MediaReference:
        """Insert or update a media reference.

        Metadata is last-write-wins, but a reference that was already
        materialized stays materialized.
        """
        new = copy.deepcopy(ref)
        existing = self._media.get(ref.id)
        if existing is not None and existing.is_stored and not new.is_stored:
            new.is_stored = True
            new.local_path = new.local_path or existing.local_path
            new.downloaded_at = new.downloaded_at or existing.downloaded_at

        self._media[ref.id] = new
        self._persist()
        return copy.deepcopy(new)

    def mark_media_stored(self, media_id: str, local_path: str, downloaded_at: int) -> bool:
        """Flag a media reference as materialized. Returns False if the id is unknown."""
        ref = self._media.get(media_id)
        if ref is None:
            logger.warning("Cannot mark unknown media %s as stored", media_id)
            return False
        ref.is_stored = True
        ref.local_path = local_path
        ref.downloaded_at = downloaded_at
        self._persist()
        return True

    def clear(self) -> None:
        """Drop everything (session reset)."""
        self._logs = {}
        self._deleted = {}
        self._media = {}
        self._persist()
        logger.info("Message history cleared.")

    # ── Reads ─────────────────────────────────────────────────────────

    def get_log(self, key: EntityKey) -> list[HistoryEntry]:
        return copy.deepcopy(self._logs.get(str(key), []))

    def get_deletion(self, key: EntityKey) -> HistoryEntry | None:
        entry = self._deleted.get(str(key))
        return copy.deepcopy(entry) if entry is not None else None

    def has_any_history(self, key: EntityKey) -> bool:
        raw_key = str(key)
        return bool(self._logs.get(raw_key)) or raw_key in self._deleted

    def latest_snapshot(self, key: EntityKey) -> Snapshot | None:
        """Most recent known version of the message, or None if it has no log."""
        entries = self._logs.get(str(key))
        if not entries:
            return None
        return copy.deepcopy(entries[-1].latest_snapshot)

    def get_media(self, media_id: str) -> MediaReference | None:
        ref = self._media.get(media_id)
        return copy.deepcopy(ref) if ref is not None else None

    def list_media(self, chat_id: int | None = None) -> list[MediaReference]:
        return [
            copy.deepcopy(ref)
            for ref in self._media.values()
            if chat_id is None or ref.chat_id == chat_id
        ]

    def media_for_message(self, key: EntityKey) -> list[MediaReference]:
        return [
            copy.deepcopy(ref)
            for ref in self._media.values()
            if ref.chat_id == key.chat_id and ref.message_id == key.message_id
        ]

    def search(self, query: str, chat_id: int | None = None) -> list[HistoryEntry]:
        """Case-insensitive substring search over every entry's text, newest first."""
        needle = query.casefold()
        results: list[HistoryEntry] = []
        for raw_key, entries in self._logs.items():
            if chat_id is not None and EntityKey.parse(raw_key).chat_id != chat_id:
                continue
            for entry in entries:
                snapshot = entry.latest_snapshot
                if not isinstance(snapshot, ContentMessage) or snapshot.text is None:
                    continue
                if needle in snapshot.text.casefold():
                    results.append(entry)

        results.sort(key=lambda e: e.timestamp, reverse=True)
        return copy.deepcopy(results)

    def export_all(self, chat_id: int | None = None) -> HistoryExport:
        """Copy of the whole store, or only the part belonging to *chat_id*."""

        def wanted(raw_key: str) -> bool:
            return chat_id is None or EntityKey.parse(raw_key).chat_id == chat_id

        return HistoryExport(
            logs={k: copy.deepcopy(v) for k, v in self._logs.items() if wanted(k)},
            deletions={k: copy.deepcopy(v) for k, v in self._deleted.items() if wanted(k)},
            media=self.list_media(chat_id),
        )

    def stats(self) -> HistoryStats:
        edited = sum(
            1
            for entries in self._logs.values()
            if any(e.action == HistoryAction.EDITED for e in entries)
        )
        return HistoryStats(
            total_messages=len(self._logs),
            edited_messages=edited,
            deleted_messages=len(self._deleted),
            stored_media=len(self._media),
        )

    # ── Persistence ───────────────────────────────────────────────────

    def to_document(self) -> dict[str, Any]:
        return build_document(self._logs, self._deleted, self._media)

    def load_document(self, doc: dict[str, Any]) -> None:
        """Replace the store contents with *doc* (raises ``PersistenceFailure`` if malformed)."""
        self._logs, self._deleted, self._media = parse_document(doc)

    async def load(self) -> bool:
        """Restore the store from the writer's backend. Returns True if anything was loaded."""
        if self._writer is None:
            return False
        try:
            payload = await self._writer.backend.load()
            if payload is None:
                logger.info("No stored message history found.")
                return False
            self.load_document(deserialize(payload))
        except PersistenceFailure as e:
            logger.error("Failed to load stored history: %s", e)
            return False
        except Exception as e:
            logger.error("History backend unavailable: %s", e)
            return False

        logger.info("Loaded message history: %d messages.", len(self._logs))
        return True

    def _persist(self) -> None:
        if self._writer is None:
            return
        try:
            payload = serialize(self.to_document())
        except PersistenceFailure as e:
            logger.error("Failed to save history: %s", e)
            return
        self._writer.submit(payload)
