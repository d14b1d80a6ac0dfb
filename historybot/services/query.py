"""Query façade – the read API used by viewers, commands and the health endpoint."""

from __future__ import annotations

import logging

from historybot.services.reconstructor import reconstruct_history
from historybot.services.records import (
    EntityKey,
    HistoryEntry,
    HistoryExport,
    HistoryStats,
    MediaReference,
)
from historybot.services.snapshot import ContentMessage, Snapshot
from historybot.services.store import ChangeLogStore
from historybot.utils.enums import HistoryAction

logger = logging.getLogger(__name__)


class HistoryQuery:
    """Read-side API over a ``ChangeLogStore``."""

    def __init__(self, store: ChangeLogStore) -> None:
        self._store = store

    def has_any_history(self, chat_id: int, message_id: int) -> bool:
        return self._store.has_any_history(EntityKey(chat_id, message_id))

    def get_log(self, chat_id: int, message_id: int, *, ordered: bool = False) -> list[HistoryEntry]:
        """Entries in recorded order, or sorted by timestamp when *ordered* is set.

        Events may be delivered out of order, so consumers that need strict
        chronology should pass ``ordered=True``.
        """
        entries = self._store.get_log(EntityKey(chat_id, message_id))
        if ordered:
            entries.sort(key=lambda e: e.timestamp)
        return entries

    def get_deletion(self, chat_id: int, message_id: int) -> HistoryEntry | None:
        return self._store.get_deletion(EntityKey(chat_id, message_id))

    def get_media(self, chat_id: int, message_id: int) -> list[MediaReference]:
        return self._store.media_for_message(EntityKey(chat_id, message_id))

    def versions(self, chat_id: int, message_id: int) -> list[Snapshot]:
        """Every distinct version of the message, oldest first (deletions excluded)."""
        return [
            entry.latest_snapshot
            for entry in self.get_log(chat_id, message_id, ordered=True)
            if entry.action != HistoryAction.DELETED and entry.latest_snapshot is not None
        ]

    def search(self, query: str, chat_id: int | None = None) -> list[HistoryEntry]:
        return self._store.search(query, chat_id)

    def export_all(self, chat_id: int | None = None) -> HistoryExport:
        return self._store.export_all(chat_id)

    def stats(self) -> HistoryStats:
        return self._store.stats()

    def ensure_history(self, snapshot: Snapshot) -> list[HistoryEntry]:
        """Make sure a message discovered by a viewer has something to show.

        No-op if the message already has history. Edited content messages get
        a synthetic version sequence, everything else a single ``created`` entry.
        """
        key = EntityKey.of(snapshot)
        if self._store.has_any_history(key):
            return []

        if isinstance(snapshot, ContentMessage) and snapshot.is_edited:
            return reconstruct_history(self._store, snapshot)

        logger.debug("Backfilling created entry for message %d in chat %d", key.message_id, key.chat_id)
        return [self._store.record(key, HistoryAction.CREATED, snapshot_before=snapshot)]
