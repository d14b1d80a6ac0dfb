"""Event intake – turns message lifecycle notifications into change-log entries.

Notifications arrive one at a time from the host's event bus:

- ``message-sent``      ``{"message": Snapshot}``
- ``message-edited``    ``{"message": Snapshot}``
- ``messages-deleted``  ``{"peer_id": int, "ids": [int, …], "revoked": bool}``

A malformed notification is logged and dropped; it never stops the stream.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from historybot.services.diff import detect
from historybot.services.errors import MalformedNotification, MediaExtractionFailure
from historybot.services.media import MediaFetcher, extract_media_reference
from historybot.services.records import DeletionMeta, EntityKey, HistoryEntry
from historybot.services.snapshot import ContentMessage, ServiceMessage, Snapshot
from historybot.services.store import ChangeLogStore
from historybot.utils.enums import HistoryAction

logger = logging.getLogger(__name__)

MESSAGE_SENT = "message-sent"
MESSAGE_EDITED = "message-edited"
MESSAGES_DELETED = "messages-deleted"


def _require_snapshot(payload: Any) -> Snapshot:
    if not isinstance(payload, Mapping):
        raise MalformedNotification(f"payload is {type(payload).__name__}, expected a mapping")
    snapshot = payload.get("message")
    if snapshot is None:
        raise MalformedNotification("missing 'message'")
    if not isinstance(snapshot, (ContentMessage, ServiceMessage)):
        raise MalformedNotification(f"'message' is {type(snapshot).__name__}, expected a snapshot")
    if not isinstance(snapshot.chat_id, int) or not isinstance(snapshot.message_id, int):
        raise MalformedNotification("snapshot has no chat_id/message_id")
    return snapshot


def _require_deletion(payload: Any) -> tuple[int, list[int], bool]:
    if not isinstance(payload, Mapping):
        raise MalformedNotification(f"payload is {type(payload).__name__}, expected a mapping")
    peer_id = payload.get("peer_id")
    ids = payload.get("ids")
    if not isinstance(peer_id, int):
        raise MalformedNotification("missing 'peer_id'")
    if not isinstance(ids, (list, tuple)) or not all(isinstance(i, int) for i in ids):
        raise MalformedNotification("'ids' must be a list of message ids")
    return peer_id, list(ids), bool(payload.get("revoked", False))


class HistoryIntake:
    """Drives the change-log store from lifecycle notifications."""

    def __init__(self, store: ChangeLogStore, fetcher: MediaFetcher | None = None) -> None:
        self._store = store
        self._fetcher = fetcher

    def dispatch(self, event: str, payload: Any) -> list[HistoryEntry]:
        """Route a named notification; returns the entries it produced."""
        if event == MESSAGE_SENT:
            entry = self.on_message_sent(payload)
            return [entry] if entry else []
        if event == MESSAGE_EDITED:
            entry = self.on_message_edited(payload)
            return [entry] if entry else []
        if event == MESSAGES_DELETED:
            return self.on_messages_deleted(payload)

        logger.warning("Ignoring unknown history event %r", event)
        return []

    def on_message_sent(self, payload: Any) -> HistoryEntry | None:
        try:
            snapshot = _require_snapshot(payload)
        except MalformedNotification as e:
            logger.warning("Dropping malformed %s notification: %s", MESSAGE_SENT, e)
            return None

        key = EntityKey.of(snapshot)
        if self._store.has_any_history(key):
            logger.debug("Message %d in chat %d already tracked", key.message_id, key.chat_id)
            return None

        entry = self._store.record(key, HistoryAction.CREATED, snapshot_before=snapshot)
        self._register_media(snapshot)
        return entry

    def on_message_edited(self, payload: Any) -> HistoryEntry | None:
        """Record an edit; an empty change set is still recorded (metadata-only edit)."""
        try:
            snapshot = _require_snapshot(payload)
        except MalformedNotification as e:
            logger.warning("Dropping malformed %s notification: %s", MESSAGE_EDITED, e)
            return None

        key = EntityKey.of(snapshot)
        previous = self._store.latest_snapshot(key)
        changes = detect(previous, snapshot)

        entry = self._store.record(
            key,
            HistoryAction.EDITED,
            snapshot_after=snapshot,
            changes=changes,
        )
        if changes.fields():
            logger.info(
                "Message %d in chat %d edited: %s",
                key.message_id,
                key.chat_id,
                ", ".join(changes.fields()),
            )
        self._register_media(snapshot)
        return entry

    def on_messages_deleted(self, payload: Any) -> list[HistoryEntry]:
        try:
            peer_id, ids, revoked = _require_deletion(payload)
        except MalformedNotification as e:
            logger.warning("Dropping malformed %s notification: %s", MESSAGES_DELETED, e)
            return []

        entries = []
        for message_id in ids:
            key = EntityKey(peer_id, message_id)
            entries.append(
                self._store.record(
                    key,
                    HistoryAction.DELETED,
                    snapshot_before=self._store.latest_snapshot(key),
                    deletion=DeletionMeta(revoked=revoked),
                )
            )

        logger.info("Recorded deletion of %d messages in chat %d", len(entries), peer_id)
        return entries

    def _register_media(self, snapshot: Snapshot) -> None:
        try:
            ref = extract_media_reference(snapshot)
        except MediaExtractionFailure as e:
            logger.warning(
                "Skipping media of message %d in chat %d: %s",
                snapshot.message_id,
                snapshot.chat_id,
                e,
            )
            return

        if ref is None:
            return
        stored = self._store.register_media(ref)
        if self._fetcher is not None:
            self._fetcher.schedule(self._store, stored)
