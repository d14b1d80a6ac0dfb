"""Tests for history persistence: document codec, backends and the background writer."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from historybot.services.errors import PersistenceFailure
from historybot.services.persistence import (
    DatabaseBackend,
    MemoryBackend,
    RedisBackend,
    SnapshotWriter,
    deserialize,
    parse_document,
    serialize,
)
from historybot.services.records import (
    ChangeSet,
    DeletionMeta,
    EntityKey,
    FieldChange,
    MediaReference,
)
from historybot.services.snapshot import ServiceMessage
from historybot.services.store import ChangeLogStore
from historybot.utils.enums import HistoryAction, MediaKind, MessageType


def _populate(store: ChangeLogStore, make_snapshot) -> None:
    key = EntityKey(-1001234567890, 5)
    photo = {"type": "PHOTO", "file_id": "f", "file_unique_id": "u", "width": 10}
    store.record(key, HistoryAction.CREATED, snapshot_before=make_snapshot(5, chat_id=key.chat_id, text="hi"))
    store.record(
        key,
        HistoryAction.EDITED,
        snapshot_after=make_snapshot(
            5,
            chat_id=key.chat_id,
            text="hi there",
            entities=[{"type": "bold", "offset": 0, "length": 2}],
            media=photo,
            message_type=MessageType.PHOTO,
            edit_date=1_700_000_050,
        ),
        changes=ChangeSet(
            text=FieldChange("hi", "hi there"),
            entities=FieldChange([], [{"type": "bold", "offset": 0, "length": 2}]),
            media=FieldChange(None, photo),
        ),
    )
    store.record(
        key,
        HistoryAction.DELETED,
        snapshot_before=store.latest_snapshot(key),
        deletion=DeletionMeta(revoked=True),
    )
    store.record(EntityKey(7, 1), HistoryAction.CREATED, snapshot_before=ServiceMessage(7, 1, "new_chat_title"))
    store.register_media(
        MediaReference(
            id="u", kind=MediaKind.PHOTO, chat_id=key.chat_id, message_id=5,
            file_id="f", size=123, is_stored=True, local_path="media/u", downloaded_at=1_700_000_060,
        )
    )


class TestDocumentRoundTrip:
    def test_serialize_deserialize_reproduces_store(self, make_snapshot):
        original = ChangeLogStore()
        _populate(original, make_snapshot)

        restored = ChangeLogStore()
        restored.load_document(deserialize(serialize(original.to_document())))

        assert restored.to_document() == original.to_document()
        for key in (EntityKey(-1001234567890, 5), EntityKey(7, 1)):
            assert restored.get_log(key) == original.get_log(key)
            assert restored.get_deletion(key) == original.get_deletion(key)
        assert restored.list_media() == original.list_media()

    def test_layout_uses_string_keys(self, make_snapshot):
        store = ChangeLogStore()
        _populate(store, make_snapshot)
        doc = json.loads(serialize(store.to_document()))
        assert set(doc) == {"history", "deleted", "media"}
        assert set(doc["history"]) == {"-1001234567890_5", "7_1"}
        assert set(doc["deleted"]) == {"-1001234567890_5"}
        assert set(doc["media"]) == {"u"}

    def test_whitespace_is_not_significant(self, make_snapshot):
        store = ChangeLogStore()
        _populate(store, make_snapshot)
        pretty = json.dumps(store.to_document(), indent=4)
        restored = ChangeLogStore()
        restored.load_document(deserialize(pretty))
        assert restored.to_document() == store.to_document()

    def test_missing_sections_load_empty(self):
        store = ChangeLogStore()
        store.load_document({})
        assert store.stats().total_messages == 0

    def test_malformed_document(self):
        with pytest.raises(PersistenceFailure):
            parse_document({"history": {"1_1": [{"action": "created"}]}})

    def test_invalid_json(self):
        with pytest.raises(PersistenceFailure):
            deserialize("{not json")

    def test_non_mapping_json(self):
        with pytest.raises(PersistenceFailure):
            deserialize("[1, 2]")

    def test_unserializable_document(self):
        with pytest.raises(PersistenceFailure):
            serialize({"history": {"1_1": object()}})


class TestBackends:
    @pytest.mark.asyncio
    async def test_redis_backend(self, fake_redis):
        backend = RedisBackend(fake_redis, key="history:test")
        assert await backend.load() is None
        await backend.save('{"history": {}}')
        assert fake_redis._store["history:test"] == '{"history": {}}'
        assert await backend.load() == '{"history": {}}'

    @pytest.mark.asyncio
    async def test_redis_backend_decodes_bytes(self):
        redis = AsyncMock()
        redis.get = AsyncMock(return_value=b'{"media": {}}')
        assert await RedisBackend(redis).load() == '{"media": {}}'

    @pytest.mark.asyncio
    async def test_database_backend_uses_repo(self):
        session = AsyncMock()
        result = MagicMock()
        result.scalar_one_or_none.return_value = '{"history": {}}'
        session.execute = AsyncMock(return_value=result)

        factory = MagicMock()
        factory.return_value.__aenter__ = AsyncMock(return_value=session)
        factory.return_value.__aexit__ = AsyncMock(return_value=False)

        backend = DatabaseBackend(factory, name="test")
        assert await backend.load() == '{"history": {}}'

        await backend.save('{"deleted": {}}')
        assert session.execute.call_count == 2
        session.commit.assert_awaited_once()


class FailingBackend(MemoryBackend):
    def __init__(self, fail_times: int) -> None:
        super().__init__()
        self.fail_times = fail_times
        self.written: list[str] = []

    async def save(self, payload: str) -> None:
        if self.fail_times:
            self.fail_times -= 1
            raise ConnectionError("storage unavailable")
        self.written.append(payload)
        await super().save(payload)


class TestSnapshotWriter:
    @pytest.mark.asyncio
    async def test_writes_in_submission_order(self):
        backend = FailingBackend(fail_times=0)
        writer = SnapshotWriter(backend)
        await writer.start()
        for i in range(5):
            writer.submit(str(i))
        await writer.flush()
        await writer.stop()
        assert backend.written == ["0", "1", "2", "3", "4"]

    @pytest.mark.asyncio
    async def test_failed_write_does_not_stop_the_writer(self):
        backend = FailingBackend(fail_times=1)
        writer = SnapshotWriter(backend)
        await writer.start()
        writer.submit("lost")
        writer.submit("kept")
        await writer.flush()
        await writer.stop()
        assert backend.written == ["kept"]

    @pytest.mark.asyncio
    async def test_stop_drains_pending_writes(self):
        backend = MemoryBackend()
        writer = SnapshotWriter(backend)
        writer.submit("a")
        writer.submit("b")
        await writer.start()
        await writer.stop()
        assert backend.payload == "b"
        assert backend.saves == 2

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self):
        await SnapshotWriter(MemoryBackend()).stop()


class TestStorePersistence:
    @pytest.mark.asyncio
    async def test_every_record_is_persisted(self, make_snapshot):
        backend = MemoryBackend()
        writer = SnapshotWriter(backend)
        store = ChangeLogStore(writer)
        await writer.start()

        store.record(EntityKey(100, 5), HistoryAction.CREATED, snapshot_before=make_snapshot())
        store.record(EntityKey(100, 5), HistoryAction.EDITED, snapshot_after=make_snapshot(text="x"))
        await writer.flush()
        await writer.stop()

        assert backend.saves == 2
        assert len(deserialize(backend.payload)["history"]["100_5"]) == 2

    @pytest.mark.asyncio
    async def test_load_restores_saved_history(self, make_snapshot):
        backend = MemoryBackend()
        writer = SnapshotWriter(backend)
        first = ChangeLogStore(writer)
        await writer.start()
        _populate(first, make_snapshot)
        await writer.flush()
        await writer.stop()

        second = ChangeLogStore(SnapshotWriter(backend))
        assert await second.load() is True
        assert second.to_document() == first.to_document()

    @pytest.mark.asyncio
    async def test_load_with_nothing_stored(self):
        store = ChangeLogStore(SnapshotWriter(MemoryBackend()))
        assert await store.load() is False

    @pytest.mark.asyncio
    async def test_load_corrupt_document_keeps_store_usable(self, make_snapshot):
        store = ChangeLogStore(SnapshotWriter(MemoryBackend("{corrupt")))
        assert await store.load() is False
        store.record(EntityKey(1, 1), HistoryAction.CREATED, snapshot_before=make_snapshot(1, chat_id=1))
        assert store.has_any_history(EntityKey(1, 1))

    @pytest.mark.asyncio
    async def test_load_with_backend_down(self):
        backend = MemoryBackend()
        backend.load = AsyncMock(side_effect=ConnectionError("down"))
        store = ChangeLogStore(SnapshotWriter(backend))
        assert await store.load() is False

    @pytest.mark.asyncio
    async def test_record_survives_storage_failure(self, make_snapshot):
        backend = FailingBackend(fail_times=10)
        writer = SnapshotWriter(backend)
        store = ChangeLogStore(writer)
        await writer.start()
        entry = store.record(EntityKey(1, 1), HistoryAction.CREATED, snapshot_before=make_snapshot(1, chat_id=1))
        await writer.flush()
        await writer.stop()
        assert store.get_log(EntityKey(1, 1)) == [entry]
        assert backend.written == []

    def test_serialization_failure_is_logged_not_raised(self, make_snapshot, caplog):
        writer = MagicMock()
        store = ChangeLogStore(writer)
        snap = make_snapshot(entities=[{"bad": object()}])
        entry = store.record(EntityKey(1, 1), HistoryAction.CREATED, snapshot_before=snap)
        assert entry.action == HistoryAction.CREATED
        writer.submit.assert_not_called()
        assert "Failed to save history" in caplog.text
