"""Record types stored by the change-log: history entries, change sets and media references."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from typing import Any, NamedTuple

from historybot.services.snapshot import Snapshot, snapshot_from_dict, snapshot_to_dict
from historybot.utils.enums import HistoryAction, MediaKind


class EntityKey(NamedTuple):
    """(chat_id, message_id) – partition key of the change-log."""

    chat_id: int
    message_id: int

    def __str__(self) -> str:
        return f"{self.chat_id}_{self.message_id}"

    @classmethod
    def parse(cls, raw: str) -> EntityKey:
        """Parse ``"<chat_id>_<message_id>"``; chat ids may be negative."""
        chat_id, _, message_id = raw.rpartition("_")
        if not chat_id:
            raise ValueError(f"Malformed history key: {raw!r}")
        return cls(int(chat_id), int(message_id))

    @classmethod
    def of(cls, snapshot: Snapshot) -> EntityKey:
        return cls(snapshot.chat_id, snapshot.message_id)


def generate_entry_id(now: int | None = None) -> str:
    """``<unix seconds>_<random 63-bit>`` – sortable by time, unique on collision."""
    ts = int(time.time()) if now is None else now
    return f"{ts}_{secrets.randbits(63)}"


# ── Change sets ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class FieldChange:
    old: Any
    new: Any


@dataclass(frozen=True)
class ChangeSet:
    """Field-level diff between two snapshots."""

    text: FieldChange | None = None
    entities: FieldChange | None = None
    media: FieldChange | None = None

    def is_empty(self) -> bool:
        return self.text is None and self.entities is None and self.media is None

    def fields(self) -> list[str]:
        return [name for name in ("text", "entities", "media") if getattr(self, name) is not None]

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        for name in self.fields():
            change: FieldChange = getattr(self, name)
            d[name] = {"from": change.old, "to": change.new}
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeSet:
        return cls(
            **{
                name: FieldChange(value["from"], value["to"])
                for name, value in data.items()
                if name in ("text", "entities", "media")
            }
        )


@dataclass(frozen=True)
class DeletionMeta:
    revoked: bool = False


# ── History entries ───────────────────────────────────────────────────


@dataclass(frozen=True)
class HistoryEntry:
    """One lifecycle event of a message. Never mutated once stored."""

    id: str
    chat_id: int
    message_id: int
    action: HistoryAction
    timestamp: int
    snapshot_before: Snapshot | None = None
    snapshot_after: Snapshot | None = None
    changes: ChangeSet | None = None
    deletion: DeletionMeta | None = None

    @property
    def key(self) -> EntityKey:
        return EntityKey(self.chat_id, self.message_id)

    @property
    def latest_snapshot(self) -> Snapshot | None:
        """The version of the message this entry leaves behind."""
        return self.snapshot_after or self.snapshot_before

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "chat_id": self.chat_id,
            "message_id": self.message_id,
            "action": self.action.value,
            "timestamp": self.timestamp,
        }
        if self.snapshot_before is not None:
            d["snapshot_before"] = snapshot_to_dict(self.snapshot_before)
        if self.snapshot_after is not None:
            d["snapshot_after"] = snapshot_to_dict(self.snapshot_after)
        if self.changes is not None:
            d["changes"] = self.changes.to_dict()
        if self.deletion is not None:
            d["deletion"] = {"revoked": self.deletion.revoked}
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        before = data.get("snapshot_before")
        after = data.get("snapshot_after")
        changes = data.get("changes")
        deletion = data.get("deletion")
        return cls(
            id=data["id"],
            chat_id=int(data["chat_id"]),
            message_id=int(data["message_id"]),
            action=HistoryAction(data["action"]),
            timestamp=int(data["timestamp"]),
            snapshot_before=snapshot_from_dict(before) if before is not None else None,
            snapshot_after=snapshot_from_dict(after) if after is not None else None,
            changes=ChangeSet.from_dict(changes) if changes is not None else None,
            deletion=DeletionMeta(bool(deletion.get("revoked", False))) if deletion is not None else None,
        )


# ── Media references ──────────────────────────────────────────────────


@dataclass
class MediaReference:
    """Metadata for one distinct media object, keyed by its content-derived id."""

    id: str
    kind: MediaKind
    chat_id: int
    message_id: int
    file_id: str | None = None
    size: int | None = None
    mime_type: str | None = None
    filename: str | None = None

    # Materialization
    is_stored: bool = False
    local_path: str | None = None
    downloaded_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "chat_id": self.chat_id,
            "message_id": self.message_id,
            "file_id": self.file_id,
            "size": self.size,
            "mime_type": self.mime_type,
            "filename": self.filename,
            "is_stored": self.is_stored,
            "local_path": self.local_path,
            "downloaded_at": self.downloaded_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MediaReference:
        data = dict(data)
        data["kind"] = MediaKind(data["kind"])
        return cls(**data)


# ── Read-side aggregates ──────────────────────────────────────────────


@dataclass
class HistoryExport:
    logs: dict[str, list[HistoryEntry]] = field(default_factory=dict)
    deletions: dict[str, HistoryEntry] = field(default_factory=dict)
    media: list[MediaReference] = field(default_factory=list)


@dataclass(frozen=True)
class HistoryStats:
    total_messages: int
    edited_messages: int
    deleted_messages: int
    stored_media: int
