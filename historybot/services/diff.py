"""Diff detector – field-level comparison of two message snapshots."""

from __future__ import annotations

from historybot.services.records import ChangeSet, FieldChange
from historybot.services.snapshot import ContentMessage, ServiceMessage, Snapshot


def detect(previous: Snapshot | None, current: Snapshot) -> ChangeSet:
    """Compare *previous* with *current* and return what changed.

    - No previous snapshot: nothing to compare against, empty change set.
    - Service messages carry no diffable fields, empty change set.
    - Text is compared as a string, entities and media structurally.
    """
    if previous is None:
        return ChangeSet()

    for snapshot in (previous, current):
        if not isinstance(snapshot, (ContentMessage, ServiceMessage)):
            raise TypeError(f"Not a snapshot: {type(snapshot).__name__}")

    if isinstance(previous, ContentMessage) and isinstance(current, ContentMessage):
        return _diff_content(previous, current)
    return ChangeSet()


def _diff_content(previous: ContentMessage, current: ContentMessage) -> ChangeSet:
    old_text = previous.text or ""
    new_text = current.text or ""
    old_entities = previous.entities or []
    new_entities = current.entities or []

    return ChangeSet(
        text=FieldChange(old_text, new_text) if old_text != new_text else None,
        entities=FieldChange(old_entities, new_entities) if old_entities != new_entities else None,
        media=FieldChange(previous.media, current.media) if previous.media != current.media else None,
    )
