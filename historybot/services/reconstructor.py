"""History reconstructor – synthetic version history for messages edited before tracking began.

This is a heuristic so that a message already showing "edited" has something
to display. A text ending in a number (``"draft3"``) is assumed to have been
typed as ``draft1 → draft2 → draft3``; anything else becomes a placeholder
original followed by the current text.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import time
from dataclasses import dataclass

from historybot.services.records import ChangeSet, EntityKey, FieldChange, HistoryEntry
from historybot.services.snapshot import ContentMessage, Snapshot
from historybot.services.store import ChangeLogStore
from historybot.utils.enums import HistoryAction

logger = logging.getLogger(__name__)

PLACEHOLDER_TEXT = "Original message"
ORIGINAL_OFFSET = 300  # first synthetic version is 5 minutes old
EDIT_SPACING = 30  # seconds between synthetic edits
MAX_SYNTHETIC_VERSIONS = 50

_SEQUENCE_RE = re.compile(r"(.+?)(\d+)", re.DOTALL)


@dataclass(frozen=True)
class SyntheticVersion:
    text: str
    timestamp: int


def reconstruct_versions(current_text: str, now: int | None = None) -> list[SyntheticVersion]:
    """Guess the sequence of texts that led to *current_text*, oldest first."""
    now = int(time.time()) if now is None else now
    base_time = now - ORIGINAL_OFFSET

    match = _SEQUENCE_RE.fullmatch(current_text)
    if match:
        prefix, count = match.group(1), int(match.group(2))
        if 1 <= count <= MAX_SYNTHETIC_VERSIONS:
            # Long sequences are packed tighter so the newest version is never after now
            step = min(EDIT_SPACING, ORIGINAL_OFFSET // max(count - 1, 1))
            return [
                SyntheticVersion(f"{prefix}{i}", base_time + (i - 1) * step)
                for i in range(1, count + 1)
            ]

    return [
        SyntheticVersion(PLACEHOLDER_TEXT, base_time),
        SyntheticVersion(current_text, now),
    ]


def reconstruct_history(
    store: ChangeLogStore,
    snapshot: Snapshot,
    now: int | None = None,
) -> list[HistoryEntry]:
    """Record a synthetic ``created`` + ``edited…`` sequence for *snapshot*.

    The caller must only do this for messages with no recorded history.
    """
    key = EntityKey.of(snapshot)
    current_text = (snapshot.text or "") if isinstance(snapshot, ContentMessage) else ""
    versions = reconstruct_versions(current_text, now)

    recorded: list[HistoryEntry] = []
    previous: SyntheticVersion | None = None
    for version in versions:
        version_snapshot = _with_text(snapshot, version.text)
        if previous is None:
            recorded.append(
                store.record(
                    key,
                    HistoryAction.CREATED,
                    snapshot_before=dataclasses.replace(version_snapshot, edit_date=None),
                    timestamp=version.timestamp,
                )
            )
        else:
            recorded.append(
                store.record(
                    key,
                    HistoryAction.EDITED,
                    snapshot_after=version_snapshot,
                    changes=ChangeSet(text=FieldChange(previous.text, version.text)),
                    timestamp=version.timestamp,
                )
            )
        previous = version

    logger.info(
        "Reconstructed %d synthetic versions for message %d in chat %d",
        len(versions),
        key.message_id,
        key.chat_id,
    )
    return recorded


def _with_text(snapshot: Snapshot, text: str) -> Snapshot:
    if isinstance(snapshot, ContentMessage):
        return dataclasses.replace(snapshot, text=text)
    return snapshot
