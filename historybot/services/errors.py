"""Exceptions raised inside the history engine.

None of these are fatal to the bot: each one is caught at the boundary where
it can be degraded to "this one entry/record is missing".
"""

from __future__ import annotations


class HistoryError(Exception):
    """Base class for history engine errors."""


class PersistenceFailure(HistoryError):
    """Serializing or writing the history document failed."""


class MalformedNotification(HistoryError):
    """An inbound notification is missing a required field."""


class MediaExtractionFailure(HistoryError):
    """A snapshot carries media in a shape we cannot describe."""
