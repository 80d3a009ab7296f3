"""Error taxonomy shared by the ingest, index and query layers.

Per-item failures (``NetworkError``, ``ArchiveError``, ``ParseError``) are
caught by the stage that raised them, logged, and recorded as skipped items.
Structural failures (``IndexIOError``, ``IndexUnavailableError``) abort the
current operation. ``QuerySyntaxError`` is reported to the caller before any
result is produced.
"""

from __future__ import annotations


class DilarxivError(Exception):
    """Base class for all dilarxiv errors."""


class NetworkError(DilarxivError):
    """Transient network failure while listing or downloading an archive."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class ArchiveError(DilarxivError):
    """Corrupt, unsafe or unsupported archive entry."""

    def __init__(self, message: str, *, archive: str | None = None, member: str | None = None):
        super().__init__(message)
        self.archive = archive
        self.member = member


class ParseError(DilarxivError):
    """Malformed document or document missing a required field."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class UnknownFondError(DilarxivError, ValueError):
    """Raised for a fond outside the supported set."""


class ExtractionIOError(DilarxivError):
    """Disk failure while writing extracted files; aborts the extraction."""


class IndexIOError(DilarxivError):
    """Disk failure or corrupted structure while writing or reading an index."""


class IndexLockedError(IndexIOError):
    """Another builder already owns the target index directory."""


class IndexUnavailableError(DilarxivError):
    """Query issued against a missing, unsealed or incompatible index."""


class QuerySyntaxError(DilarxivError):
    """Malformed query string.

    Attributes:
        token: Offending token (empty string at end of input)
        position: Character offset of ``token`` in the query
    """

    def __init__(self, message: str, *, token: str, position: int) -> None:
        super().__init__(f"{message} at position {position}: {token!r}")
        self.token = token
        self.position = position
