"""Parallel parsing feeding the single-threaded index builder.

Parse tasks run in a process pool. At most ``queue_size`` tasks are in flight:
the producer stops submitting until the consumer has taken the oldest result,
which bounds memory regardless of corpus size. Results are yielded in
submission order, so document ids assigned downstream are deterministic.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable, Iterator
from concurrent.futures import Future, ProcessPoolExecutor
from pathlib import Path

from dilarxiv.document import Document
from dilarxiv.errors import ParseError
from dilarxiv.fonds import Fond
from dilarxiv.ingest.parse import parse_document
from dilarxiv.summary import RunSummary
from dilarxiv.utils.paths import find_files

logger = logging.getLogger(__name__)

ParseResult = tuple[Document | None, str | None]


def _parse_worker(path: str, fond: str) -> ParseResult:
    """Worker entry point; errors are returned as text so they pickle cleanly.

    Any exception raised while parsing one file only skips that file.
    """
    try:
        return parse_document(Path(path), Fond(fond)), None
    except ParseError as exc:
        return None, str(exc)
    except Exception as exc:
        logger.debug("Unexpected failure parsing %s", path, exc_info=True)
        return None, f"{type(exc).__name__} while parsing {path}: {exc}"


def discover_files(extracted_dir: Path, fonds: Iterable[Fond]) -> Iterator[tuple[Path, Fond]]:
    """Yield ``(path, fond)`` for every extracted XML file, in sorted order."""
    for fond in fonds:
        for path in find_files(extracted_dir / fond.value, pattern="*.xml"):
            yield path, fond


class ParsePipeline:
    """Bounded producer/consumer window between parse workers and the builder."""

    def __init__(
        self,
        *,
        workers: int = 4,
        queue_size: int = 256,
        summary: RunSummary | None = None,
    ) -> None:
        self._workers = max(1, workers)
        self._queue_size = max(1, queue_size)
        self.summary = summary or RunSummary()
        self.parsed = 0
        self.failed = 0

    def _accept(self, path: Path, result: ParseResult) -> Document | None:
        document, error = result
        if document is None:
            logger.warning("Skipping %s: %s", path, error)
            self.summary.record("parse", str(path), error or "unknown parse error")
            self.failed += 1
            return None
        self.parsed += 1
        return document

    def iter_documents(self, files: Iterable[tuple[Path, Fond]]) -> Iterator[Document]:
        """Parse ``files`` and yield documents in input order.

        Closing the returned generator cancels every pending parse task.
        """
        if self._workers == 1:
            for path, fond in files:
                document = self._accept(path, _parse_worker(str(path), fond.value))
                if document is not None:
                    yield document
            return

        window: deque[tuple[Path, Future[ParseResult]]] = deque()
        executor = ProcessPoolExecutor(max_workers=self._workers)
        try:
            for path, fond in files:
                window.append((path, executor.submit(_parse_worker, str(path), fond.value)))
                while len(window) >= self._queue_size:
                    document = self._take(window)
                    if document is not None:
                        yield document
            while window:
                document = self._take(window)
                if document is not None:
                    yield document
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def _take(self, window: deque[tuple[Path, Future[ParseResult]]]) -> Document | None:
        path, future = window.popleft()
        return self._accept(path, future.result())
