"""Disk-backed spool of document keys, merged back in ``(uid, fond)`` order.

The builder appends one record per indexed document. Records are buffered up
to ``run_size`` entries, then sorted and spilled as a JSON-lines run; reading
the spool back is a k-way merge of the runs, so memory stays bounded by the
run size whatever the corpus size.
"""

from __future__ import annotations

import heapq
import json
import logging
import shutil
from collections.abc import Iterator
from pathlib import Path
from typing import NamedTuple

logger = logging.getLogger(__name__)


class KeyRecord(NamedTuple):
    """One indexed document, ordered by ``(uid, fond, seq)``."""

    uid: str
    fond: str
    seq: int
    year: int
    path: str


class KeySpool:
    """Sorted runs of :class:`KeyRecord` under ``directory``."""

    def __init__(self, directory: Path, *, run_size: int) -> None:
        if run_size < 1:
            raise ValueError("run_size must be at least 1")
        self.directory = directory
        self.run_size = run_size
        self._buffer: list[KeyRecord] = []
        self._runs: list[Path] = []
        self.directory.mkdir(parents=True, exist_ok=True)

    def __len__(self) -> int:
        return len(self._runs) * self.run_size + len(self._buffer)

    @property
    def run_count(self) -> int:
        return len(self._runs)

    def add(self, record: KeyRecord) -> None:
        self._buffer.append(record)
        if len(self._buffer) >= self.run_size:
            self._spill()

    def _spill(self) -> None:
        self._buffer.sort()
        path = self.directory / f"run-{len(self._runs):06d}.jsonl"
        with open(path, "w", encoding="utf-8") as handle:
            for record in self._buffer:
                handle.write(json.dumps(list(record), ensure_ascii=False))
                handle.write("\n")
        logger.debug("Spilled %d keys to %s", len(self._buffer), path)
        self._runs.append(path)
        self._buffer = []

    @staticmethod
    def _read_run(path: Path) -> Iterator[KeyRecord]:
        with open(path, encoding="utf-8") as handle:
            for line in handle:
                yield KeyRecord(*json.loads(line))

    def merged(self) -> Iterator[KeyRecord]:
        """Yield every record in ``(uid, fond, seq)`` order."""
        self._buffer.sort()
        sources: list[Iterator[KeyRecord]] = [self._read_run(path) for path in self._runs]
        sources.append(iter(self._buffer))
        return heapq.merge(*sources)

    def discard(self) -> None:
        """Remove the spool directory and every run in it."""
        self._buffer = []
        self._runs = []
        shutil.rmtree(self.directory, ignore_errors=True)
