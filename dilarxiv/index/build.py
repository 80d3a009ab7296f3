"""Single-writer construction of a sealed tantivy index.

The builder owns its target directory through an exclusive ``write.lock``
file. Documents are handed to a tantivy writer whose heap is bounded by the
memory budget; tantivy flushes and merges its segments on its own. Every
document also gets a sequence number, recorded with its ``(uid, fond)`` key in
a disk-backed spool. Sealing commits the writer, merges the spool to detect
duplicate keys and to write the ``(uid, fond)`` rank table, then writes the
manifest and the ``SEALED`` marker last.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from types import TracebackType

import numpy as np
import tantivy
from pydantic import BaseModel

from dilarxiv.document import Document
from dilarxiv.errors import IndexIOError, IndexLockedError
from dilarxiv.index.analyzer import index_text
from dilarxiv.index.keys import KeyRecord, KeySpool
from dilarxiv.index.metadata import METADATA_NAME, IndexMetadata
from dilarxiv.summary import RunSummary
from dilarxiv.utils.atomic import atomic_write_json
from dilarxiv.utils.schema import build_schema_stamp

logger = logging.getLogger(__name__)

SCHEMA_ID = "dilarxiv-index"
SCHEMA_VERSION = 2
LOCK_NAME = "write.lock"
SEALED_NAME = "SEALED"
MANIFEST_NAME = "manifest.json"
TANTIVY_DIR = "tantivy"
RANK_NAME = "rank.bin"
SPOOL_DIR = "keys.spool"

# Stored fields
UID_FIELD = "uid"
FOND_FIELD = "fond"
PATH_FIELD = "path"
TITLE_FIELD = "title"
EXTRA_FIELD = "extra"
YEAR_FIELD = "year"
SEQ_FIELD = "seq"
# Full-text fields (normalized text, with positions)
TITLE_TEXT_FIELD = "title_text"
BODY_FIELD = "body"
TEXT_FIELDS = (TITLE_TEXT_FIELD, BODY_FIELD)

RANK_DTYPE = np.dtype("<u4")
DUPLICATE_RANK = np.iinfo(RANK_DTYPE).max
RANK_BATCH = 65536

# tantivy refuses a writer heap below 15MB per indexing thread.
MIN_WRITER_HEAP_BYTES = 15_000_000
MAX_WRITER_HEAP_BYTES = 4_000_000_000
KEY_RECORD_BYTES = 256
MIN_SPOOL_RUN = 1024

_OWNED_NAMES = frozenset(
    {
        LOCK_NAME,
        SEALED_NAME,
        MANIFEST_NAME,
        METADATA_NAME,
        Path(METADATA_NAME).with_suffix(".corrupt").name,
        TANTIVY_DIR,
        RANK_NAME,
        SPOOL_DIR,
    }
)


def create_schema() -> tantivy.Schema:
    """Create the tantivy schema of a dilarxiv index.

    Returns:
        Schema with stored metadata fields, positioned full-text fields for
        the title and the body, and the ``seq`` fast field used for ordering
    """
    builder = tantivy.SchemaBuilder()
    builder.add_text_field(UID_FIELD, stored=True, tokenizer_name="raw")
    builder.add_text_field(FOND_FIELD, stored=True, tokenizer_name="raw")
    builder.add_text_field(PATH_FIELD, stored=True, tokenizer_name="raw", index_option="basic")
    builder.add_text_field(TITLE_FIELD, stored=True, tokenizer_name="raw", index_option="basic")
    builder.add_text_field(EXTRA_FIELD, stored=True, tokenizer_name="raw", index_option="basic")
    builder.add_text_field(TITLE_TEXT_FIELD, tokenizer_name="default", index_option="position")
    builder.add_text_field(BODY_FIELD, tokenizer_name="default", index_option="position")
    builder.add_integer_field(YEAR_FIELD, stored=True, indexed=True, fast=True)
    builder.add_unsigned_field(SEQ_FIELD, stored=True, indexed=True, fast=True)
    return builder.build()


def is_owned_entry(name: str) -> bool:
    """Whether ``name`` is a file the builder itself writes in an index directory."""
    if name in _OWNED_NAMES:
        return True
    # Leftovers of an interrupted atomic write: ``<name><random>.tmp``.
    return name.endswith(".tmp") and any(name.startswith(owned) for owned in _OWNED_NAMES)


class BuildStats(BaseModel):
    """Outcome of a sealed build."""

    doc_count: int = 0
    indexed: int = 0
    duplicates: int = 0
    segments: int = 0
    spool_runs: int = 0


@contextmanager
def _index_io(action: str) -> Iterator[None]:
    """Turn filesystem and tantivy failures into fatal :class:`IndexIOError`."""
    try:
        yield
    except (OSError, ValueError) as exc:
        raise IndexIOError(f"Failed to {action}: {exc}") from exc


class IndexBuilder:
    """Build a sealed index in ``index_dir``.

    Usage::

        with IndexBuilder(index_dir, memory_budget_bytes=64 << 20) as builder:
            builder.add_all(documents)
        # sealed on clean exit, aborted (no SEALED marker) on error

    ``index_dir`` must be empty or hold only files of a previous build. A
    sealed previous build is replaced only with ``clear=True``.
    """

    def __init__(
        self,
        index_dir: Path,
        *,
        memory_budget_bytes: int = 256 << 20,
        spool_run_size: int | None = None,
        clear: bool = False,
        summary: RunSummary | None = None,
    ) -> None:
        if memory_budget_bytes < 1:
            raise ValueError("memory_budget_bytes must be positive")
        self.index_dir = index_dir
        self.memory_budget_bytes = memory_budget_bytes
        spool_share = memory_budget_bytes // 8
        self.writer_heap_bytes = min(
            MAX_WRITER_HEAP_BYTES,
            max(MIN_WRITER_HEAP_BYTES, memory_budget_bytes - spool_share),
        )
        self.spool_run_size = spool_run_size or max(MIN_SPOOL_RUN, spool_share // KEY_RECORD_BYTES)
        self.clear = clear
        self.summary = summary or RunSummary()
        self.stats = BuildStats()

        self._lock_path = index_dir / LOCK_NAME
        self._locked = False
        self._sealed = False
        self._aborted = False
        self._next_seq = 0
        self._index: tantivy.Index | None = None
        self._writer: tantivy.IndexWriter | None = None
        self._spool: KeySpool | None = None
        self._metadata: IndexMetadata | None = None

    # ------------------------------------------------------------------#
    # Lifecycle
    # ------------------------------------------------------------------#

    def __enter__(self) -> IndexBuilder:
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if exc_type is None and not self._sealed:
            self.seal()
        elif not self._sealed:
            self.abort()

    def open(self) -> None:
        """Take ownership of the index directory.

        Raises:
            IndexLockedError: If another builder holds the directory
            IndexIOError: If the directory holds files that are not part of an
                index, already holds a sealed index and ``clear`` was not
                requested, or cannot be prepared
        """
        with _index_io(f"create index directory {self.index_dir}"):
            self.index_dir.mkdir(parents=True, exist_ok=True)
        self._acquire_lock()
        try:
            with _index_io(f"prepare index directory {self.index_dir}"):
                self._check_directory()
                self._remove_previous_build()
                tantivy_dir = self.index_dir / TANTIVY_DIR
                tantivy_dir.mkdir()
                self._index = tantivy.Index(create_schema(), path=str(tantivy_dir), reuse=False)
                self._writer = self._index.writer(heap_size=self.writer_heap_bytes, num_threads=1)
                self._spool = KeySpool(self.index_dir / SPOOL_DIR, run_size=self.spool_run_size)
                self._metadata = IndexMetadata(self.index_dir)
                self._metadata.reset()
        except BaseException:
            self._writer = None
            self._index = None
            self._release_lock()
            raise
        logger.info(
            "Building index in %s (writer heap %d bytes, %d keys per spool run)",
            self.index_dir,
            self.writer_heap_bytes,
            self.spool_run_size,
        )

    def _check_directory(self) -> None:
        foreign = sorted(
            entry.name for entry in self.index_dir.iterdir() if not is_owned_entry(entry.name)
        )
        if foreign:
            shown = ", ".join(foreign[:5]) + (", ..." if len(foreign) > 5 else "")
            raise IndexIOError(
                f"{self.index_dir} holds files that do not belong to an index ({shown}); "
                "build into an empty directory"
            )
        if (self.index_dir / SEALED_NAME).exists() and not self.clear:
            raise IndexIOError(
                f"{self.index_dir} already holds a sealed index; "
                "rebuild into a new directory or clear it first"
            )

    def _remove_previous_build(self) -> None:
        """Remove the files of a previous (sealed or aborted) build, marker first."""
        (self.index_dir / SEALED_NAME).unlink(missing_ok=True)
        for entry in sorted(self.index_dir.iterdir()):
            if entry == self._lock_path or not is_owned_entry(entry.name):
                continue
            logger.debug("Removing %s from a previous build", entry)
            if entry.is_dir() and not entry.is_symlink():
                shutil.rmtree(entry)
            else:
                entry.unlink()

    def _acquire_lock(self) -> None:
        try:
            fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as exc:
            holder = ""
            try:
                holder = self._lock_path.read_text(encoding="utf-8").strip()
            except OSError:
                pass
            raise IndexLockedError(
                f"Index directory {self.index_dir} is locked by another builder"
                + (f" (pid {holder})" if holder else "")
                + f"; remove {self._lock_path} if no build is running"
            ) from exc
        except OSError as exc:
            raise IndexIOError(f"Cannot lock {self.index_dir}: {exc}") from exc
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"{os.getpid()}\n")
        self._locked = True

    def _release_lock(self) -> None:
        if self._locked:
            self._lock_path.unlink(missing_ok=True)
            self._locked = False

    def abort(self) -> None:
        """Give up the build; no ``SEALED`` marker is written."""
        if self._aborted:
            return
        self._aborted = True
        if self._writer is not None:
            try:
                self._writer.rollback()
            except ValueError as exc:
                logger.debug("Rollback of %s failed: %s", self.index_dir, exc)
            self._writer = None
        self._index = None
        if self._spool is not None:
            self._spool.discard()
        self._release_lock()
        logger.warning("Index build in %s aborted; directory left unsealed", self.index_dir)

    # ------------------------------------------------------------------#
    # Ingestion
    # ------------------------------------------------------------------#

    def add(self, document: Document) -> int:
        """Index ``document`` and return its sequence number.

        Duplicate ``(fond, uid)`` keys are detected when sealing; the first
        document added with a key is the one kept.
        """
        if self._writer is None or self._spool is None or self._sealed:
            raise RuntimeError("IndexBuilder.add() called outside of an open build")

        seq = self._next_seq
        doc = tantivy.Document()
        doc.add_text(UID_FIELD, document.uid)
        doc.add_text(FOND_FIELD, document.fond.value)
        doc.add_text(PATH_FIELD, document.path)
        doc.add_text(TITLE_FIELD, document.title)
        doc.add_text(EXTRA_FIELD, json.dumps(document.extra, sort_keys=True, ensure_ascii=False))
        doc.add_text(TITLE_TEXT_FIELD, index_text(document.title))
        doc.add_text(BODY_FIELD, index_text(document.content))
        doc.add_integer(YEAR_FIELD, document.date)
        doc.add_unsigned(SEQ_FIELD, seq)

        with _index_io(f"index {document.path}"):
            self._writer.add_document(doc)
            self._spool.add(
                KeyRecord(document.uid, document.fond.value, seq, document.date, document.path)
            )
        self._next_seq += 1
        return seq

    def add_all(self, documents: Iterable[Document]) -> int:
        added = 0
        for document in documents:
            self.add(document)
            added += 1
        return added

    @property
    def indexed(self) -> int:
        return self._next_seq

    # ------------------------------------------------------------------#
    # Seal
    # ------------------------------------------------------------------#

    def _write_ranks(self, spool: KeySpool, metadata: IndexMetadata) -> tuple[int, int]:
        """Merge the key spool into the rank table; returns ``(unique, duplicates)``.

        ``rank.bin`` maps every sequence number to the position of its
        document in ``(uid, fond)`` order, or to :data:`DUPLICATE_RANK` for a
        document whose key was already taken.
        """
        rank_path = self.index_dir / RANK_NAME
        if self._next_seq == 0:
            rank_path.write_bytes(b"")
            return 0, 0

        table = np.memmap(rank_path, dtype=RANK_DTYPE, mode="w+", shape=(self._next_seq,))
        table[:] = DUPLICATE_RANK
        unique = 0
        duplicates = 0
        previous: tuple[str, str] | None = None
        seqs: list[int] = []
        ranks: list[int] = []
        for record in spool.merged():
            key = (record.uid, record.fond)
            if key == previous:
                duplicates += 1
                logger.warning(
                    "Skipping duplicate document %s/%s from %s", record.fond, record.uid, record.path
                )
                self.summary.record("index", record.path, f"duplicate uid {record.fond}/{record.uid}")
                continue
            previous = key
            seqs.append(record.seq)
            ranks.append(unique)
            unique += 1
            metadata.update(record.fond, record.year)
            if len(seqs) >= RANK_BATCH:
                table[seqs] = ranks
                seqs = []
                ranks = []
        if seqs:
            table[seqs] = ranks
        table.flush()
        del table
        return unique, duplicates

    def seal(self) -> BuildStats:
        """Commit the writer, write the rank table and mark the index sealed."""
        index, spool, metadata = self._index, self._spool, self._metadata
        if self._writer is None or index is None or spool is None or metadata is None:
            raise RuntimeError("IndexBuilder.seal() called outside of an open build")
        try:
            with _index_io(f"commit index {self.index_dir}"):
                self._writer.commit()
                self._writer.wait_merging_threads()
                self._writer = None
            with _index_io("write rank table"):
                doc_count, duplicates = self._write_ranks(spool, metadata)
                metadata.save()
            with _index_io(f"reopen index {self.index_dir}"):
                index.reload()
                segments = index.searcher().num_segments
            spool_runs = spool.run_count
            spool.discard()

            stamp = build_schema_stamp(schema_id=SCHEMA_ID, schema_version=SCHEMA_VERSION)
            with _index_io("write manifest"):
                atomic_write_json(
                    self.index_dir / MANIFEST_NAME,
                    stamp.apply(
                        {
                            "doc_count": doc_count,
                            "indexed": self._next_seq,
                            "duplicates": duplicates,
                            "segments": segments,
                        }
                    ),
                )
                atomic_write_json(self.index_dir / SEALED_NAME, stamp.apply({"doc_count": doc_count}))
        except BaseException:
            self.abort()
            raise

        self._sealed = True
        self._index = None
        self._release_lock()
        self.stats = BuildStats(
            doc_count=doc_count,
            indexed=self._next_seq,
            duplicates=duplicates,
            segments=segments,
            spool_runs=spool_runs,
        )
        logger.info(
            "Sealed index %s with %d documents (%d duplicates skipped, %d segments)",
            self.index_dir,
            doc_count,
            duplicates,
            segments,
        )
        return self.stats


def read_marker(index_dir: Path) -> dict[str, object]:
    """Return the ``SEALED`` marker payload (raises ``OSError``/``ValueError``)."""
    with open(index_dir / SEALED_NAME, encoding="utf-8") as handle:
        payload = json.load(handle)
    if not isinstance(payload, dict):
        raise ValueError("SEALED marker is not a JSON object")
    return payload
