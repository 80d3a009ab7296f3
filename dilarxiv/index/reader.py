"""Read-only access to a sealed index.

A sealed index is immutable, so any number of readers (threads or processes)
can open it concurrently without locking. Directories without a ``SEALED``
marker, or stamped with another schema version, are refused.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import numpy as np
import tantivy

from dilarxiv.document import Document
from dilarxiv.errors import IndexUnavailableError
from dilarxiv.fonds import Fond
from dilarxiv.index.build import (
    DUPLICATE_RANK,
    EXTRA_FIELD,
    FOND_FIELD,
    MANIFEST_NAME,
    PATH_FIELD,
    RANK_DTYPE,
    RANK_NAME,
    SCHEMA_ID,
    SCHEMA_VERSION,
    SEQ_FIELD,
    TANTIVY_DIR,
    TITLE_FIELD,
    UID_FIELD,
    YEAR_FIELD,
    create_schema,
    read_marker,
)
from dilarxiv.index.metadata import IndexMetadata
from dilarxiv.utils.schema import build_schema_stamp

logger = logging.getLogger(__name__)


def _load_ranks(path: Path, expected: int) -> np.ndarray:
    if expected == 0:
        return np.empty(0, dtype=RANK_DTYPE)
    ranks = np.memmap(path, dtype=RANK_DTYPE, mode="r")
    if len(ranks) != expected:
        raise ValueError(f"rank table holds {len(ranks)} entries, expected {expected}")
    return ranks


def _first(fields: dict[str, list[Any]], name: str, default: Any = "") -> Any:
    values = fields.get(name)
    return values[0] if values else default


class SealedIndex:
    """The tantivy index and rank table of one sealed index directory."""

    def __init__(
        self,
        index_dir: Path,
        *,
        manifest: dict[str, Any],
        index: tantivy.Index,
        ranks: np.ndarray,
    ) -> None:
        self.index_dir = index_dir
        self.manifest = manifest
        self.schema = create_schema()
        self._index = index
        self._searcher = index.searcher()
        self._ranks = ranks

    @classmethod
    def open(cls, index_dir: Path) -> SealedIndex:
        """Open ``index_dir`` for querying.

        Raises:
            IndexUnavailableError: If the index is missing, unsealed, incomplete,
                or written with an incompatible schema version
        """
        if not index_dir.is_dir():
            raise IndexUnavailableError(
                f"No index at {index_dir}. Run 'dilarxiv build' to create one."
            )
        try:
            marker = read_marker(index_dir)
        except FileNotFoundError as exc:
            raise IndexUnavailableError(
                f"Index at {index_dir} is not sealed (build incomplete or in progress)"
            ) from exc
        except (OSError, ValueError) as exc:
            raise IndexUnavailableError(f"Unreadable seal marker in {index_dir}: {exc}") from exc

        if not build_schema_stamp(schema_id=SCHEMA_ID, schema_version=SCHEMA_VERSION).accepts(marker):
            raise IndexUnavailableError(
                f"Index at {index_dir} has schema "
                f"{marker.get('schema_id')}@{marker.get('schema_version')}, "
                f"expected {SCHEMA_ID}@{SCHEMA_VERSION}; rebuild it with --rebuild"
            )

        try:
            with open(index_dir / MANIFEST_NAME, encoding="utf-8") as handle:
                manifest = json.load(handle)
            indexed = int(manifest["indexed"])
            index = tantivy.Index.open(str(index_dir / TANTIVY_DIR))
            ranks = _load_ranks(index_dir / RANK_NAME, indexed)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise IndexUnavailableError(f"Index at {index_dir} is incomplete: {exc}") from exc

        sealed = cls(index_dir, manifest=manifest, index=index, ranks=ranks)
        if sealed.indexed_count != indexed:
            sealed.close()
            raise IndexUnavailableError(
                f"Index at {index_dir} is inconsistent: manifest lists "
                f"{indexed} documents, index holds {sealed.indexed_count}"
            )

        logger.debug(
            "Opened index %s (%d segments, %d docs)", index_dir, sealed.segment_count, sealed.doc_count
        )
        return sealed

    def close(self) -> None:
        self._ranks = np.empty(0, dtype=RANK_DTYPE)

    def __enter__(self) -> SealedIndex:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def doc_count(self) -> int:
        """Number of distinct ``(uid, fond)`` documents."""
        return int(self.manifest["doc_count"])

    @property
    def indexed_count(self) -> int:
        """Number of documents held by tantivy, duplicates included."""
        return self._searcher.num_docs

    @property
    def duplicates(self) -> int:
        return int(self.manifest.get("duplicates", 0))

    @property
    def segment_count(self) -> int:
        return self._searcher.num_segments

    def count(self, query: tantivy.Query) -> int:
        """Number of distinct documents matching ``query``."""
        if self.duplicates == 0:
            return self._searcher.search(query, limit=1, count=True).count
        _, ranks = self._matches(query)
        return int(np.count_nonzero(ranks != DUPLICATE_RANK))

    def _matches(self, query: tantivy.Query) -> tuple[list[tantivy.DocAddress], np.ndarray]:
        """Every hit of ``query`` with its rank, duplicates included."""
        total = self._searcher.search(query, limit=1, count=True).count
        if total == 0:
            return [], np.empty(0, dtype=RANK_DTYPE)
        result = self._searcher.search(
            query,
            limit=total,
            count=False,
            order_by_field=SEQ_FIELD,
            order=tantivy.Order.Asc,
        )
        addresses = [address for _, address in result.hits]
        seqs = np.fromiter((seq for seq, _ in result.hits), dtype=np.int64, count=len(result.hits))
        return addresses, self._ranks[seqs]

    def ordered(self, query: tantivy.Query, limit: int | None = None) -> list[tantivy.DocAddress]:
        """Addresses of the documents matching ``query`` in ``(uid, fond)`` order.

        Args:
            query: Compiled tantivy query
            limit: Maximum number of addresses returned; ``None`` for all

        Returns:
            At most ``limit`` addresses, one per distinct ``(uid, fond)`` key
        """
        if limit is not None and limit <= 0:
            return []
        addresses, ranks = self._matches(query)
        kept = np.flatnonzero(ranks != DUPLICATE_RANK)
        order = kept[np.argsort(ranks[kept], kind="stable")]
        if limit is not None:
            order = order[:limit]
        return [addresses[i] for i in order]

    def document(self, address: tantivy.DocAddress) -> Document:
        """Stored fields of the document at ``address`` (content is not stored)."""
        fields = self._searcher.doc(address).to_dict()
        return Document(
            uid=_first(fields, UID_FIELD),
            title=_first(fields, TITLE_FIELD),
            content="",
            date=_first(fields, YEAR_FIELD, 0),
            fond=Fond(_first(fields, FOND_FIELD)),
            extra=json.loads(_first(fields, EXTRA_FIELD, "{}")),
            path=_first(fields, PATH_FIELD),
        )

    def documents(self) -> Iterator[Document]:
        """Every distinct document in ``(uid, fond)`` order."""
        for address in self.ordered(tantivy.Query.all_query()):
            yield self.document(address)

    def metadata(self) -> IndexMetadata:
        return IndexMetadata(self.index_dir)
