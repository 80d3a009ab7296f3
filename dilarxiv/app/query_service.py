"""Query orchestration: open the sealed index, search, materialize matches."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

from pydantic import BaseModel, Field

from dilarxiv.document import Document
from dilarxiv.export import write_csv, write_paths
from dilarxiv.index.reader import SealedIndex
from dilarxiv.query.engine import QueryEngine
from dilarxiv.utils.atomic import open_output

logger = logging.getLogger(__name__)


class QueryOutcome(BaseModel):
    """What a materialized query wrote."""

    query: str
    total_matches: int = Field(..., ge=0)
    written: int = Field(..., ge=0)
    output: Path | None = None


class QueryService:
    """Search one index directory and export the results.

    The index is opened per call, so a rebuilt (re-sealed) index is picked up
    by the next query without restarting.
    """

    def __init__(self, index_dir: Path, *, default_limit: int = 10) -> None:
        self._index_dir = index_dir
        self._default_limit = default_limit

    @property
    def index_dir(self) -> Path:
        return self._index_dir

    def open_index(self) -> SealedIndex:
        """Open the sealed index (raises ``IndexUnavailableError``)."""
        return SealedIndex.open(self._index_dir)

    def search(self, query: str, *, limit: int | None = 10) -> list[Document]:
        """Return the first ``limit`` matches in ``(uid, fond)`` order.

        ``limit=None`` returns every match.

        Raises:
            QuerySyntaxError: If ``query`` is malformed
            IndexUnavailableError: If no sealed index exists
        """
        with self.open_index() as index:
            result = QueryEngine(index).search(query)
            return list(result.take(limit))

    def count(self, query: str) -> int:
        with self.open_index() as index:
            return QueryEngine(index).search(query).count()

    def export(
        self,
        query: str,
        *,
        limit: int | None = None,
        full: bool = False,
        output: Path | None = None,
        as_csv: bool = False,
        extra_fields: Sequence[str] = (),
    ) -> QueryOutcome:
        """Search and write matches as a path list or metadata CSV.

        At most ``limit`` matches are written (the configured default when
        ``limit`` is ``None``); ``full=True`` writes every match exactly once.
        Output goes to ``output`` (written atomically) or stdout.
        """
        effective: int | None
        if full:
            effective = None
        elif limit is None:
            effective = self._default_limit
        else:
            effective = limit

        with self.open_index() as index:
            result = QueryEngine(index).search(query)
            ordered = result.addresses()
            selected = ordered if effective is None else ordered[:effective]
            documents = (index.document(address) for address in selected)
            with open_output(output) as handle:
                if as_csv:
                    written = write_csv(documents, handle, extra_fields=extra_fields)
                else:
                    written = write_paths(documents, handle, limit=None)

        logger.info(
            "Query %r: %d matches, %d written to %s",
            query,
            len(ordered),
            written,
            output or "stdout",
        )
        return QueryOutcome(query=query, total_matches=len(ordered), written=written, output=output)
