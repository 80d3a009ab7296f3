"""Download, index and search archives chunk by chunk, keeping only matches.

A one-shot search never holds more than one chunk of archives on disk: each
chunk is downloaded, extracted and indexed into a scratch directory, the
matching files are moved to the results directory, and the rest is deleted
before the next chunk starts. The kept files are re-parsed into a metadata
CSV at the end.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Callable, Iterable, Sequence
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from dilarxiv.acquire.tarballs import Tarball
from dilarxiv.app.adapters import ExtractedTreeSource
from dilarxiv.app.export_service import CsvExportService
from dilarxiv.app.ports import ArchiveRepositoryPort
from dilarxiv.config import Settings
from dilarxiv.document import Document
from dilarxiv.errors import NetworkError
from dilarxiv.fonds import ALL_FONDS, Fond, resolve_fonds
from dilarxiv.index.build import IndexBuilder
from dilarxiv.index.reader import SealedIndex
from dilarxiv.ingest.extract import extract_tarballs
from dilarxiv.query.engine import QueryEngine
from dilarxiv.query.parser import parse_query
from dilarxiv.summary import RunSummary

logger = logging.getLogger(__name__)

RepositoryFactory = Callable[[Path], ArchiveRepositoryPort]


class OneshotResult(BaseModel):
    """Summary of one one-shot search."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    query: str
    fonds: list[Fond] = Field(default_factory=list)
    archives: int = Field(0, ge=0)
    chunks: int = Field(0, ge=0)
    indexed: int = Field(0, ge=0)
    matches: int = Field(0, ge=0)
    written: int = Field(0, ge=0)
    output: Path | None = None
    results_dir: Path
    summary: RunSummary = Field(default_factory=RunSummary)

    @property
    def exit_code(self) -> int:
        return 1 if self.summary.has_skips else 0


def _publication_order(tarballs: Iterable[Tarball]) -> list[Tarball]:
    return sorted(tarballs, key=lambda t: (t.published, ALL_FONDS.index(t.fond), t.name))


def _chunks(tarballs: Sequence[Tarball], size: int) -> Iterable[Sequence[Tarball]]:
    for start in range(0, len(tarballs), size):
        yield tarballs[start : start + size]


def _keep(
    document: Document,
    extracted_dir: Path,
    kept_dir: Path,
    matched: dict[tuple[str, str], Path],
) -> None:
    """Move a matching file under ``kept_dir``, replacing an older copy of the same document."""
    source = Path(document.path)
    destination = kept_dir / source.relative_to(extracted_dir)
    key = (document.uid, document.fond.value)
    previous = matched.get(key)
    if previous is not None and previous != destination:
        previous.unlink(missing_ok=True)
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(source), str(destination))
    matched[key] = destination


class OneshotService:
    """Run one query over every published archive of the selected fonds.

    Archives are processed oldest first, so when a document is matched in
    several archives the newest copy is the one kept.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        repository_factory: RepositoryFactory,
        exporter: CsvExportService,
        chunk_size: int | None = None,
    ) -> None:
        self._settings = settings
        self._repository_factory = repository_factory
        self._exporter = exporter
        self._chunk_size = chunk_size or settings.oneshot_chunk_size

    def run(
        self,
        query: str,
        fonds: Iterable[Fond | str] | None = None,
        *,
        output: Path | None = None,
        results_dir: Path | None = None,
        extra_fields: Sequence[str] = (),
        work_dir: Path | None = None,
        chunk_size: int | None = None,
    ) -> OneshotResult:
        """Search ``fonds`` for ``query`` and write the matches as CSV.

        Args:
            query: Query string, validated before anything is downloaded
            fonds: Fonds to search; ``None`` means every fond
            output: CSV destination; ``None`` writes to stdout
            results_dir: Where matching files are kept (``<FOND>/...``)
            extra_fields: Extra CSV columns
            work_dir: Parent of the scratch directory; the system default when ``None``
            chunk_size: Archives per chunk; the configured size when ``None``

        Returns:
            Counts for the run with every skipped item

        Raises:
            QuerySyntaxError: If ``query`` is malformed
            IndexIOError: If a chunk index cannot be written
        """
        parse_query(query)
        selected = resolve_fonds(fonds)
        kept_dir = results_dir or self._settings.get_results_dir()
        result = OneshotResult(query=query, fonds=selected, results_dir=kept_dir)

        if work_dir is not None:
            work_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(prefix="dilarxiv-oneshot-", dir=work_dir) as scratch_name:
            scratch = Path(scratch_name)
            repository = self._repository_factory(scratch / "tarball")
            try:
                matched = self._search_chunks(
                    repository, scratch, kept_dir, result, chunk_size or self._chunk_size
                )
            except KeyboardInterrupt:
                repository.cancel()
                raise

        files = [matched[key] for key in sorted(matched)]
        result.matches = len(files)
        outcome = self._exporter.export(
            files,
            output=output,
            extra_fields=extra_fields,
            summary=result.summary,
        )
        result.written = outcome.written
        result.output = output

        if result.summary.has_skips:
            logger.warning("One-shot search completed with skipped items: %s", result.summary.counts())
        return result

    def _list(self, repository: ArchiveRepositoryPort, result: OneshotResult) -> list[Tarball]:
        tarballs: list[Tarball] = []
        for fond in result.fonds:
            try:
                listed = repository.list_tarballs(fond)
            except NetworkError as exc:
                logger.error("Cannot list archives of %s: %s", fond, exc)
                result.summary.record("download", fond.value, str(exc))
                continue
            logger.info("%s: %d archives published", fond, len(listed))
            tarballs.extend(listed)
        return _publication_order(tarballs)

    def _search_chunks(
        self,
        repository: ArchiveRepositoryPort,
        scratch: Path,
        kept_dir: Path,
        result: OneshotResult,
        chunk_size: int,
    ) -> dict[tuple[str, str], Path]:
        """Process every chunk; returns the kept file of each matched ``(uid, fond)``."""
        tarballs = self._list(repository, result)
        result.archives = len(tarballs)
        matched: dict[tuple[str, str], Path] = {}
        for number, chunk in enumerate(_chunks(tarballs, chunk_size), start=1):
            logger.info("Chunk %d: %d archives", number, len(chunk))
            self._search_chunk(repository, scratch, kept_dir, chunk, number, result, matched)
            result.chunks = number
        return matched

    def _search_chunk(
        self,
        repository: ArchiveRepositoryPort,
        scratch: Path,
        kept_dir: Path,
        chunk: Sequence[Tarball],
        number: int,
        result: OneshotResult,
        matched: dict[tuple[str, str], Path],
    ) -> None:
        summary = result.summary
        tarball_dir = scratch / "tarball"
        extracted_dir = scratch / "extracted"
        index_dir = scratch / f"index-{number:04d}"
        chunk_fonds = sorted({t.fond for t in chunk}, key=ALL_FONDS.index)
        try:
            report = repository.download(chunk)
            for name, reason in sorted(report.failed.items()):
                summary.record("download", name, reason)

            extraction = extract_tarballs(
                tarball_dir,
                extracted_dir,
                chunk_fonds,
                max_workers=self._settings.extract_workers,
            )
            for failure in extraction.failures:
                item = failure.archive if failure.member is None else f"{failure.archive}:{failure.member}"
                summary.record("extract", item, failure.reason)

            source = ExtractedTreeSource(
                extracted_dir,
                chunk_fonds,
                workers=self._settings.parse_workers,
                queue_size=self._settings.parse_queue_size,
                summary=summary,
            )
            builder = IndexBuilder(
                index_dir,
                memory_budget_bytes=self._settings.get_memory_budget_bytes(),
                summary=summary,
            )
            documents = source.iter_documents()
            try:
                with builder:
                    builder.add_all(documents)
            finally:
                documents.close()
            result.indexed += builder.stats.doc_count

            hits = 0
            with SealedIndex.open(index_dir) as index:
                for document in QueryEngine(index).search(result.query):
                    _keep(document, extracted_dir, kept_dir, matched)
                    hits += 1
            logger.info("Chunk %d: %d matches (%d kept so far)", number, hits, len(matched))
        finally:
            for leftover in (tarball_dir, extracted_dir, index_dir):
                shutil.rmtree(leftover, ignore_errors=True)
