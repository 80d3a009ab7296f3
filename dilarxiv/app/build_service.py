"""Build orchestration: acquire, extract and index, with per-stage status."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from dilarxiv.acquire.download import AcquisitionReport
from dilarxiv.acquire.tarballs import Tarball
from dilarxiv.app.ports import ArchiveRepositoryPort, DocumentSourcePort
from dilarxiv.config import Settings
from dilarxiv.errors import NetworkError
from dilarxiv.fonds import Fond, resolve_fonds
from dilarxiv.index.build import BuildStats, IndexBuilder
from dilarxiv.ingest.extract import ExtractionReport, extract_tarballs
from dilarxiv.summary import RunSummary

logger = logging.getLogger(__name__)

StageStatus = Literal["pending", "completed", "skipped", "failed"]

SourceFactory = Callable[[list[Fond], RunSummary], DocumentSourcePort]


@dataclass(slots=True)
class BuildStage:
    """Represents the status of a build phase."""

    name: str
    status: StageStatus = "pending"
    detail: str | None = None
    duration_seconds: float | None = None
    metrics: dict[str, Any] | None = None


class BuildResult(BaseModel):
    """Summary of one build run."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    fonds: list[Fond] = Field(default_factory=list)
    stages: list[BuildStage] = Field(default_factory=list)
    summary: RunSummary = Field(default_factory=RunSummary)
    acquisition: AcquisitionReport | None = None
    extraction: ExtractionReport | None = None
    index: BuildStats | None = None

    @property
    def exit_code(self) -> int:
        """``0`` for a clean run, ``1`` when items were skipped along the way."""
        return 1 if self.summary.has_skips else 0


class BuildService:
    """Run the acquisition, extraction and indexing stages for a set of fonds.

    Per-item failures (one archive, one entry, one document) are recorded in
    the run summary and never stop the run. Index I/O failures propagate.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        archive_repository: ArchiveRepositoryPort,
        source_factory: SourceFactory,
    ) -> None:
        self._settings = settings
        self._archives = archive_repository
        self._source_factory = source_factory

    @contextmanager
    def _stage(self, stages: list[BuildStage], name: str) -> Iterator[BuildStage]:
        """Context manager to standardize build stage error handling."""

        stage = BuildStage(name=name)
        stages.append(stage)
        start_time = time.monotonic()
        try:
            yield stage
        except BaseException as exc:
            stage.status = "failed"
            stage.detail = str(exc) or type(exc).__name__
            raise
        else:
            if stage.status == "pending":
                stage.status = "completed"
        finally:
            stage.duration_seconds = time.monotonic() - start_time

    def run(
        self,
        fonds: Iterable[Fond | str] | None = None,
        *,
        download: bool = True,
        extract: bool = True,
        index: bool = True,
        rebuild: bool = False,
    ) -> BuildResult:
        """Execute the enabled stages for ``fonds`` (``None`` means every fond)."""

        selected = resolve_fonds(fonds)
        result = BuildResult(fonds=selected)

        with self._stage(result.stages, "acquire") as stage:
            if download:
                result.acquisition = self._run_acquire(selected, result.summary)
                stage.metrics = {
                    "downloaded": len(result.acquisition.downloaded),
                    "skipped_existing": len(result.acquisition.skipped_existing),
                    "failed": len(result.acquisition.failed),
                }
            else:
                stage.status = "skipped"

        with self._stage(result.stages, "extract") as stage:
            if extract:
                result.extraction = self._run_extract(selected, result.summary)
                stage.metrics = {
                    "archives": len(result.extraction.archives_processed),
                    "archives_skipped": len(result.extraction.archives_skipped),
                    "leaves_written": result.extraction.leaves_written,
                    "failures": len(result.extraction.failures),
                }
            else:
                stage.status = "skipped"

        with self._stage(result.stages, "index") as stage:
            if index:
                result.index = self._run_index(selected, result.summary, rebuild=rebuild)
                stage.metrics = {
                    "documents": result.index.doc_count,
                    "duplicates": result.index.duplicates,
                    "segments": result.index.segments,
                }
            else:
                stage.status = "skipped"

        if result.summary.has_skips:
            logger.warning("Build completed with skipped items: %s", result.summary.counts())
        return result

    def _run_acquire(self, fonds: list[Fond], summary: RunSummary) -> AcquisitionReport:
        tarballs: list[Tarball] = []
        for fond in fonds:
            try:
                listed = self._archives.list_tarballs(fond)
            except NetworkError as exc:
                logger.error("Cannot list archives of %s: %s", fond, exc)
                summary.record("download", fond.value, str(exc))
                continue
            logger.info("%s: %d archives published", fond, len(listed))
            tarballs.extend(listed)

        report = self._archives.download(tarballs)
        for name, reason in sorted(report.failed.items()):
            summary.record("download", name, reason)
        logger.info(
            "Downloaded %d archives (%d already present, %d failed)",
            len(report.downloaded),
            len(report.skipped_existing),
            len(report.failed),
        )
        return report

    def _run_extract(self, fonds: list[Fond], summary: RunSummary) -> ExtractionReport:
        report = extract_tarballs(
            self._settings.get_tarball_dir(),
            self._settings.get_extracted_dir(),
            fonds,
            max_workers=self._settings.extract_workers,
        )
        for failure in report.failures:
            item = failure.archive if failure.member is None else f"{failure.archive}:{failure.member}"
            summary.record("extract", item, failure.reason)
        logger.info(
            "Extracted %d archives (%d leaves written, %d unchanged, %d failures)",
            len(report.archives_processed),
            report.leaves_written,
            report.leaves_unchanged,
            len(report.failures),
        )
        return report

    def _run_index(self, fonds: list[Fond], summary: RunSummary, *, rebuild: bool) -> BuildStats:
        source = self._source_factory(fonds, summary)
        builder = IndexBuilder(
            self._settings.get_index_dir(),
            memory_budget_bytes=self._settings.get_memory_budget_bytes(),
            clear=rebuild,
            summary=summary,
        )
        documents = source.iter_documents()
        try:
            with builder:
                builder.add_all(documents)
        finally:
            close = getattr(documents, "close", None)
            if close is not None:
                close()
        return builder.stats
