"""Metadata CSV export of documents named by a list of paths."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Sequence
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

from dilarxiv.export import write_csv
from dilarxiv.fonds import ALL_FONDS, Fond
from dilarxiv.ingest.pipeline import ParsePipeline
from dilarxiv.summary import RunSummary
from dilarxiv.utils.atomic import open_output

logger = logging.getLogger(__name__)

_FOND_NAMES = frozenset(fond.value for fond in ALL_FONDS)


def fond_from_path(path: Path) -> Fond | None:
    """Return the fond named by the closest ``<FOND>`` directory above ``path``."""
    for part in reversed(path.parent.parts):
        if part in _FOND_NAMES:
            return Fond(part)
    return None


def read_paths(paths_file: Path, *, base_dir: Path | None = None) -> Iterator[Path]:
    """Yield the paths listed one per line in ``paths_file``, skipping blank lines.

    Relative entries are resolved against ``base_dir`` when one is given.
    """
    with open(paths_file, encoding="utf-8") as handle:
        for line in handle:
            entry = line.strip()
            if not entry:
                continue
            path = Path(entry)
            if base_dir is not None and not path.is_absolute():
                path = base_dir / path
            yield path


class ExportOutcome(BaseModel):
    """What a path-list export wrote."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    requested: int = Field(..., ge=0)
    written: int = Field(..., ge=0)
    output: Path | None = None
    summary: RunSummary = Field(default_factory=RunSummary)

    @property
    def exit_code(self) -> int:
        return 1 if self.summary.has_skips else 0


class CsvExportService:
    """Re-parse source documents and write their metadata as CSV.

    Rows follow the input order. A path whose fond cannot be told, or whose
    document fails to parse, is skipped and recorded in the run summary.
    """

    def __init__(self, *, workers: int = 4, queue_size: int = 256) -> None:
        self._workers = workers
        self._queue_size = queue_size

    def export(
        self,
        files: Iterable[Path],
        *,
        output: Path | None = None,
        fond: Fond | None = None,
        extra_fields: Sequence[str] = (),
        summary: RunSummary | None = None,
    ) -> ExportOutcome:
        """Write one CSV row per parsable file in ``files``.

        Args:
            files: Source XML files, in the order rows are written
            output: Destination file (written atomically); ``None`` for stdout
            fond: Fond of every file; inferred from each path when ``None``
            extra_fields: Extra CSV columns after the base columns
            summary: Summary receiving skipped files (a fresh one by default)

        Returns:
            Counts of requested and written rows with the skipped files
        """
        summary = summary if summary is not None else RunSummary()
        pipeline = ParsePipeline(workers=self._workers, queue_size=self._queue_size, summary=summary)
        requested = 0

        def targets() -> Iterator[tuple[Path, Fond]]:
            nonlocal requested
            for path in files:
                requested += 1
                selected = fond or fond_from_path(path)
                if selected is None:
                    logger.warning("Skipping %s: no fond directory in its path", path)
                    summary.record("export", str(path), "cannot tell the fond from the path")
                    continue
                yield path, selected

        documents = pipeline.iter_documents(targets())
        try:
            with open_output(output) as handle:
                written = write_csv(documents, handle, extra_fields=extra_fields)
        finally:
            documents.close()

        logger.info("Exported %d of %d documents to %s", written, requested, output or "stdout")
        return ExportOutcome(requested=requested, written=written, output=output, summary=summary)

    def export_paths_file(
        self,
        paths_file: Path,
        *,
        output: Path | None = None,
        fond: Fond | None = None,
        base_dir: Path | None = None,
        extra_fields: Sequence[str] = (),
    ) -> ExportOutcome:
        """Export the documents listed in ``paths_file``, one path per line.

        The list is streamed, so it can be the ``--all`` output of a query over
        the whole index.
        """
        return self.export(
            read_paths(paths_file, base_dir=base_dir),
            output=output,
            fond=fond,
            extra_fields=extra_fields,
        )
