"""Document source backed by the extracted archive tree."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from pathlib import Path

from dilarxiv.app.ports import DocumentSourcePort
from dilarxiv.document import Document
from dilarxiv.fonds import Fond
from dilarxiv.ingest.pipeline import ParsePipeline, discover_files
from dilarxiv.summary import RunSummary


class ExtractedTreeSource(DocumentSourcePort):
    """Stream documents parsed from ``<extracted_dir>/<FOND>/**/*.xml``.

    Files are visited in sorted path order per fond, fonds in the order given,
    so document ids are reproducible across builds of the same tree.
    """

    def __init__(
        self,
        extracted_dir: Path,
        fonds: Iterable[Fond],
        *,
        workers: int = 4,
        queue_size: int = 256,
        summary: RunSummary | None = None,
    ) -> None:
        self.extracted_dir = extracted_dir
        self.fonds = list(fonds)
        self.pipeline = ParsePipeline(workers=workers, queue_size=queue_size, summary=summary)

    @property
    def parsed(self) -> int:
        return self.pipeline.parsed

    @property
    def failed(self) -> int:
        return self.pipeline.failed

    def iter_documents(self) -> Iterator[Document]:
        return self.pipeline.iter_documents(discover_files(self.extracted_dir, self.fonds))
