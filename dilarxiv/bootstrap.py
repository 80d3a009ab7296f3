"""Application bootstrap wiring ports, adapters, and services."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from dilarxiv.app import BuildService, CsvExportService, OneshotService, QueryService
from dilarxiv.app.adapters import DilaHttpRepository, ExtractedTreeSource
from dilarxiv.app.oneshot_service import RepositoryFactory
from dilarxiv.app.ports import ArchiveRepositoryPort
from dilarxiv.config import Settings, get_settings
from dilarxiv.fonds import Fond
from dilarxiv.summary import RunSummary


@dataclass(slots=True)
class ApplicationContainer:
    """Aggregates wired services and adapters for the CLI layer."""

    settings: Settings
    archive_repository: ArchiveRepositoryPort
    build_service: BuildService
    query_service: QueryService
    export_service: CsvExportService
    oneshot_service: OneshotService


def _extracted_source(
    settings: Settings, fonds: list[Fond], summary: RunSummary
) -> ExtractedTreeSource:
    return ExtractedTreeSource(
        settings.get_extracted_dir(),
        fonds,
        workers=settings.parse_workers,
        queue_size=settings.parse_queue_size,
        summary=summary,
    )


def bootstrap_application(
    settings: Settings | None = None,
    *,
    archive_repository: ArchiveRepositoryPort | None = None,
    repository_factory: RepositoryFactory | None = None,
) -> ApplicationContainer:
    """Instantiate adapters and services for CLI consumption.

    ``repository_factory`` builds the repository used by one-shot searches,
    which download into their own scratch directory.
    """

    active_settings = settings or get_settings()
    repository = archive_repository or DilaHttpRepository.from_settings(active_settings)

    def scratch_repository(tarball_dir: Path) -> ArchiveRepositoryPort:
        return DilaHttpRepository.from_settings(active_settings, tarball_dir=tarball_dir)

    build_service = BuildService(
        settings=active_settings,
        archive_repository=repository,
        source_factory=lambda fonds, summary: _extracted_source(active_settings, fonds, summary),
    )
    query_service = QueryService(
        active_settings.get_index_dir(),
        default_limit=active_settings.default_limit,
    )
    export_service = CsvExportService(
        workers=active_settings.parse_workers,
        queue_size=active_settings.parse_queue_size,
    )
    oneshot_service = OneshotService(
        settings=active_settings,
        repository_factory=repository_factory or scratch_repository,
        exporter=export_service,
    )

    return ApplicationContainer(
        settings=active_settings,
        archive_repository=repository,
        build_service=build_service,
        query_service=query_service,
        export_service=export_service,
        oneshot_service=oneshot_service,
    )
