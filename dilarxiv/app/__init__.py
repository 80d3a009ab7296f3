"""Application layer for dilarxiv.

Services orchestrate the acquisition, extraction, indexing and query stages.
Remote and filesystem side effects are delegated to adapters via port
interfaces.
"""

__all__ = [
    "BuildResult",
    "BuildService",
    "BuildStage",
    "CsvExportService",
    "ExportOutcome",
    "OneshotResult",
    "OneshotService",
    "QueryOutcome",
    "QueryService",
]

from dilarxiv.app.build_service import BuildResult, BuildService, BuildStage
from dilarxiv.app.export_service import CsvExportService, ExportOutcome
from dilarxiv.app.oneshot_service import OneshotResult, OneshotService
from dilarxiv.app.query_service import QueryOutcome, QueryService
