"""dilarxiv CLI application with Typer."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated

import typer

from dilarxiv import __version__
from dilarxiv.app.build_service import BuildResult
from dilarxiv.bootstrap import bootstrap_application
from dilarxiv.config import get_settings, set_settings
from dilarxiv.errors import (
    DilarxivError,
    IndexIOError,
    IndexUnavailableError,
    NetworkError,
    QuerySyntaxError,
    UnknownFondError,
)
from dilarxiv.fonds import Fond, parse_fond
from dilarxiv.summary import RunSummary

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="dilarxiv",
    help="Download, index and search the DILA legal open-data archives",
    add_completion=True,
    no_args_is_help=True,
)

EXIT_FATAL = 2

_STATUS_COLORS = {
    "completed": typer.colors.GREEN,
    "skipped": typer.colors.BLUE,
    "failed": typer.colors.RED,
    "pending": typer.colors.YELLOW,
}


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        typer.echo(f"dilarxiv version {__version__}")
        raise typer.Exit()


def _fatal(message: str) -> typer.Exit:
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    return typer.Exit(code=EXIT_FATAL)


@contextmanager
def _command_errors(action: str) -> Iterator[None]:
    """Turn any error escaping a command into a logged fatal exit."""
    try:
        yield
    except typer.Exit:
        raise
    except DilarxivError as exc:
        logger.error("%s failed: %s", action, exc)
        raise _fatal(str(exc)) from exc
    except Exception as exc:
        logger.exception("%s failed", action)
        raise _fatal(f"{action} failed: {type(exc).__name__}: {exc}") from exc


def _parse_fonds(values: list[str] | None) -> list[Fond] | None:
    try:
        return [parse_fond(value) for value in values] if values else None
    except UnknownFondError as exc:
        raise _fatal(str(exc)) from exc


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", "-v", callback=version_callback, is_eager=True),
    ] = None,
    verbose: Annotated[
        int,
        typer.Option("--verbose", "-V", count=True, help="Increase log verbosity (-V info, -VV debug)"),
    ] = 0,
    data_dir: Annotated[
        Path | None,
        typer.Option("--data-dir", help="Override data directory"),
    ] = None,
    index_dir: Annotated[
        Path | None,
        typer.Option("--index-dir", help="Override index directory"),
    ] = None,
) -> None:
    """dilarxiv - full-text search over the DILA open-data fonds."""
    # Update settings with CLI flags
    settings = get_settings()
    if data_dir:
        settings.data_dir = data_dir
    if index_dir:
        settings.index_dir = index_dir
    if verbose >= 2:
        settings.log_level = "DEBUG"
    elif verbose == 1:
        settings.log_level = "INFO"
    set_settings(settings)

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _print_build_result(result: BuildResult) -> None:
    for stage in result.stages:
        duration = f" in {stage.duration_seconds:.1f}s" if stage.duration_seconds else ""
        metrics = ""
        if stage.metrics:
            metrics = " (" + ", ".join(f"{k}={v}" for k, v in stage.metrics.items()) + ")"
        typer.secho(
            f"  {stage.name}: {stage.status}{duration}{metrics}",
            fg=_STATUS_COLORS.get(stage.status),
            err=True,
        )

    _print_skips(result.summary)


def _print_skips(summary: RunSummary) -> None:
    if not summary.has_skips:
        return
    counts = ", ".join(f"{stage}={count}" for stage, count in summary.counts().items())
    typer.secho(f"Completed with skipped items: {counts}", fg=typer.colors.YELLOW, err=True)
    for item in summary.skipped:
        typer.echo(f"  [{item.stage}] {item.item}: {item.reason}", err=True)


@app.command("build")
def build(
    fond: Annotated[
        list[str] | None,
        typer.Option("--fond", "-f", help="Fond to process (repeatable; default: all)"),
    ] = None,
    no_download: Annotated[
        bool,
        typer.Option("--no-download", help="Skip archive download"),
    ] = False,
    no_extract: Annotated[
        bool,
        typer.Option("--no-extract", help="Skip archive extraction"),
    ] = False,
    no_index: Annotated[
        bool,
        typer.Option("--no-index", help="Skip index construction"),
    ] = False,
    rebuild: Annotated[
        bool,
        typer.Option("--rebuild", help="Clear an existing sealed index and build it again"),
    ] = False,
) -> None:
    """Download, extract and index the requested fonds."""
    fonds = _parse_fonds(fond)

    with _command_errors("build"):
        container = bootstrap_application()
        typer.secho(
            "Building "
            + (", ".join(f.value for f in fonds) if fonds else "all fonds")
            + f" in {container.settings.get_data_dir()}...",
            fg=typer.colors.BLUE,
            err=True,
        )

        try:
            result = container.build_service.run(
                fonds,
                download=not no_download,
                extract=not no_extract,
                index=not no_index,
                rebuild=rebuild,
            )
        except IndexIOError as exc:
            hint = "" if rebuild else " (use --rebuild to replace an existing index)"
            raise _fatal(f"{exc}{hint}") from exc
        except KeyboardInterrupt as exc:
            typer.secho("Interrupted; incomplete downloads were discarded.", fg=typer.colors.YELLOW, err=True)
            raise typer.Exit(code=EXIT_FATAL) from exc

    _print_build_result(result)
    if result.index is not None:
        typer.secho(
            f"Indexed {result.index.doc_count} documents to {container.settings.get_index_dir()}",
            fg=typer.colors.GREEN,
            err=True,
        )
    raise typer.Exit(code=result.exit_code)


@app.command("query")
def query(
    query_string: Annotated[str, typer.Argument(metavar="QUERY", help="Search query")],
    all_results: Annotated[
        bool,
        typer.Option("--all", help="Export every match instead of the first N"),
    ] = False,
    limit: Annotated[
        int | None,
        typer.Option("--limit", "-n", min=0, help="Maximum results to return (default 10)"),
    ] = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write results to this file instead of stdout"),
    ] = None,
    as_csv: Annotated[
        bool,
        typer.Option("--csv", help="Write a metadata CSV instead of a path list"),
    ] = False,
    field: Annotated[
        list[str] | None,
        typer.Option("--field", "-F", help="Extra CSV column (repeatable, e.g. ecli, jurisdiction)"),
    ] = None,
) -> None:
    """Search the sealed index.

    Bare words are ANDed; use OR, NOT or a leading '-' to exclude, and double
    quotes for phrases: CESEDA OR "code de l'entrée et du séjour des étrangers"
    """
    with _command_errors("query"):
        container = bootstrap_application()
        try:
            outcome = container.query_service.export(
                query_string,
                limit=limit,
                full=all_results,
                output=output,
                as_csv=as_csv,
                extra_fields=field or (),
            )
        except QuerySyntaxError as exc:
            raise _fatal(f"Invalid query: {exc}") from exc
        except IndexUnavailableError as exc:
            raise _fatal(str(exc)) from exc

    if outcome.total_matches == 0:
        typer.secho("No results found", fg=typer.colors.YELLOW, err=True)
    elif outcome.output is not None:
        typer.secho(
            f"Wrote {outcome.written} of {outcome.total_matches} matches to {outcome.output}",
            fg=typer.colors.GREEN,
            err=True,
        )
    elif outcome.written < outcome.total_matches:
        typer.secho(
            f"Showing {outcome.written} of {outcome.total_matches} matches (use --all for every match)",
            fg=typer.colors.BLUE,
            err=True,
        )


@app.command("oneshot")
def oneshot(
    query_string: Annotated[str, typer.Argument(metavar="QUERY", help="Search query")],
    fond: Annotated[
        list[str] | None,
        typer.Option("--fond", "-f", help="Fond to search (repeatable; default: all)"),
    ] = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the metadata CSV to this file instead of stdout"),
    ] = None,
    field: Annotated[
        list[str] | None,
        typer.Option("--field", "-F", help="Extra CSV column (repeatable, e.g. ecli, jurisdiction)"),
    ] = None,
    results_dir: Annotated[
        Path | None,
        typer.Option("--results-dir", help="Where matching files are kept (default: <data_dir>/results)"),
    ] = None,
    chunk_size: Annotated[
        int | None,
        typer.Option("--chunk-size", min=1, help="Archives processed together (default 10)"),
    ] = None,
    work_dir: Annotated[
        Path | None,
        typer.Option("--work-dir", help="Parent directory of the scratch space"),
    ] = None,
) -> None:
    """Download and search the archives a few at a time, keeping only the matches.

    Uses the disk space of one chunk of archives instead of a full index, at
    the cost of a download per query.
    """
    fonds = _parse_fonds(fond)

    with _command_errors("oneshot"):
        container = bootstrap_application()
        try:
            result = container.oneshot_service.run(
                query_string,
                fonds,
                output=output,
                results_dir=results_dir,
                extra_fields=field or (),
                work_dir=work_dir,
                chunk_size=chunk_size,
            )
        except QuerySyntaxError as exc:
            raise _fatal(f"Invalid query: {exc}") from exc
        except KeyboardInterrupt as exc:
            typer.secho("Interrupted; the scratch directory was removed.", fg=typer.colors.YELLOW, err=True)
            raise typer.Exit(code=EXIT_FATAL) from exc

    _print_skips(result.summary)
    typer.secho(
        f"Searched {result.archives} archives in {result.chunks} chunks: "
        f"{result.matches} matches kept in {result.results_dir}",
        fg=typer.colors.GREEN,
        err=True,
    )
    raise typer.Exit(code=result.exit_code)


@app.command("export-csv")
def export_csv(
    paths_file: Annotated[
        Path,
        typer.Argument(
            metavar="PATHS_FILE",
            exists=True,
            dir_okay=False,
            readable=True,
            help="File listing one document path per line (e.g. 'query --all' output)",
        ),
    ],
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the CSV to this file instead of stdout"),
    ] = None,
    field: Annotated[
        list[str] | None,
        typer.Option("--field", "-F", help="Extra CSV column (repeatable, e.g. ecli, jurisdiction)"),
    ] = None,
    fond: Annotated[
        str | None,
        typer.Option("--fond", "-f", help="Fond of every listed file (default: taken from each path)"),
    ] = None,
    base_dir: Annotated[
        Path | None,
        typer.Option("--base-dir", help="Directory that relative paths are resolved against"),
    ] = None,
) -> None:
    """Re-parse the listed documents and write their metadata as CSV."""
    selected = _parse_fonds([fond] if fond else None)

    with _command_errors("export-csv"):
        container = bootstrap_application()
        outcome = container.export_service.export_paths_file(
            paths_file,
            output=output,
            fond=selected[0] if selected else None,
            base_dir=base_dir,
            extra_fields=field or (),
        )

    _print_skips(outcome.summary)
    if outcome.output is not None:
        typer.secho(
            f"Wrote {outcome.written} of {outcome.requested} documents to {outcome.output}",
            fg=typer.colors.GREEN,
            err=True,
        )
    raise typer.Exit(code=outcome.exit_code)


@app.command("info")
def info() -> None:
    """Show what the sealed index holds."""
    with _command_errors("info"):
        container = bootstrap_application()
        try:
            with container.query_service.open_index() as index:
                metadata = index.metadata()
                doc_count = index.doc_count
                segments = index.segment_count
        except IndexUnavailableError as exc:
            raise _fatal(str(exc)) from exc

    typer.echo(f"Index: {container.query_service.index_dir}")
    typer.echo(f"Documents: {doc_count}")
    typer.echo(f"Segments: {segments}")
    year_range = metadata.get_year_range()
    if year_range is not None:
        typer.echo(f"Years: {year_range[0]}-{year_range[1]}")
    for name, count in metadata.get_fonds().items():
        typer.echo(f"  {name}: {count}")


@app.command("archives")
def archives(
    fond: Annotated[str, typer.Argument(help="Fond whose published archives to list")],
) -> None:
    """List the archives published for a fond on the DILA server."""
    with _command_errors("archives"):
        container = bootstrap_application()
        try:
            selected = parse_fond(fond)
            tarballs = container.archive_repository.list_tarballs(selected)
        except UnknownFondError as exc:
            raise _fatal(str(exc)) from exc
        except NetworkError as exc:
            raise _fatal(str(exc)) from exc

    if not tarballs:
        typer.secho(f"No archives published for {selected}", fg=typer.colors.YELLOW, err=True)
        return

    for tarball in tarballs:
        typer.echo(f"{tarball.published.isoformat()}  {tarball.name}")
