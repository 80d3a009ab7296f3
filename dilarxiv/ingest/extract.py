"""Streaming extraction of (possibly nested) DILA archives.

Archives are read with :mod:`tarfile` in stream mode, so no archive is ever
held in memory or seeked. Members that are archives themselves are unwrapped
recursively; every other member is a leaf written under
``extracted/<FOND>/<member path>``.
"""

from __future__ import annotations

import gzip
import hashlib
import logging
import os
import tarfile
import tempfile
import zlib
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path, PurePosixPath
from typing import IO

from pydantic import BaseModel, Field

from dilarxiv.errors import ArchiveError, ExtractionIOError
from dilarxiv.fonds import Fond
from dilarxiv.utils.paths import safe_relative_path

logger = logging.getLogger(__name__)

TAR_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.bz2", ".tar.xz")
MAX_NESTING = 8
COPY_CHUNK = 1 << 16
STATE_DIR = ".state"

_STREAM_ERRORS = (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile)


class ExtractionFailure(BaseModel):
    archive: str
    member: str | None = None
    reason: str


class ExtractionReport(BaseModel):
    """Outcome of one extraction run."""

    archives_processed: list[str] = Field(default_factory=list)
    archives_skipped: list[str] = Field(default_factory=list)
    leaves_written: int = 0
    leaves_unchanged: int = 0
    failures: list[ExtractionFailure] = Field(default_factory=list)

    def merge(self, other: ExtractionReport) -> None:
        self.archives_processed.extend(other.archives_processed)
        self.archives_skipped.extend(other.archives_skipped)
        self.leaves_written += other.leaves_written
        self.leaves_unchanged += other.leaves_unchanged
        self.failures.extend(other.failures)


def _is_tar_name(name: str) -> bool:
    lowered = name.lower()
    return lowered.endswith(TAR_SUFFIXES)


def _same_content(path: Path, expected_hex: str) -> bool:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(COPY_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest() == expected_hex


def _write_leaf(stream: IO[bytes], destination: Path) -> bool:
    """Stream ``stream`` into ``destination``.

    Returns ``True`` when the file was created or replaced and ``False`` when
    an identical file was already present.
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    digest = hashlib.sha256()
    fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=".", suffix=".tmp")
    tmp_path: Path | None = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as handle:
            while True:
                chunk = stream.read(COPY_CHUNK)
                if not chunk:
                    break
                digest.update(chunk)
                handle.write(chunk)

        if destination.is_file() and _same_content(destination, digest.hexdigest()):
            return False

        os.replace(tmp_name, destination)
        tmp_path = None
        return True
    finally:
        if tmp_path is not None:
            tmp_path.unlink(missing_ok=True)


class ArchiveExtractor:
    """Extract one archive into a fond directory, skipping corrupt entries."""

    def __init__(self, archive: Path, destination: Path) -> None:
        self.archive = archive
        self.destination = destination
        self.report = ExtractionReport()
        self.completed = False

    def run(self) -> ExtractionReport:
        label = self.archive.name
        try:
            with open(self.archive, "rb") as fh, tarfile.open(fileobj=fh, mode="r|*") as tar:
                self._walk(tar, PurePosixPath(), depth=0)
        except _STREAM_ERRORS as exc:
            logger.warning("Archive %s is corrupt, stopping after partial read: %s", label, exc)
            self._fail(None, f"corrupt archive stream: {exc}")
        except OSError as exc:
            logger.warning("Cannot read archive %s: %s", label, exc)
            self._fail(None, f"cannot read archive: {exc}")
        else:
            self.completed = True
            self.report.archives_processed.append(label)
        return self.report

    def _fail(self, member: str | None, reason: str) -> None:
        self.report.failures.append(
            ExtractionFailure(archive=self.archive.name, member=member, reason=reason)
        )

    def _walk(self, tar: tarfile.TarFile, prefix: PurePosixPath, *, depth: int) -> None:
        for member in tar:
            if member.isdir():
                continue
            display = str(prefix / member.name) if prefix.parts else member.name
            if not member.isfile():
                logger.debug("Skipping non-regular member %s in %s", display, self.archive.name)
                continue
            try:
                self._extract_member(tar, member, prefix, depth=depth)
            except ArchiveError as exc:
                logger.warning(
                    "Skipping corrupt entry %s in %s: %s", display, self.archive.name, exc
                )
                self._fail(display, str(exc))

    def _extract_member(
        self,
        tar: tarfile.TarFile,
        member: tarfile.TarInfo,
        prefix: PurePosixPath,
        *,
        depth: int,
    ) -> None:
        try:
            relative = prefix / safe_relative_path(member.name)
        except ValueError as exc:
            raise ArchiveError(str(exc), archive=self.archive.name, member=member.name) from exc

        stream = tar.extractfile(member)
        if stream is None:
            raise ArchiveError("unreadable member", archive=self.archive.name, member=member.name)

        try:
            if _is_tar_name(relative.name):
                if depth >= MAX_NESTING:
                    raise ArchiveError(
                        f"nesting deeper than {MAX_NESTING} levels",
                        archive=self.archive.name,
                        member=member.name,
                    )
                with tarfile.open(fileobj=stream, mode="r|*") as nested:
                    self._walk(nested, relative.parent, depth=depth + 1)
            elif relative.suffix.lower() == ".gz":
                with gzip.GzipFile(fileobj=stream, mode="rb") as gunzipped:
                    self._store(gunzipped, relative.with_suffix(""))
            else:
                self._store(stream, relative)
        except _STREAM_ERRORS as exc:
            raise ArchiveError(
                f"cannot decompress: {exc}", archive=self.archive.name, member=member.name
            ) from exc
        finally:
            stream.close()

    def _store(self, stream: IO[bytes], relative: PurePosixPath) -> None:
        """Write one leaf.

        Raises:
            ExtractionIOError: If the destination cannot be written
        """
        destination = self.destination.joinpath(*relative.parts)
        try:
            written = _write_leaf(stream, destination)
        except _STREAM_ERRORS:
            raise
        except OSError as exc:
            raise ExtractionIOError(f"Cannot write {destination}: {exc}") from exc
        if written:
            self.report.leaves_written += 1
        else:
            self.report.leaves_unchanged += 1


def _marker_path(extracted_dir: Path, fond: Fond, archive: Path) -> Path:
    return extracted_dir / STATE_DIR / fond.value / f"{archive.name}.done"


def extract_fond(
    tarball_dir: Path,
    extracted_dir: Path,
    fond: Fond,
    *,
    force: bool = False,
) -> ExtractionReport:
    """Extract every archive of ``fond`` in name (publication date) order.

    Later archives overwrite leaves of earlier ones, so the resulting tree
    does not depend on scheduling.
    """
    report = ExtractionReport()
    source_dir = tarball_dir / fond.value
    if not source_dir.is_dir():
        logger.debug("No archives downloaded for %s", fond)
        return report

    archives = sorted(p for p in source_dir.iterdir() if p.is_file() and _is_tar_name(p.name))
    destination = extracted_dir / fond.value
    for archive in archives:
        marker = _marker_path(extracted_dir, fond, archive)
        if marker.exists() and not force:
            report.archives_skipped.append(archive.name)
            continue

        logger.info("Extracting %s into %s", archive, destination)
        extractor = ArchiveExtractor(archive, destination)
        report.merge(extractor.run())
        if extractor.completed:
            marker.parent.mkdir(parents=True, exist_ok=True)
            marker.write_text(f"{archive.stat().st_size}\n", encoding="utf-8")
    return report


def extract_tarballs(
    tarball_dir: Path,
    extracted_dir: Path,
    fonds: Iterable[Fond],
    *,
    max_workers: int = 4,
    force: bool = False,
) -> ExtractionReport:
    """Extract all downloaded archives, one worker per fond."""
    selected = list(fonds)
    report = ExtractionReport()
    if not selected:
        return report

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(selected)))) as executor:
        futures = [
            executor.submit(extract_fond, tarball_dir, extracted_dir, fond, force=force)
            for fond in selected
        ]
        for future in futures:
            report.merge(future.result())
    return report
