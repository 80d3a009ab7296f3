"""Bounded-parallel archive downloads with retry, resume and cancellation.

Every archive is driven through an explicit state machine::

    PENDING -> DOWNLOADING -> (RETRYING(n) -> DOWNLOADING)* -> DONE | FAILED

Bytes are streamed into ``<name>.part`` and renamed into place only once the
body has been fully received, so a file at the final path is always complete
and is never downloaded again.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import requests
from pydantic import BaseModel, Field

from dilarxiv.acquire.retry import backoff_delay, is_retryable_status
from dilarxiv.acquire.tarballs import Tarball
from dilarxiv.errors import NetworkError

logger = logging.getLogger(__name__)

PART_SUFFIX = ".part"


class DownloadState(str, Enum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


class DownloadCancelled(Exception):
    """Raised inside a worker when the cancellation event is set."""


@dataclass(slots=True)
class DownloadTask:
    """Mutable per-archive progress record."""

    tarball: Tarball
    destination: Path
    state: DownloadState = DownloadState.PENDING
    attempts: int = 0
    bytes_written: int = 0
    skipped_existing: bool = False
    error: str | None = None
    history: list[DownloadState] = field(default_factory=list)

    def transition(self, state: DownloadState) -> None:
        self.history.append(self.state)
        self.state = state

    @property
    def part_path(self) -> Path:
        return self.destination.with_name(self.destination.name + PART_SUFFIX)


class AcquisitionReport(BaseModel):
    """Outcome of one acquisition run."""

    downloaded: list[str] = Field(default_factory=list)
    skipped_existing: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class Downloader:
    """Download archives into ``<tarball_dir>/<FOND>/<name>``."""

    def __init__(
        self,
        tarball_dir: Path,
        *,
        base_url: str,
        session: requests.Session | None = None,
        max_workers: int = 10,
        retries: int = 3,
        backoff_seconds: float = 1.0,
        timeout: float = 30.0,
        chunk_size: int = 1 << 20,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self._tarball_dir = tarball_dir
        self._base_url = base_url
        self._session = session or requests.Session()
        self._max_workers = max_workers
        self._retries = retries
        self._backoff = backoff_seconds
        self._timeout = timeout
        self._chunk_size = chunk_size
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self) -> None:
        """Abort in-flight downloads; their partial files are discarded."""
        self.cancel_event.set()

    def destination_for(self, tarball: Tarball) -> Path:
        return self._tarball_dir / tarball.fond.value / tarball.name

    def download_all(self, tarballs: Iterable[Tarball]) -> AcquisitionReport:
        """Download every archive, tolerating per-archive failures."""
        tasks = [DownloadTask(tarball=t, destination=self.destination_for(t)) for t in tarballs]
        report = AcquisitionReport()
        if not tasks:
            return report

        with ThreadPoolExecutor(max_workers=self._max_workers) as executor:
            futures = {executor.submit(self.run_task, task): task for task in tasks}
            try:
                completed = list(self._drain(futures))
            except BaseException:
                self.cancel()
                raise
            for task in completed:
                key = str(task.tarball)
                if task.state is DownloadState.DONE:
                    if task.skipped_existing:
                        report.skipped_existing.append(key)
                    else:
                        report.downloaded.append(key)
                else:
                    report.failed[key] = task.error or "unknown error"

        report.downloaded.sort()
        report.skipped_existing.sort()
        return report

    @staticmethod
    def _drain(futures: dict[Future[DownloadTask], DownloadTask]) -> Iterable[DownloadTask]:
        for future in as_completed(futures):
            future.result()
            yield futures[future]

    def run_task(self, task: DownloadTask) -> DownloadTask:
        """Drive ``task`` to DONE or FAILED. Never raises for per-archive errors."""
        if task.destination.exists():
            logger.debug("%s already exists, skipping download", task.destination)
            task.skipped_existing = True
            task.transition(DownloadState.DONE)
            return task

        task.destination.parent.mkdir(parents=True, exist_ok=True)
        while True:
            task.attempts += 1
            task.transition(DownloadState.DOWNLOADING)
            try:
                self._fetch(task)
            except DownloadCancelled:
                self._discard_part(task)
                task.error = "cancelled"
                task.transition(DownloadState.FAILED)
                return task
            except NetworkError as exc:
                self._discard_part(task)
                task.error = str(exc)
                if not exc.retryable or task.attempts > self._retries:
                    logger.warning(
                        "Download of %s failed after %d attempt(s): %s",
                        task.tarball,
                        task.attempts,
                        exc,
                    )
                    task.transition(DownloadState.FAILED)
                    return task
                delay = backoff_delay(self._backoff, task.attempts)
                logger.info(
                    "Retrying %s in %.1fs (attempt %d/%d): %s",
                    task.tarball,
                    delay,
                    task.attempts,
                    self._retries,
                    exc,
                )
                task.transition(DownloadState.RETRYING)
                if self.cancel_event.wait(delay):
                    task.error = "cancelled"
                    task.transition(DownloadState.FAILED)
                    return task
            except OSError as exc:
                self._discard_part(task)
                task.error = f"cannot write {task.destination}: {exc}"
                logger.warning("Download of %s failed: %s", task.tarball, task.error)
                task.transition(DownloadState.FAILED)
                return task
            else:
                task.error = None
                task.transition(DownloadState.DONE)
                return task

    def _fetch(self, task: DownloadTask) -> None:
        if self.cancel_event.is_set():
            raise DownloadCancelled()

        url = task.tarball.url(self._base_url)
        try:
            response = self._session.get(url, stream=True, timeout=self._timeout)
        except requests.RequestException as exc:
            raise NetworkError(f"GET {url} failed: {exc}") from exc

        with response:
            if response.status_code != 200:
                raise NetworkError(
                    f"GET {url} returned HTTP {response.status_code}",
                    retryable=is_retryable_status(response.status_code),
                )

            expected = response.headers.get("Content-Length")
            written = 0
            try:
                with open(task.part_path, "wb") as handle:
                    for chunk in response.iter_content(chunk_size=self._chunk_size):
                        if self.cancel_event.is_set():
                            raise DownloadCancelled()
                        if chunk:
                            handle.write(chunk)
                            written += len(chunk)
                    handle.flush()
                    os.fsync(handle.fileno())
            except requests.RequestException as exc:
                raise NetworkError(f"Interrupted download of {url}: {exc}") from exc

        if expected is not None and expected.isdigit() and int(expected) != written:
            raise NetworkError(f"Truncated download of {url}: {written}/{expected} bytes")

        os.replace(task.part_path, task.destination)
        task.bytes_written = written

    @staticmethod
    def _discard_part(task: DownloadTask) -> None:
        try:
            task.part_path.unlink()
        except FileNotFoundError:
            pass


def discard_partial_downloads(tarball_dir: Path) -> int:
    """Remove ``.part`` leftovers from an interrupted previous run."""
    removed = 0
    for part in sorted(tarball_dir.rglob(f"*{PART_SUFFIX}")):
        logger.info("Discarding incomplete download %s", part)
        part.unlink(missing_ok=True)
        removed += 1
    return removed
