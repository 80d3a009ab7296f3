"""Archive repository adapter for the DILA open-data HTTP server."""

from __future__ import annotations

import threading
from collections.abc import Iterable
from pathlib import Path

import requests

from dilarxiv.acquire.download import AcquisitionReport, Downloader, discard_partial_downloads
from dilarxiv.acquire.tarballs import Tarball, list_tarballs
from dilarxiv.app.ports import ArchiveRepositoryPort
from dilarxiv.config import Settings
from dilarxiv.fonds import Fond


class DilaHttpRepository(ArchiveRepositoryPort):
    """List and download archives over one shared ``requests.Session``."""

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
    ) -> None:
        self.tarball_dir = tarball_dir
        self.base_url = base_url
        self.session = session or requests.Session()
        self.timeout = timeout
        self.retries = retries
        self.backoff_seconds = backoff_seconds
        self.cancel_event = threading.Event()
        self.downloader = Downloader(
            tarball_dir,
            base_url=base_url,
            session=self.session,
            max_workers=max_workers,
            retries=retries,
            backoff_seconds=backoff_seconds,
            timeout=timeout,
            chunk_size=chunk_size,
            cancel_event=self.cancel_event,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        session: requests.Session | None = None,
        tarball_dir: Path | None = None,
    ) -> DilaHttpRepository:
        return cls(
            tarball_dir or settings.get_tarball_dir(),
            base_url=settings.base_url,
            session=session,
            max_workers=settings.download_workers,
            retries=settings.download_retries,
            backoff_seconds=settings.download_backoff_seconds,
            timeout=settings.request_timeout_seconds,
            chunk_size=settings.download_chunk_bytes,
        )

    def list_tarballs(self, fond: Fond) -> list[Tarball]:
        return list_tarballs(
            self.session,
            fond,
            base_url=self.base_url,
            timeout=self.timeout,
            retries=self.retries,
            backoff_seconds=self.backoff_seconds,
            cancel_event=self.cancel_event,
        )

    def download(self, tarballs: Iterable[Tarball]) -> AcquisitionReport:
        discard_partial_downloads(self.tarball_dir)
        return self.downloader.download_all(tarballs)

    def cancel(self) -> None:
        self.downloader.cancel()
