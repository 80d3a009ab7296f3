"""Archive repository port for the acquisition stage."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from dilarxiv.acquire.download import AcquisitionReport
from dilarxiv.acquire.tarballs import Tarball
from dilarxiv.fonds import Fond


class ArchiveRepositoryPort(Protocol):
    """Port interface for listing and fetching published archives."""

    def list_tarballs(self, fond: Fond) -> list[Tarball]:
        """Return the archives currently published for ``fond``.

        Raises:
            NetworkError: If the listing cannot be fetched
        """
        ...

    def download(self, tarballs: Iterable[Tarball]) -> AcquisitionReport:
        """Fetch ``tarballs`` into the local tarball directory."""
        ...

    def cancel(self) -> None:
        """Abort in-flight downloads."""
        ...
