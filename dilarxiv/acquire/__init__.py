"""Archive acquisition from the DILA open-data server."""

from dilarxiv.acquire.download import (
    AcquisitionReport,
    Downloader,
    DownloadState,
    DownloadTask,
    discard_partial_downloads,
)
from dilarxiv.acquire.tarballs import Tarball, list_tarballs, tarballs_from_listing

__all__ = [
    "AcquisitionReport",
    "Downloader",
    "DownloadState",
    "DownloadTask",
    "Tarball",
    "discard_partial_downloads",
    "list_tarballs",
    "tarballs_from_listing",
]
