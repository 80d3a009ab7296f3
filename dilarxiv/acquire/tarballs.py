"""Listing of the archives published for each fond on the DILA server."""

from __future__ import annotations

import logging
import re
import threading
from datetime import date, datetime

import requests
from pydantic import BaseModel, ConfigDict, Field

from dilarxiv.acquire.retry import call_with_retries, is_retryable_status
from dilarxiv.errors import NetworkError
from dilarxiv.fonds import Fond

logger = logging.getLogger(__name__)

TARBALL_NAME_RE = re.compile(r"\w*-\w*\.tar\.gz")


class Tarball(BaseModel):
    """Archive published for one fond, e.g. ``CASS_20231125-130812.tar.gz``."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Remote file name")
    fond: Fond = Field(..., description="Fond the archive belongs to")
    published: date = Field(..., description="Publication date encoded in the name")

    def url(self, base_url: str) -> str:
        return f"{base_url}{self.fond.value}/{self.name}"

    def __str__(self) -> str:
        return f"{self.fond.value}/{self.name}"


def parse_tarball_date(name: str) -> date:
    """Extract the publication date from an archive name.

    The date is the ``YYYYMMDD`` block found in the last ``_``-separated part,
    before the ``-`` separating it from the time of day.

    Raises:
        ValueError: If no date can be parsed from ``name``
    """
    date_part = name.split("_")[-1].split("-")[0]
    return datetime.strptime(date_part, "%Y%m%d").date()


def tarballs_from_listing(fond: Fond, content: str) -> list[Tarball]:
    """Return the archives referenced in an HTML directory listing, sorted by name."""
    names = sorted(set(TARBALL_NAME_RE.findall(content)))
    tarballs: list[Tarball] = []
    for name in names:
        try:
            published = parse_tarball_date(name)
        except ValueError:
            logger.debug("Ignoring %s: no date in archive name", name)
            continue
        tarballs.append(Tarball(name=name, fond=fond, published=published))
    return tarballs


def fond_url(base_url: str, fond: Fond) -> str:
    return f"{base_url}{fond.value}/"


def _fetch_listing(session: requests.Session, fond: Fond, url: str, timeout: float) -> str:
    try:
        response = session.get(url, timeout=timeout)
    except requests.RequestException as exc:
        raise NetworkError(f"Failed to list archives for {fond}: {exc}") from exc

    if response.status_code != 200:
        raise NetworkError(
            f"Failed to list archives for {fond}: HTTP {response.status_code}",
            retryable=is_retryable_status(response.status_code),
        )
    return response.text


def list_tarballs(
    session: requests.Session,
    fond: Fond,
    *,
    base_url: str,
    timeout: float = 30.0,
    retries: int = 3,
    backoff_seconds: float = 1.0,
    cancel_event: threading.Event | None = None,
) -> list[Tarball]:
    """Fetch the listing page of ``fond`` and return its archives.

    Timeouts, connection errors, 5xx and 429 answers are retried with the
    same exponential backoff as archive downloads.

    Raises:
        NetworkError: If the listing cannot be fetched
    """
    url = fond_url(base_url, fond)
    logger.debug("Listing archives for %s from %s", fond, url)
    content = call_with_retries(
        lambda: _fetch_listing(session, fond, url, timeout),
        describe=f"listing of {fond}",
        retries=retries,
        backoff_seconds=backoff_seconds,
        cancel_event=cancel_event,
    )
    return tarballs_from_listing(fond, content)
