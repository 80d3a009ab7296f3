"""Summary metadata about index contents (documents per fond, year range)."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, TypedDict

from dilarxiv.utils.atomic import atomic_write_json

logger = logging.getLogger(__name__)

METADATA_NAME = ".metadata_cache.json"


class CachePayload(TypedDict):
    fonds: dict[str, int]
    min_year: int | None
    max_year: int | None
    doc_count: int


class IndexMetadata:
    """Cached metadata about index contents.

    Maintained by the builder while documents are added and persisted next to
    the segments, so ``dilarxiv info`` answers without scanning the store.
    """

    def __init__(self, index_dir: Path):
        self.index_dir = index_dir
        self.cache_file = index_dir / METADATA_NAME
        self._cache: CachePayload = self._load_cache()

    def _load_cache(self) -> CachePayload:
        if self.cache_file.exists():
            try:
                with open(self.cache_file, encoding="utf-8") as fh:
                    data = json.load(fh)
                    return self._normalize_loaded_cache(data)
            except (OSError, json.JSONDecodeError) as exc:
                return self._handle_corrupt_cache(f"{exc}")
        return self._empty_cache()

    def _empty_cache(self) -> CachePayload:
        return CachePayload(fonds={}, min_year=None, max_year=None, doc_count=0)

    def _normalize_loaded_cache(self, data: Mapping[str, Any]) -> CachePayload:
        """Normalize cache payloads loaded from disk."""
        fonds = data.get("fonds", {})
        min_year = data.get("min_year")
        max_year = data.get("max_year")
        doc_count = data.get("doc_count", 0)

        if not isinstance(fonds, dict):
            fonds = {}
        if not isinstance(min_year, int):
            min_year = None
        if not isinstance(max_year, int):
            max_year = None
        if not isinstance(doc_count, int):
            doc_count = 0

        return CachePayload(
            fonds={str(k): int(v) for k, v in sorted(fonds.items()) if isinstance(v, int)},
            min_year=min_year,
            max_year=max_year,
            doc_count=doc_count,
        )

    def _handle_corrupt_cache(self, reason: str) -> CachePayload:
        """Handle corrupted cache files by logging and backing up the payload."""

        logger.warning(
            "Metadata cache %s is corrupted (%s); rebuilding fresh cache.",
            self.cache_file,
            reason,
        )

        backup_path = self.cache_file.with_suffix(".corrupt")
        try:
            if self.cache_file.exists():
                if backup_path.exists():
                    backup_path.unlink()
                self.cache_file.replace(backup_path)
        except OSError:
            logger.debug("Failed to backup corrupted cache %s", self.cache_file)
        return self._empty_cache()

    def reset(self) -> None:
        self._cache = self._empty_cache()

    def update(self, fond: str, year: int) -> None:
        """Account for one indexed document."""
        fonds = self._cache["fonds"]
        fonds[fond] = fonds.get(fond, 0) + 1
        if self._cache["min_year"] is None or year < self._cache["min_year"]:
            self._cache["min_year"] = year
        if self._cache["max_year"] is None or year > self._cache["max_year"]:
            self._cache["max_year"] = year
        self._cache["doc_count"] += 1

    def save(self) -> None:
        """Persist cache to disk (raises ``OSError`` on failure)."""
        payload = dict(self._cache)
        payload["fonds"] = dict(sorted(self._cache["fonds"].items()))
        atomic_write_json(self.cache_file, payload)

    def get_fonds(self) -> dict[str, int]:
        return dict(self._cache["fonds"])

    def get_year_range(self) -> tuple[int, int] | None:
        low, high = self._cache["min_year"], self._cache["max_year"]
        if low is None or high is None:
            return None
        return low, high
