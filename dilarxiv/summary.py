"""Accumulation of per-item failures across a run."""

from __future__ import annotations

import threading
from collections import Counter

from pydantic import BaseModel, Field, PrivateAttr


class SkippedItem(BaseModel):
    """One unit of work that was skipped, with enough context to re-run it."""

    stage: str = Field(..., description="Stage that skipped the item (download, extract...)")
    item: str = Field(..., description="Archive name, file path, or duplicate key")
    reason: str


class RunSummary(BaseModel):
    """Skip/failure summary shared by every stage of a build."""

    skipped: list[SkippedItem] = Field(default_factory=list)
    _lock: threading.Lock = PrivateAttr(default_factory=threading.Lock)

    def record(self, stage: str, item: str, reason: str) -> None:
        with self._lock:
            self.skipped.append(SkippedItem(stage=stage, item=item, reason=reason))

    @property
    def has_skips(self) -> bool:
        return bool(self.skipped)

    def counts(self) -> dict[str, int]:
        return dict(sorted(Counter(item.stage for item in self.skipped).items()))
