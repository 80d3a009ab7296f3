"""Concrete adapters wiring application ports to built-in implementations."""

from __future__ import annotations

from .dila_http import DilaHttpRepository
from .extracted import ExtractedTreeSource

__all__ = [
    "DilaHttpRepository",
    "ExtractedTreeSource",
]
