"""Sealed tantivy index: analysis, construction and sealed reads."""

from dilarxiv.index.analyzer import analyze, index_text, terms
from dilarxiv.index.build import SCHEMA_ID, SCHEMA_VERSION, BuildStats, IndexBuilder, create_schema
from dilarxiv.index.metadata import IndexMetadata
from dilarxiv.index.reader import SealedIndex

__all__ = [
    "BuildStats",
    "IndexBuilder",
    "IndexMetadata",
    "SCHEMA_ID",
    "SCHEMA_VERSION",
    "SealedIndex",
    "analyze",
    "create_schema",
    "index_text",
    "terms",
]
