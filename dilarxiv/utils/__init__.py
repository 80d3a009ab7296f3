"""Utility modules for common operations."""

from dilarxiv.utils.atomic import atomic_write_json, atomic_writer, open_output
from dilarxiv.utils.paths import find_files, safe_relative_path
from dilarxiv.utils.schema import SchemaStamp, build_schema_stamp

__all__ = [
    "atomic_write_json",
    "atomic_writer",
    "open_output",
    "find_files",
    "safe_relative_path",
    "SchemaStamp",
    "build_schema_stamp",
]
