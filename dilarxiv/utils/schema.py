"""Provenance stamps written into index manifests and the SEALED marker."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from dilarxiv import __version__


class SchemaStamp(BaseModel):
    """Identifies the on-disk layout that produced a persisted artifact."""

    model_config = ConfigDict(frozen=True)

    schema_id: str
    schema_version: int = Field(..., ge=1)
    producer: str = Field(default_factory=lambda: f"dilarxiv-{__version__}")
    produced_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    def apply(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        """Return a copy of ``payload`` carrying the stamp fields."""
        return {**payload, **self.model_dump()}

    def accepts(self, payload: Mapping[str, Any]) -> bool:
        """Whether ``payload`` was stamped with the same schema id and version."""
        return (
            payload.get("schema_id") == self.schema_id
            and payload.get("schema_version") == self.schema_version
        )


def build_schema_stamp(*, schema_id: str, schema_version: int) -> SchemaStamp:
    return SchemaStamp(schema_id=schema_id, schema_version=schema_version)
