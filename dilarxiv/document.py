"""Normalized document shape shared by every fond and every document source."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from dilarxiv.fonds import Fond

STORED_FIELDS = ("uid", "title", "date", "fond", "path", "extra")


class Document(BaseModel):
    """One legal document, independent of its upstream XML schema.

    ``(fond, uid)`` identifies a document globally. Only the year of the
    document date is kept.
    """

    model_config = ConfigDict(frozen=True)

    uid: str = Field(..., min_length=1, description="Dataset-local identifier")
    title: str = Field("", description="Document title, possibly empty")
    content: str = Field("", description="Full text, possibly empty")
    date: int = Field(..., ge=0, le=9999, description="Year of the document")
    fond: Fond = Field(..., description="Dataset the document belongs to")
    extra: dict[str, str] = Field(
        default_factory=dict, description="Dataset-specific attributes (jurisdiction, judge...)"
    )
    path: str = Field(..., description="Location of the source file")

    @field_validator("extra")
    @classmethod
    def _drop_empty_extras(cls, value: dict[str, str]) -> dict[str, str]:
        return {key: item for key, item in value.items() if item}

    @property
    def key(self) -> tuple[str, str]:
        return (self.fond.value, self.uid)

    def stored_fields(self) -> dict[str, Any]:
        """Fields persisted in the document store (everything but the content)."""
        return {
            "uid": self.uid,
            "title": self.title,
            "date": self.date,
            "fond": self.fond.value,
            "path": self.path,
            "extra": dict(sorted(self.extra.items())),
        }
