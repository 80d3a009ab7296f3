"""Closed set of DILA datasets ("fonds") handled by dilarxiv."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum

from dilarxiv.errors import UnknownFondError


class Fond(str, Enum):
    """DILA open-data dataset, valued by its upstream directory name."""

    JORF = "JORF"
    CNIL = "CNIL"
    JADE = "JADE"
    LEGI = "LEGI"
    INCA = "INCA"
    CASS = "CASS"
    CAPP = "CAPP"

    def __str__(self) -> str:
        return self.value


ALL_FONDS: tuple[Fond, ...] = tuple(Fond)


def parse_fond(value: str | Fond) -> Fond:
    """Return the :class:`Fond` named by ``value`` (case-insensitive).

    Raises:
        UnknownFondError: If ``value`` is not a supported fond
    """
    if isinstance(value, Fond):
        return value
    try:
        return Fond(value.strip().upper())
    except ValueError as exc:
        supported = ", ".join(f.value for f in ALL_FONDS)
        raise UnknownFondError(f"Unknown fond {value!r} (supported: {supported})") from exc


def resolve_fonds(values: Iterable[str | Fond] | None) -> list[Fond]:
    """Resolve a user selection into fonds; ``None``, empty or ``all`` select every fond."""
    selected = list(values or [])
    if not selected or any(str(v).lower() == "all" for v in selected):
        return list(ALL_FONDS)
    return sorted(dict.fromkeys(parse_fond(v) for v in selected), key=ALL_FONDS.index)
