"""Per-fond XML parsers normalizing DILA files into :class:`Document` records.

Each fond publishes its own XML schema. A closed registry maps every
:class:`Fond` to one parser variant; all of them share the same extraction
machinery and only differ in which tags carry the title, the date, the body
and the dataset-specific attributes.
"""

from __future__ import annotations

import re
import xml.etree.ElementTree as ET
from collections.abc import Mapping
from pathlib import Path
from typing import ClassVar

from pydantic import ValidationError

from dilarxiv.document import Document
from dilarxiv.errors import ParseError, UnknownFondError
from dilarxiv.fonds import Fond, parse_fond

YEAR_RE = re.compile(r"^\s*(\d{4})-\d{1,2}-\d{1,2}")
RAW_YEAR_RE = re.compile(rb"(\d{4})-\d{1,2}-\d{1,2}</DATE")
WHITESPACE_RE = re.compile(r"[ \t\r\f\v]+")
BLANK_LINES_RE = re.compile(r"\n\s*\n+")


def element_text(element: ET.Element) -> str:
    """Return the text of ``element`` and its descendants, whitespace-normalized.

    The tree is walked with an explicit stack, so nesting depth is unbounded.
    """
    parts: list[str] = []
    stack: list[ET.Element | str] = [element]
    while stack:
        item = stack.pop()
        if isinstance(item, str):
            parts.append(item)
            continue
        if item.text:
            parts.append(item.text)
        for child in reversed(item):
            if child.tail:
                stack.append(child.tail)
            stack.append("\n" if child.tag == "br" else child)
    text = WHITESPACE_RE.sub(" ", "".join(parts))
    text = BLANK_LINES_RE.sub("\n\n", text)
    return "\n".join(line.strip() for line in text.split("\n")).strip()


class FondParser:
    """Shared extraction capability; subclasses declare their tags."""

    fonds: ClassVar[tuple[Fond, ...]] = ()
    title_tags: ClassVar[tuple[str, ...]] = ("TITRE",)
    date_tags: ClassVar[tuple[str, ...]] = ()
    content_tags: ClassVar[tuple[str, ...]] = ("CONTENU",)
    extra_tags: ClassVar[Mapping[str, str]] = {}

    def parse(self, path: Path, fond: Fond) -> Document:
        """Parse ``path`` into a :class:`Document`.

        Raises:
            ParseError: If the file is unreadable, is not XML, or has no year
        """
        if path.suffix.lower() != ".xml":
            raise ParseError(f"Not an XML file: {path}", path=str(path))
        try:
            raw = path.read_bytes()
        except OSError as exc:
            raise ParseError(f"Cannot read {path}: {exc}", path=str(path)) from exc
        return self.parse_bytes(raw, fond=fond, path=str(path), default_uid=path.stem)

    def parse_bytes(self, raw: bytes, *, fond: Fond, path: str, default_uid: str) -> Document:
        try:
            root = ET.fromstring(raw.strip())
        except ET.ParseError as exc:
            raise ParseError(f"Malformed XML in {path}: {exc}", path=path) from exc
        except (LookupError, ValueError) as exc:
            raise ParseError(f"Unsupported encoding in {path}: {exc}", path=path) from exc

        uid = self._first(root, ("ID",)) or default_uid
        year = self._year(root, raw)
        if year is None:
            raise ParseError(f"No date found in {path}", path=path)

        extra: dict[str, str] = {}
        for name, tag in self.extra_tags.items():
            value = self._first(root, (tag,))
            if value:
                extra[name] = value

        try:
            return Document(
                uid=uid,
                title=self._first(root, self.title_tags) or "",
                content=self._content(root),
                date=year,
                fond=fond,
                extra=extra,
                path=path,
            )
        except ValidationError as exc:
            raise ParseError(f"Invalid document in {path}: {exc}", path=path) from exc

    @staticmethod
    def _first(root: ET.Element, tags: tuple[str, ...]) -> str | None:
        """Text of the first non-empty element among ``tags``, in tag priority order."""
        for tag in tags:
            for element in root.iter(tag):
                value = element_text(element)
                if value:
                    return value
        return None

    def _content(self, root: ET.Element) -> str:
        blocks: list[str] = []
        stack = [root]
        while stack:
            element = stack.pop()
            if element.tag in self.content_tags:
                text = element_text(element)
                if text:
                    blocks.append(text)
                continue
            stack.extend(reversed(element))
        return "\n\n".join(blocks)

    def _year(self, root: ET.Element, raw: bytes) -> int | None:
        for tag in self.date_tags:
            for element in root.iter(tag):
                match = YEAR_RE.match(element.text or "")
                if match:
                    return int(match.group(1))
        fallback = RAW_YEAR_RE.search(raw)
        if fallback:
            return int(fallback.group(1))
        return None


class JuriParser(FondParser):
    """Case law: ``TEXTE_JURI_ADMIN`` (JADE) and ``TEXTE_JURI_JUDI`` (CASS, CAPP, INCA)."""

    fonds = (Fond.JADE, Fond.CASS, Fond.CAPP, Fond.INCA)
    title_tags = ("TITRE",)
    date_tags = ("DATE_DEC",)
    content_tags = ("CONTENU",)
    extra_tags = {
        "old_id": "ANCIEN_ID",
        "origin": "ORIGINE",
        "url": "URL",
        "nature": "NATURE",
        "jurisdiction": "JURIDICTION",
        "number": "NUMERO",
        "formation": "FORMATION",
        "solution": "SOLUTION",
        "requester": "DEMANDEUR",
        "president": "PRESIDENT",
        "lawyers": "AVOCATS",
        "rapporteur": "RAPPORTEUR",
        "government_commissioner": "COMMISSAIRE_GVT",
        "ecli": "ECLI",
    }


class CnilParser(FondParser):
    """CNIL deliberations (``TEXTE_CNIL``)."""

    fonds = (Fond.CNIL,)
    title_tags = ("TITREFULL", "TITRE")
    date_tags = ("DATE_TEXTE", "DATE_PUBLI")
    content_tags = ("CONTENU",)
    extra_tags = {
        "origin": "ORIGINE",
        "url": "URL",
        "nature": "NATURE",
        "number": "NUMERO",
        "deliberation_nature": "NATURE_DELIB",
        "nor": "NOR",
        "state": "ETAT_JURIDIQUE",
    }


class TexteParser(FondParser):
    """Legislation and official journal (LEGI, JORF): texts, articles and sections."""

    fonds = (Fond.LEGI, Fond.JORF)
    title_tags = ("TITREFULL", "TITRE", "TITRE_TXT", "TITRE_TA")
    date_tags = ("DATE_TEXTE", "DATE_PUBLI", "DATE_DEBUT")
    content_tags = ("VISAS", "CONTENU", "NOTA", "SIGNATAIRES")
    extra_tags = {
        "origin": "ORIGINE",
        "url": "URL",
        "nature": "NATURE",
        "nor": "NOR",
        "number": "NUM",
        "state": "ETAT",
    }


PARSERS: Mapping[Fond, FondParser] = {
    fond: parser
    for parser in (JuriParser(), CnilParser(), TexteParser())
    for fond in parser.fonds
}


def get_parser(fond: Fond | str) -> FondParser:
    """Return the parser registered for ``fond``.

    Raises:
        UnknownFondError: If no parser handles ``fond``
    """
    parser = PARSERS.get(parse_fond(fond))
    if parser is None:
        raise UnknownFondError(f"No parser registered for fond {fond!r}")
    return parser


def parse_document(path: Path, fond: Fond) -> Document:
    """Parse one extracted file with the parser of its fond."""
    return get_parser(fond).parse(path, fond)
