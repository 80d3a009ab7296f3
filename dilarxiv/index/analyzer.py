"""Term normalization shared by indexing and query parsing.

Text is diacritic-folded (NFKD, combining marks removed), split on runs of
Unicode letters and digits and lowercased. The normalized text is what the
search engine's default tokenizer receives, so its split, length filter and
lowercasing leave it unchanged. Tokens of :data:`MAX_TOKEN_BYTES` bytes or
more are dropped but still consume a position, so phrase offsets stay aligned
on both sides.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterator

TOKEN_RE = re.compile(r"[^\W_]+")
MAX_TOKEN_BYTES = 40


def fold(text: str) -> str:
    """Remove diacritics: ``"Séjour"`` becomes ``"Sejour"``."""
    if text.isascii():
        return text
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def tokens(text: str) -> list[str]:
    """Every normalized token of ``text``, overlong ones included."""
    return [match.group(0).lower() for match in TOKEN_RE.finditer(fold(text))]


def is_indexable(token: str) -> bool:
    return len(token.encode("utf-8")) < MAX_TOKEN_BYTES


def index_text(text: str) -> str:
    """Return ``text`` normalized for the full-text fields of the index.

    Args:
        text: Raw title or body text

    Returns:
        The normalized tokens joined by single spaces
    """
    return " ".join(tokens(text))


def analyze(text: str, start: int = 0) -> Iterator[tuple[str, int]]:
    """Yield ``(term, position)`` pairs for ``text``, positions starting at ``start``."""
    for position, token in enumerate(tokens(text), start):
        if is_indexable(token):
            yield token, position


def terms(text: str) -> list[str]:
    """Return the searchable terms of ``text`` in order.

    Args:
        text: Free text, as found in a document or typed in a query

    Returns:
        Folded, lowercased terms; overlong tokens are left out
    """
    return [term for term, _ in analyze(text)]
