"""Writers for query matches: plain path lists and metadata CSV."""

from __future__ import annotations

import csv
import itertools
from collections.abc import Iterable, Sequence
from typing import TextIO

from dilarxiv.document import Document

DEFAULT_PATH_LIMIT = 10
BASE_COLUMNS = ("uid", "title", "date", "fond", "path")


def _limited(docs: Iterable[Document], limit: int | None) -> Iterable[Document]:
    if limit is None:
        return docs
    if limit < 0:
        raise ValueError("limit must be non-negative")
    return itertools.islice(docs, limit)


def write_paths(
    docs: Iterable[Document],
    out: TextIO,
    *,
    limit: int | None = DEFAULT_PATH_LIMIT,
) -> int:
    """Write one source path per line.

    At most ``limit`` paths are written; pass ``limit=None`` for a full export.
    Returns the number of lines written.
    """
    count = 0
    for document in _limited(docs, limit):
        out.write(f"{document.path}\n")
        count += 1
    return count


def csv_columns(extra_fields: Sequence[str] = ()) -> list[str]:
    """Header of a metadata CSV: the base columns, then unique extras in order."""
    columns = list(BASE_COLUMNS)
    for field in extra_fields:
        if field not in columns:
            columns.append(field)
    return columns


def csv_row(document: Document, columns: Sequence[str]) -> list[str]:
    """Render one document as CSV cells.

    Args:
        document: Document to render
        columns: Header from :func:`csv_columns`

    Returns:
        One cell per column; base columns come from the stored fields, extras
        from ``document.extra`` (empty when the document lacks one)
    """
    stored = document.stored_fields()
    row = []
    for column in columns:
        if column in BASE_COLUMNS:
            row.append(str(stored[column]))
        else:
            row.append(document.extra.get(column, ""))
    return row


def write_csv(
    docs: Iterable[Document],
    out: TextIO,
    *,
    extra_fields: Sequence[str] = (),
    limit: int | None = None,
) -> int:
    """Write matches as CSV with a header row.

    Columns are ``uid,title,date,fond,path`` followed by ``extra_fields``;
    extras a document lacks are left empty. Returns the number of data rows.
    """
    columns = csv_columns(extra_fields)
    writer = csv.writer(out, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(columns)
    count = 0
    for document in _limited(docs, limit):
        writer.writerow(csv_row(document, columns))
        count += 1
    return count
