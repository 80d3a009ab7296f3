"""Atomic file writers: temp sibling, fsync, then os.replace."""

from __future__ import annotations

import json
import os
import sys
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Any, TextIO


@contextmanager
def atomic_writer(path: Path, *, binary: bool = False) -> Iterator[IO[Any]]:
    """Yield a handle on a temporary sibling of ``path``.

    On clean exit the contents are flushed, fsynced and moved over ``path``
    with ``os.replace``; on error the temporary file is removed and ``path`` is
    left untouched.
    """
    destination = Path(path)
    destination.parent.mkdir(parents=True, exist_ok=True)

    fd: int | None = None
    tmp_path: str | None = None

    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(destination.parent),
            prefix=destination.name,
            suffix=".tmp",
        )
        mode = "wb" if binary else "w"
        encoding = None if binary else "utf-8"
        with os.fdopen(fd, mode, encoding=encoding) as handle:
            fd = None  # Ownership transferred to file object
            yield handle
            handle.flush()
            os.fsync(handle.fileno())

        os.replace(tmp_path, destination)
        tmp_path = None
    finally:
        if fd is not None:
            os.close(fd)
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except FileNotFoundError:
                pass


def atomic_write_json(path: Path, payload: Any) -> None:
    """Write a single JSON document to ``path`` atomically."""
    with atomic_writer(path) as handle:
        json.dump(payload, handle, indent=2, sort_keys=True, ensure_ascii=False)
        handle.write("\n")


@contextmanager
def open_output(output: Path | None) -> Iterator[TextIO]:
    """Yield stdout, or an atomic text writer on ``output`` when one is given."""
    if output is None:
        yield sys.stdout
        return
    with atomic_writer(output) as handle:
        yield handle
