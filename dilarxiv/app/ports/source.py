"""Document source port: anything that yields normalized documents."""

from __future__ import annotations

from collections.abc import Iterator
from typing import Protocol

from dilarxiv.document import Document


class DocumentSourcePort(Protocol):
    """Port interface for streaming normalized documents.

    The extracted archive tree is one implementation; a remote lookup client
    would be another. Both produce the same ``Document`` shape, so their
    results can be indexed or exported the same way.
    """

    def iter_documents(self) -> Iterator[Document]:
        """Yield documents one at a time; closing the iterator stops the source."""
        ...
