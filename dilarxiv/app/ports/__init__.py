"""Port interfaces for the dilarxiv application layer.

Services depend on these protocols, never on concrete adapters.
"""

__all__ = [
    "ArchiveRepositoryPort",
    "DocumentSourcePort",
]

from dilarxiv.app.ports.archive import ArchiveRepositoryPort
from dilarxiv.app.ports.source import DocumentSourcePort
