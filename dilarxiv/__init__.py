"""dilarxiv - Local full-text search over DILA legal open data.

Downloads, extracts and parses the DILA "fonds" (JORF, CNIL, JADE, LEGI,
INCA, CASS, CAPP) and builds a sealed tantivy full-text index that can be
queried with boolean and phrase queries.
"""

__version__ = "0.1.0"
__author__ = "dilarxiv Contributors"

from dilarxiv.config import Settings, get_settings

__all__ = ["Settings", "get_settings", "__version__"]
