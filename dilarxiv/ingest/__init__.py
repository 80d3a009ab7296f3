"""Archive extraction, per-fond parsing and the parse pipeline."""

from dilarxiv.ingest.extract import ExtractionReport, extract_fond, extract_tarballs
from dilarxiv.ingest.parse import PARSERS, FondParser, get_parser, parse_document
from dilarxiv.ingest.pipeline import ParsePipeline, discover_files

__all__ = [
    "ExtractionReport",
    "FondParser",
    "PARSERS",
    "ParsePipeline",
    "discover_files",
    "extract_fond",
    "extract_tarballs",
    "get_parser",
    "parse_document",
]
