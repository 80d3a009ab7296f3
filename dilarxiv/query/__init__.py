"""Boolean/phrase query parsing and evaluation."""

from dilarxiv.query.engine import DEFAULT_LIMIT, QueryEngine, QueryResult
from dilarxiv.query.parser import parse_query

__all__ = ["DEFAULT_LIMIT", "QueryEngine", "QueryResult", "parse_query"]
