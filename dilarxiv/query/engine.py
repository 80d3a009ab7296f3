"""Evaluation of parsed queries against a sealed index.

The query AST is compiled into tantivy queries: AND maps to ``Must`` clauses,
OR to ``Should`` clauses and exclusion to ``MustNot``. A term or phrase
matches in the title or in the body, never across the two. A negation with no
positive operand is taken against every document of the index. There is no
scoring: results are ordered by ``(uid, fond)``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator

import tantivy

from dilarxiv.document import Document
from dilarxiv.index.build import TEXT_FIELDS
from dilarxiv.index.reader import SealedIndex
from dilarxiv.query.parser import And, Node, Not, Or, Phrase, Term, parse_query

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10


class QueryCompiler:
    """Translate an AST into a :class:`tantivy.Query`."""

    def __init__(self, schema: tantivy.Schema) -> None:
        self.schema = schema

    def compile(self, node: Node) -> tantivy.Query:
        if isinstance(node, Term):
            return self._any_field(
                tantivy.Query.term_query(self.schema, field, node.term) for field in TEXT_FIELDS
            )
        if isinstance(node, Phrase):
            words = [(offset, term) for term, offset in node.terms]
            return self._any_field(
                tantivy.Query.phrase_query(self.schema, field, words) for field in TEXT_FIELDS
            )
        if isinstance(node, Not):
            return tantivy.Query.boolean_query(
                [
                    (tantivy.Occur.Must, tantivy.Query.all_query()),
                    (tantivy.Occur.MustNot, self.compile(node.child)),
                ]
            )
        if isinstance(node, Or):
            return tantivy.Query.boolean_query(
                [(tantivy.Occur.Should, self.compile(child)) for child in node.children]
            )
        if isinstance(node, And):
            return self._and(node)
        raise TypeError(f"Unsupported query node: {node!r}")

    def _and(self, node: And) -> tantivy.Query:
        clauses = []
        positive = False
        for child in node.children:
            if isinstance(child, Not):
                clauses.append((tantivy.Occur.MustNot, self.compile(child.child)))
            else:
                clauses.append((tantivy.Occur.Must, self.compile(child)))
                positive = True
        if not positive:
            clauses.insert(0, (tantivy.Occur.Must, tantivy.Query.all_query()))
        return tantivy.Query.boolean_query(clauses)

    @staticmethod
    def _any_field(queries: Iterable[tantivy.Query]) -> tantivy.Query:
        return tantivy.Query.boolean_query([(tantivy.Occur.Should, query) for query in queries])


class QueryResult:
    """Lazy, restartable sequence of matches.

    Nothing is searched until the result is consumed; every iteration runs
    the query again, so the result can be drained any number of times.
    """

    def __init__(self, index: SealedIndex, query: str, node: Node) -> None:
        self.index = index
        self.query = query
        self.node = node
        self.compiled = QueryCompiler(index.schema).compile(node)

    def count(self) -> int:
        return self.index.count(self.compiled)

    def addresses(self, limit: int | None = None) -> list[tantivy.DocAddress]:
        """Matching documents in ``(uid, fond)`` order, at most ``limit`` of them."""
        return self.index.ordered(self.compiled, limit)

    def first(self, n: int = DEFAULT_LIMIT) -> list[Document]:
        if n < 0:
            raise ValueError("n must be non-negative")
        return [self.index.document(address) for address in self.addresses(n)]

    def take(self, limit: int | None = DEFAULT_LIMIT) -> Iterator[Document]:
        """Yield the first ``limit`` matches, or all of them when ``limit`` is ``None``."""
        for address in self.addresses(limit):
            yield self.index.document(address)

    def __iter__(self) -> Iterator[Document]:
        return self.take(None)


class QueryEngine:
    """Parse and evaluate queries against one sealed index."""

    def __init__(self, index: SealedIndex) -> None:
        self.index = index

    def search(self, query: str) -> QueryResult:
        """Parse ``query`` and return its lazy result.

        Raises:
            QuerySyntaxError: If ``query`` cannot be parsed (no result is produced)
        """
        node = parse_query(query)
        logger.debug("Parsed query %r as %r", query, node)
        return QueryResult(self.index, query, node)
