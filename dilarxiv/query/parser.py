"""Boolean/phrase query parser.

Grammar (keywords are uppercase)::

    query   := or_expr
    or_expr := and_expr ("OR" and_expr)*
    and_expr:= unary (["AND"] unary)*          # juxtaposition is AND
    unary   := ("NOT" | "-") unary | primary
    primary := WORD | '"' PHRASE '"' | "(" or_expr ")"

Words and phrases go through the index analyzer. A word that analyzes to
several terms (``l'entrée``, ``R. 421-1``) is matched as a phrase; a word that
analyzes to nothing is ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from dilarxiv.errors import QuerySyntaxError
from dilarxiv.index.analyzer import analyze

KEYWORDS = {"AND", "OR", "NOT"}


class TokenKind(str, Enum):
    WORD = "word"
    PHRASE = "phrase"
    AND = "and"
    OR = "or"
    NOT = "not"
    LPAREN = "("
    RPAREN = ")"


@dataclass(frozen=True, slots=True)
class Token:
    kind: TokenKind
    text: str
    position: int


@dataclass(frozen=True, slots=True)
class Term:
    term: str


@dataclass(frozen=True, slots=True)
class Phrase:
    """Terms with their offsets relative to the first term."""

    terms: tuple[tuple[str, int], ...]


@dataclass(frozen=True, slots=True)
class Not:
    child: Node


@dataclass(frozen=True, slots=True)
class And:
    children: tuple[Node, ...]


@dataclass(frozen=True, slots=True)
class Or:
    children: tuple[Node, ...]


Node = Term | Phrase | Not | And | Or


def tokenize(query: str) -> list[Token]:
    tokens: list[Token] = []
    i = 0
    length = len(query)
    while i < length:
        char = query[i]
        if char.isspace():
            i += 1
        elif char == "(":
            tokens.append(Token(TokenKind.LPAREN, char, i))
            i += 1
        elif char == ")":
            tokens.append(Token(TokenKind.RPAREN, char, i))
            i += 1
        elif char == '"':
            end = query.find('"', i + 1)
            if end < 0:
                raise QuerySyntaxError("Unterminated quoted phrase", token=query[i:], position=i)
            tokens.append(Token(TokenKind.PHRASE, query[i + 1 : end], i))
            i = end + 1
        elif char == "-" and i + 1 < length and not query[i + 1].isspace():
            tokens.append(Token(TokenKind.NOT, char, i))
            i += 1
        else:
            start = i
            while i < length and not query[i].isspace() and query[i] not in '()"':
                i += 1
            word = query[start:i]
            if word in KEYWORDS:
                tokens.append(Token(TokenKind(word.lower()), word, start))
            else:
                tokens.append(Token(TokenKind.WORD, word, start))
    return tokens


def _text_node(text: str) -> Node | None:
    analyzed = list(analyze(text))
    if not analyzed:
        return None
    if len(analyzed) == 1:
        return Term(analyzed[0][0])
    first = analyzed[0][1]
    return Phrase(tuple((term, position - first) for term, position in analyzed))


class _Parser:
    def __init__(self, query: str) -> None:
        self.query = query
        self.tokens = tokenize(query)
        self.index = 0

    def peek(self) -> Token | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def error(self, message: str, token: Token | None) -> QuerySyntaxError:
        if token is None:
            return QuerySyntaxError(message, token="", position=len(self.query))
        return QuerySyntaxError(message, token=token.text, position=token.position)

    def parse(self) -> Node:
        if not self.tokens:
            raise QuerySyntaxError("Empty query", token="", position=0)
        node = self.parse_or()
        trailing = self.peek()
        if trailing is not None:
            raise self.error("Unbalanced closing parenthesis", trailing)
        if node is None:
            raise QuerySyntaxError("Query has no searchable terms", token=self.query, position=0)
        return node

    def _expect_operand(self, operator: Token) -> None:
        following = self.peek()
        if following is None or following.kind in (TokenKind.OR, TokenKind.AND, TokenKind.RPAREN):
            raise self.error(f"Operator {operator.text} is missing an operand", operator)

    def parse_or(self) -> Node | None:
        children = [self.parse_and()]
        while True:
            token = self.peek()
            if token is None or token.kind is not TokenKind.OR:
                break
            operator = self.advance()
            self._expect_operand(operator)
            children.append(self.parse_and())
        kept = tuple(child for child in children if child is not None)
        if not kept:
            return None
        return kept[0] if len(kept) == 1 else Or(kept)

    def parse_and(self) -> Node | None:
        start = self.peek()
        if start is None or start.kind in (TokenKind.OR, TokenKind.AND, TokenKind.RPAREN):
            raise self.error("Expected a term", start)
        children: list[Node | None] = []
        while True:
            token = self.peek()
            if token is None or token.kind in (TokenKind.OR, TokenKind.RPAREN):
                break
            if token.kind is TokenKind.AND:
                operator = self.advance()
                self._expect_operand(operator)
                continue
            children.append(self.parse_unary())
        kept = tuple(child for child in children if child is not None)
        if not kept:
            return None
        return kept[0] if len(kept) == 1 else And(kept)

    def parse_unary(self) -> Node | None:
        token = self.peek()
        if token is not None and token.kind is TokenKind.NOT:
            operator = self.advance()
            self._expect_operand(operator)
            child = self.parse_unary()
            return Not(child) if child is not None else None
        return self.parse_primary()

    def parse_primary(self) -> Node | None:
        token = self.advance()
        if token.kind in (TokenKind.WORD, TokenKind.PHRASE):
            return _text_node(token.text)
        if token.kind is TokenKind.LPAREN:
            following = self.peek()
            if following is not None and following.kind is TokenKind.RPAREN:
                raise self.error("Empty parenthesized group", token)
            node = self.parse_or()
            closing = self.peek()
            if closing is None or closing.kind is not TokenKind.RPAREN:
                raise self.error("Unbalanced opening parenthesis", token)
            self.advance()
            return node
        raise self.error("Unexpected token", token)


def parse_query(query: str) -> Node:
    """Parse ``query`` into an AST.

    Raises:
        QuerySyntaxError: With the offending token and its offset
    """
    return _Parser(query).parse()
