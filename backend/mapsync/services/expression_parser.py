"""
Recursive-descent parser for mapping expressions.

    expr         := atom ( '|' pipe )*
    atom         := dottedPath | literal | functionCall
    pipe         := name ( ':' atom | '(' [ expr ( ',' expr )* ] ')' )?
                  | 'case' '(' arm ( ',' arm )* ')'
    arm          := ( literal | name | 'else' ) '->' expr
    functionCall := '$func.' name '(' [ expr ( ',' expr )* ] ')'
    literal      := '...' | "..." | number | null | ~ | true | false
    dottedPath   := segment ( '.' ( segment | '...' | "..." ) )*

Nested function calls and pipe arguments increase the nesting depth; parsing
fails once it exceeds ``max_depth``.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, NamedTuple, Union

from mapsync.core.errors import ExpressionError


@dataclass(frozen=True)
class PathNode:
    segments: tuple[str, ...]


@dataclass(frozen=True)
class LiteralNode:
    value: Any


@dataclass(frozen=True)
class FunctionCallNode:
    name: str
    arguments: tuple['Node', ...]


@dataclass(frozen=True)
class PipeNode:
    source: 'Node'
    name: str
    arguments: tuple['Node', ...] = ()


@dataclass(frozen=True)
class CaseNode:
    source: 'Node'
    arms: tuple[tuple[Any, 'Node'], ...]
    otherwise: 'Node | None' = None


Node = Union[PathNode, LiteralNode, FunctionCallNode, PipeNode, CaseNode]


class Token(NamedTuple):
    kind: str
    value: Any
    pos: int


PIPE, COLON, COMMA, LPAREN, RPAREN, ARROW = 'PIPE', 'COLON', 'COMMA', 'LPAREN', 'RPAREN', 'ARROW'
STRING, NUMBER, KEYWORD, PATH, FUNC, END = 'STRING', 'NUMBER', 'KEYWORD', 'PATH', 'FUNC', 'END'

_PUNCTUATION = {'|': PIPE, ':': COLON, ',': COMMA, '(': LPAREN, ')': RPAREN}
_NUMBER_RE = re.compile(r'[-+]?\d+(?:\.\d+)?(?![\w.])')
_NAME_START_RE = re.compile(r'[^\W\d]')
_SEGMENT_RE = re.compile(r'(?:[^\s|:,()\'".~$-]|-(?!>))+')
_FUNC_RE = re.compile(r'\$func\.([^\W\d]\w*)')
_KEYWORDS = {'null': None, 'true': True, 'false': False}
_ESCAPABLE = {"'", '"', '\\'}


def tokenize(expression: str) -> list[Token]:
    tokens: list[Token] = []
    text = expression
    pos = 0
    length = len(text)
    while pos < length:
        char = text[pos]
        if char.isspace():
            pos += 1
            continue
        if char in _PUNCTUATION:
            tokens.append(Token(_PUNCTUATION[char], char, pos))
            pos += 1
            continue
        if text.startswith('->', pos):
            tokens.append(Token(ARROW, '->', pos))
            pos += 2
            continue
        if char in ('"', "'"):
            value, pos_after = _read_string(text, pos)
            tokens.append(Token(STRING, value, pos))
            pos = pos_after
            continue
        if char == '~':
            tokens.append(Token(KEYWORD, None, pos))
            pos += 1
            continue
        if char == '$':
            match = _FUNC_RE.match(text, pos)
            if not match:
                raise ExpressionError(f'expected $func.<name> at position {pos}')
            tokens.append(Token(FUNC, match.group(1), pos))
            pos = match.end()
            continue
        match = _NUMBER_RE.match(text, pos)
        if match:
            raw = match.group(0)
            tokens.append(Token(NUMBER, float(raw) if '.' in raw else int(raw), pos))
            pos = match.end()
            continue
        if _NAME_START_RE.match(text, pos):
            segments, pos_after = _read_path(text, pos)
            if len(segments) == 1 and segments[0].lower() in _KEYWORDS:
                tokens.append(Token(KEYWORD, _KEYWORDS[segments[0].lower()], pos))
            else:
                tokens.append(Token(PATH, segments, pos))
            pos = pos_after
            continue
        raise ExpressionError(f'unexpected character {char!r} at position {pos}')
    tokens.append(Token(END, None, length))
    return tokens


def _read_path(text: str, start: int) -> tuple[tuple[str, ...], int]:
    """
    Dotted path whose segments may hold any character except whitespace and the
    expression delimiters, e.g. afs.Artikel.Zusatz-Feld. A segment that needs
    those can be quoted after a dot: afs.Artikel.'Zusatz Feld'.
    """
    match = _SEGMENT_RE.match(text, start)
    segments = [match.group(0)]
    pos = match.end()
    length = len(text)
    while pos + 1 < length and text[pos] == '.':
        following = text[pos + 1]
        if following in ('"', "'"):
            segment, pos = _read_string(text, pos + 1)
            if not segment:
                raise ExpressionError(f'empty path segment at position {pos}')
            segments.append(segment)
            continue
        match = _SEGMENT_RE.match(text, pos + 1)
        if not match:
            break
        segments.append(match.group(0))
        pos = match.end()
    return tuple(segments), pos


def _read_string(text: str, start: int) -> tuple[str, int]:
    quote = text[start]
    out: list[str] = []
    pos = start + 1
    length = len(text)
    while pos < length:
        char = text[pos]
        if char == '\\' and pos + 1 < length and text[pos + 1] in _ESCAPABLE:
            out.append(text[pos + 1])
            pos += 2
            continue
        if char == quote:
            if pos + 1 < length and text[pos + 1] == quote:
                out.append(quote)
                pos += 2
                continue
            return ''.join(out), pos + 1
        out.append(char)
        pos += 1
    raise ExpressionError(f'unterminated string literal starting at position {start}')


class ExpressionParser:
    def __init__(self, max_depth: int = 16) -> None:
        self.max_depth = max(1, int(max_depth))
        self._tokens: list[Token] = []
        self._index = 0

    def parse(self, expression: str) -> Node:
        if not isinstance(expression, str) or not expression.strip():
            raise ExpressionError('empty expression')
        self._tokens = tokenize(expression)
        self._index = 0
        node = self._expression(1)
        token = self._peek()
        if token.kind != END:
            raise ExpressionError(f'unexpected {token.value!r} at position {token.pos}')
        return node

    def _peek(self) -> Token:
        return self._tokens[self._index]

    def _next(self) -> Token:
        token = self._tokens[self._index]
        if token.kind != END:
            self._index += 1
        return token

    def _expect(self, kind: str) -> Token:
        token = self._next()
        if token.kind != kind:
            found = 'end of expression' if token.kind == END else repr(token.value)
            raise ExpressionError(f'expected {kind.lower()} at position {token.pos}, found {found}')
        return token

    def _check_depth(self, depth: int) -> None:
        if depth > self.max_depth:
            raise ExpressionError(f'expression nesting exceeds maximum depth of {self.max_depth}')

    def _expression(self, depth: int) -> Node:
        node = self._atom(depth)
        while self._peek().kind == PIPE:
            self._next()
            node = self._pipe(node, depth)
        return node

    def _atom(self, depth: int) -> Node:
        self._check_depth(depth)
        token = self._next()
        if token.kind in (STRING, NUMBER, KEYWORD):
            return LiteralNode(token.value)
        if token.kind == PATH:
            return PathNode(token.value)
        if token.kind == FUNC:
            return FunctionCallNode(token.value.lower(), self._argument_list(depth + 1))
        found = 'end of expression' if token.kind == END else repr(token.value)
        raise ExpressionError(f'expected value at position {token.pos}, found {found}')

    def _argument_list(self, depth: int) -> tuple[Node, ...]:
        self._check_depth(depth)
        self._expect(LPAREN)
        arguments: list[Node] = []
        if self._peek().kind == RPAREN:
            self._next()
            return ()
        while True:
            arguments.append(self._expression(depth))
            token = self._next()
            if token.kind == RPAREN:
                return tuple(arguments)
            if token.kind != COMMA:
                found = 'end of expression' if token.kind == END else repr(token.value)
                raise ExpressionError(f"expected ',' or ')' at position {token.pos}, found {found}")

    def _pipe(self, source: Node, depth: int) -> Node:
        token = self._next()
        if token.kind != PATH or len(token.value) != 1:
            found = 'end of expression' if token.kind == END else repr(token.value)
            raise ExpressionError(f'expected pipe name at position {token.pos}, found {found}')
        name = token.value[0].lower()
        if name == 'case':
            return self._case(source, depth + 1)
        following = self._peek().kind
        if following == COLON:
            self._next()
            return PipeNode(source, name, (self._atom(depth + 1),))
        if following == LPAREN:
            return PipeNode(source, name, self._argument_list(depth + 1))
        return PipeNode(source, name)

    def _case(self, source: Node, depth: int) -> CaseNode:
        self._check_depth(depth)
        self._expect(LPAREN)
        arms: list[tuple[Any, Node]] = []
        otherwise: Node | None = None
        while True:
            key_token = self._next()
            if key_token.kind not in (STRING, NUMBER, KEYWORD, PATH):
                raise ExpressionError(f'expected case key at position {key_token.pos}')
            self._expect(ARROW)
            result = self._expression(depth)
            if key_token.kind == PATH and len(key_token.value) == 1 and key_token.value[0].lower() == 'else':
                otherwise = result
            elif key_token.kind == PATH:
                arms.append(('.'.join(key_token.value), result))
            else:
                arms.append((key_token.value, result))
            token = self._next()
            if token.kind == RPAREN:
                return CaseNode(source, tuple(arms), otherwise)
            if token.kind != COMMA:
                raise ExpressionError(f"expected ',' or ')' in case at position {token.pos}")
