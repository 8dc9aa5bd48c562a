"""
DSL Lexer — tokenizes the TypeScript-shaped workflow module.

Only the subset of the language that workflow files use is recognized:
identifiers, string literals (single, double and backtick quoted),
numbers and punctuation. Comments and whitespace are dropped. Any other
character becomes a one-character punctuation token, so arrow-function
bodies (which the parser keeps as raw source) never stop the lexer.
"""

from __future__ import annotations

import re
from bisect import bisect_right
from dataclasses import dataclass
from typing import List, Tuple

from flowstudio.errors import ParseError

IDENT = "ident"
STRING = "string"
TEMPLATE = "template"
NUMBER = "number"
PUNCT = "punct"
EOF = "eof"

_IDENT_RE = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")
_NUMBER_RE = re.compile(r"(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_MULTI_PUNCT = ("=>", "...", "===", "!==", "==", "!=", "&&", "||", "??", "?.", "<=", ">=")

_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "b": "\b",
    "f": "\f",
    "v": "\v",
    "0": "\0",
}


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    start: int
    end: int
    line: int
    column: int

    def is_punct(self, value: str) -> bool:
        return self.kind == PUNCT and self.value == value

    def is_ident(self, value: str) -> bool:
        return self.kind == IDENT and self.value == value


class Lexer:
    """Single-pass tokenizer tracking 1-based line/column positions."""

    def __init__(self, source: str):
        self.source = source
        self.pos = 0
        self.line_starts = [0] + [m.end() for m in re.finditer("\n", source)]

    def location(self, offset: int) -> Tuple[int, int]:
        """1-based (line, column) of a source offset."""
        index = bisect_right(self.line_starts, offset) - 1
        return index + 1, offset - self.line_starts[index] + 1

    def error(self, message: str, offset: int) -> ParseError:
        line, column = self.location(offset)
        return ParseError(message, line, column)

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        while True:
            self._skip_trivia()
            if self.pos >= len(self.source):
                tokens.append(self._token(EOF, "", self.pos))
                return tokens
            tokens.append(self._next_token())

    # ── Internals ──

    def _token(self, kind: str, value: str, start: int) -> Token:
        line, column = self.location(start)
        return Token(kind, value, start, self.pos, line, column)

    def _skip_trivia(self) -> None:
        src = self.source
        while self.pos < len(src):
            ch = src[self.pos]
            if ch.isspace():
                self.pos += 1
            elif src.startswith("//", self.pos):
                newline = src.find("\n", self.pos)
                self.pos = len(src) if newline < 0 else newline + 1
            elif src.startswith("/*", self.pos):
                close = src.find("*/", self.pos + 2)
                if close < 0:
                    raise self.error("Unterminated block comment", self.pos)
                self.pos = close + 2
            else:
                return

    def _next_token(self) -> Token:
        src = self.source
        start = self.pos
        ch = src[start]

        if ch in ("'", '"'):
            value = self._read_string(ch)
            return self._token(STRING, value, start)
        if ch == "`":
            value = self._read_string("`")
            return self._token(TEMPLATE, value, start)

        match = _IDENT_RE.match(src, start)
        if match:
            self.pos = match.end()
            return self._token(IDENT, match.group(), start)

        match = _NUMBER_RE.match(src, start)
        if match:
            self.pos = match.end()
            return self._token(NUMBER, match.group(), start)

        for punct in _MULTI_PUNCT:
            if src.startswith(punct, start):
                self.pos = start + len(punct)
                return self._token(PUNCT, punct, start)

        self.pos = start + 1
        return self._token(PUNCT, ch, start)

    def _read_string(self, quote: str) -> str:
        src = self.source
        start = self.pos
        self.pos += 1
        chars: List[str] = []
        while self.pos < len(src):
            ch = src[self.pos]
            if ch == quote:
                self.pos += 1
                return "".join(chars)
            if ch == "\n" and quote != "`":
                raise self.error("Unterminated string literal", start)
            if ch == "\\":
                chars.append(self._read_escape(start))
                continue
            chars.append(ch)
            self.pos += 1
        raise self.error("Unterminated string literal", start)

    def _read_escape(self, literal_start: int) -> str:
        src = self.source
        if self.pos + 1 >= len(src):
            raise self.error("Unterminated string literal", literal_start)
        esc = src[self.pos + 1]
        self.pos += 2
        if esc in _ESCAPES:
            return _ESCAPES[esc]
        if esc == "\n":
            return ""
        if esc == "u":
            digits = src[self.pos:self.pos + 4]
            if len(digits) != 4 or not all(c in "0123456789abcdefABCDEF" for c in digits):
                raise self.error("Invalid unicode escape", self.pos - 2)
            self.pos += 4
            return chr(int(digits, 16))
        return esc


def tokenize(source: str) -> List[Token]:
    return Lexer(source).tokenize()
