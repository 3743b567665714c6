"""
Tokenizer - turns one rule-language fragment into typed tokens.

Two modes share one token vocabulary:
- TEXT: prose with embedded `{...}` blocks. Prose passes through as TEXT
  tokens; every top-level block becomes a single BLOCK token whose value is
  the raw inner text (the parser recurses into it).
- EXPRESSION: conditions, block bodies, effect heads and operands.

Blocks are delimited by depth-counting braces, never by the first closing
brace, so `{a {b {c}}}` is one block.

Tokens are produced lazily: the effect parser stops pulling once it has seen
the assignment operator, so a prose operand is never tokenized.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Iterator
import re

from .errors import ParseError


class TokenType(Enum):
    """Token classes."""
    # Text-template mode
    TEXT = "text"
    BLOCK = "block"

    # References
    SELF_REF = "self_ref"  # $.
    DYNAMIC_REF = "dynamic_ref"  # ${...}suffix
    QUALITY_REF = "quality_ref"  # $name
    PROPERTY = "property"  # .attr chained after a reference
    ALIAS_REF = "alias_ref"  # @name
    WORLD_REF = "world_ref"  # #name

    MACRO = "macro"  # %name[a; b]
    METADATA = "metadata"  # [desc: ...]

    OPERATOR = "operator"
    COLON = "colon"
    PIPE = "pipe"
    TILDE = "tilde"

    NUMBER = "number"
    BOOLEAN = "boolean"
    STRING = "string"
    WORD = "word"

    LPAREN = "lparen"
    RPAREN = "rparen"
    COMMA = "comma"


class TokenMode(Enum):
    """Which grammar the fragment belongs to."""
    EXPRESSION = "expression"
    TEXT = "text"


METADATA_KEYS = frozenset({"desc", "source", "hidden"})

# Two-character forms take priority over their one-character prefixes.
TWO_CHAR_OPERATORS = (
    "==", "!=", ">=", "<=", "+=", "-=", "++", "--",
    "&&", "||",
    ">>", "<<", "><", "<>",
)
ONE_CHAR_OPERATORS = frozenset("=<>+-*/%!")

REFERENCE_TYPES = frozenset({
    TokenType.SELF_REF,
    TokenType.DYNAMIC_REF,
    TokenType.QUALITY_REF,
    TokenType.ALIAS_REF,
    TokenType.WORLD_REF,
})

_IDENT = re.compile(r"[A-Za-z0-9_]+")
_WORD = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_NUMBER = re.compile(r"\d+(?:\.\d+)?")
_MACRO_HEAD = re.compile(r"%([A-Za-z_]+)\[")
_METADATA_HEAD = re.compile(r"\[\s*(desc|source|hidden)\s*(?::|\])", re.IGNORECASE)

# A quote only opens a string where a value could start, so prose
# apostrophes ("Bob's hat") never swallow the rest of a statement list.
_QUOTE_OPENERS = frozenset(" \t\n=([{,:;|!<>+-*/")


@dataclass(frozen=True)
class Token:
    """
    A single token.

    `position` and `end` are offsets into the top-level fragment. `parts`
    carries the structured payload of compound tokens:
    - MACRO: the `;`-separated sub-statements of the body
    - DYNAMIC_REF: the literal suffix following the block, if any
    """
    type: TokenType
    value: str
    position: int
    end: int
    parts: tuple[str, ...] = ()

    @property
    def is_reference(self) -> bool:
        return self.type in REFERENCE_TYPES


def find_block_end(source: str, start: int, offset: int = 0) -> int:
    """
    Return the index of the brace closing the block opened at `start`.

    Only braces are counted. Raises ParseError on an unterminated block.
    """
    depth = 0
    for i in range(start, len(source)):
        ch = source[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    raise ParseError("Unterminated block", source, offset + start)


def find_bracket_end(source: str, start: int, offset: int = 0) -> int:
    """
    Return the index of the `]` closing the bracket opened at `start`.

    Nested blocks are skipped whole, so a `]` inside `{...}` never closes
    the bracket.
    """
    depth = 0
    i = start
    while i < len(source):
        ch = source[i]
        if ch == "{":
            i = find_block_end(source, i, offset) + 1
            continue
        if ch == "[":
            depth += 1
        elif ch == "]":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    raise ParseError("Unterminated bracket", source, offset + start)


def split_top_level(
    text: str,
    separator: str,
    respect_quotes: bool = False,
) -> list[tuple[str, int]]:
    """
    Split `text` on `separator` wherever it sits outside (), [] and {}.

    Returns (piece, start_offset) pairs. A `|` separator never splits on a
    doubled `||`, which is logical OR.
    """
    pieces: list[tuple[str, int]] = []
    depth = 0
    quote: str | None = None
    piece_start = 0
    i = 0
    n = len(text)

    while i < n:
        ch = text[i]
        if quote:
            if ch == quote:
                quote = None
        elif respect_quotes and ch in ("'", '"') and (i == 0 or text[i - 1] in _QUOTE_OPENERS):
            quote = ch
        elif ch in "([{":
            depth += 1
        elif ch in ")]}":
            if depth > 0:
                depth -= 1
        elif ch == separator and depth == 0:
            if separator == "|" and (text[i + 1:i + 2] == "|" or text[i - 1:i] == "|"):
                i += 1
                continue
            pieces.append((text[piece_start:i], piece_start))
            piece_start = i + 1
        i += 1

    pieces.append((text[piece_start:], piece_start))
    return pieces


def split_statements(text: str) -> list[str]:
    """Split an effect list on top-level commas, dropping empty statements."""
    return [
        piece.strip()
        for piece, _ in split_top_level(text, ",", respect_quotes=True)
        if piece.strip()
    ]


class Tokenizer:
    """
    Lazy tokenizer over one fragment.

    Usage:
        tokens = list(Tokenizer("$gold >= 5").tokens())
        for token in Tokenizer("Hello {$name}", TokenMode.TEXT).tokens():
            ...
    """

    def __init__(self, source: str, mode: TokenMode = TokenMode.EXPRESSION, offset: int = 0):
        self.source = source
        self.mode = mode
        self.offset = offset

    def tokens(self) -> Iterator[Token]:
        if self.mode == TokenMode.TEXT:
            return self._scan_text()
        return self._scan_expression()

    def _error(self, message: str, index: int) -> ParseError:
        return ParseError(message, self.source, self.offset + index)

    def _token(self, type_: TokenType, value: str, start: int, end: int, parts: tuple[str, ...] = ()) -> Token:
        return Token(type_, value, self.offset + start, self.offset + end, parts)

    # ------------------------------------------------------------------
    # Text-template mode
    # ------------------------------------------------------------------

    def _scan_text(self) -> Iterator[Token]:
        source = self.source
        text_start = 0
        i = 0
        while i < len(source):
            if source[i] != "{":
                i += 1
                continue
            if i > text_start:
                yield self._token(TokenType.TEXT, source[text_start:i], text_start, i)
            end = find_block_end(source, i, self.offset)
            yield self._token(TokenType.BLOCK, source[i + 1:end], i, end + 1)
            i = end + 1
            text_start = i
        if text_start < len(source):
            yield self._token(TokenType.TEXT, source[text_start:], text_start, len(source))

    # ------------------------------------------------------------------
    # Expression mode
    # ------------------------------------------------------------------

    def _scan_expression(self) -> Iterator[Token]:
        source = self.source
        n = len(source)
        i = 0

        while i < n:
            ch = source[i]

            if ch.isspace():
                i += 1
                continue

            if ch == "$":
                nxt = source[i + 1:i + 2]
                if nxt == ".":
                    yield self._token(TokenType.SELF_REF, "", i, i + 2)
                    i += 2
                    # `$.name` reads the first property without a second dot
                    match = _IDENT.match(source, i)
                    if match:
                        yield self._token(TokenType.PROPERTY, match.group(), i, match.end())
                        i = match.end()
                    i = yield from self._properties(i)
                    continue
                if nxt == "{":
                    end = find_block_end(source, i + 1, self.offset)
                    suffix = _IDENT.match(source, end + 1)
                    stop = suffix.end() if suffix else end + 1
                    yield self._token(
                        TokenType.DYNAMIC_REF,
                        source[i + 2:end],
                        i,
                        stop,
                        (suffix.group(),) if suffix else (),
                    )
                    i = yield from self._properties(stop)
                    continue
                match = _IDENT.match(source, i + 1)
                if not match:
                    raise self._error("Expected a quality name after '$'", i)
                yield self._token(TokenType.QUALITY_REF, match.group(), i, match.end())
                i = yield from self._properties(match.end())
                continue

            if ch in ("@", "#"):
                match = _IDENT.match(source, i + 1)
                if not match:
                    raise self._error(f"Expected a name after '{ch}'", i)
                type_ = TokenType.ALIAS_REF if ch == "@" else TokenType.WORLD_REF
                yield self._token(type_, match.group(), i, match.end())
                i = yield from self._properties(match.end())
                continue

            if ch == "%":
                match = _MACRO_HEAD.match(source, i)
                if match:
                    bracket = match.end() - 1
                    end = find_bracket_end(source, bracket, self.offset)
                    body = source[bracket + 1:end]
                    parts = tuple(p.strip() for p, _ in split_top_level(body, ";"))
                    yield self._token(TokenType.MACRO, match.group(1).lower(), i, end + 1, parts)
                    i = end + 1
                    continue

            if ch == "[":
                if not _METADATA_HEAD.match(source, i):
                    raise self._error("Unknown metadata key", i)
                end = find_bracket_end(source, i, self.offset)
                yield self._token(TokenType.METADATA, source[i + 1:end], i, end + 1)
                i = end + 1
                continue

            if ch == "{":
                end = find_block_end(source, i, self.offset)
                yield self._token(TokenType.BLOCK, source[i + 1:end], i, end + 1)
                i = end + 1
                continue

            pair = source[i:i + 2]
            if pair in TWO_CHAR_OPERATORS:
                yield self._token(TokenType.OPERATOR, pair, i, i + 2)
                i += 2
                continue
            if ch in ONE_CHAR_OPERATORS:
                yield self._token(TokenType.OPERATOR, ch, i, i + 1)
                i += 1
                continue

            simple = {
                ":": TokenType.COLON,
                "|": TokenType.PIPE,
                "~": TokenType.TILDE,
                "(": TokenType.LPAREN,
                ")": TokenType.RPAREN,
                ",": TokenType.COMMA,
            }.get(ch)
            if simple:
                yield self._token(simple, ch, i, i + 1)
                i += 1
                continue

            if ch in ("'", '"'):
                end = source.find(ch, i + 1)
                if end == -1:
                    raise self._error("Unterminated string", i)
                yield self._token(TokenType.STRING, source[i + 1:end], i, end + 1)
                i = end + 1
                continue

            match = _NUMBER.match(source, i)
            if match:
                yield self._token(TokenType.NUMBER, match.group(), i, match.end())
                i = match.end()
                continue

            match = _WORD.match(source, i)
            if match:
                word = match.group()
                if word.lower() in ("true", "false"):
                    yield self._token(TokenType.BOOLEAN, word.lower(), i, match.end())
                else:
                    yield self._token(TokenType.WORD, word, i, match.end())
                i = match.end()
                continue

            raise self._error(f"Unexpected character {ch!r}", i)

    def _properties(self, i: int):
        """Yield `.attr` tokens chained directly after a reference; return the new index."""
        source = self.source
        while source[i:i + 1] == ".":
            match = _IDENT.match(source, i + 1)
            if not match:
                break
            yield self._token(TokenType.PROPERTY, match.group(), i, match.end())
            i = match.end()
        return i


def tokenize(fragment: str, mode: TokenMode = TokenMode.EXPRESSION, offset: int = 0) -> list[Token]:
    """Tokenize a whole fragment eagerly."""
    return list(Tokenizer(fragment, mode, offset).tokens())
