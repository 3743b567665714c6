"""
Parser - builds structure for the three grammars of the rule language.

- Condition: boolean expressions joined with implicit AND on top-level commas
- Text-template: literal spans interleaved with bracketed blocks
- Effect-list: `$id[meta] op operand` statements joined with top-level commas

All nodes are frozen dataclasses, so parse results are cached per fragment.
The parser raises ParseError on malformed input; degrading gracefully is the
evaluator's job.

Expression precedence, loosest first:
    ||    &&    !    comparisons (== != > < >= <= = >> << >< <>)
    ~     + -   * / %    unary -    primary
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from typing import Any, Iterator, Union
import re

from .errors import ParseError
from .tokenizer import (
    Token,
    TokenType,
    TokenMode,
    Tokenizer,
    find_block_end,
    split_top_level,
)


class RefKind(Enum):
    """What a reference points at."""
    QUALITY = "quality"  # $id
    SELF = "self"  # $.
    ALIAS = "alias"  # @id
    WORLD = "world"  # #id
    DYNAMIC = "dynamic"  # ${...}suffix


COMPARISON_OPS = frozenset({"==", "!=", ">", "<", ">=", "<=", "="})
CHANCE_OPS = frozenset({">>", "<<", "><", "<>"})
ASSIGNMENT_OPS = frozenset({"=", "+=", "-=", "++", "--"})


# ============================================================================
# Expression nodes
# ============================================================================

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Reference:
    """
    A lookup. For DYNAMIC references `name` holds the raw inner block text,
    which is evaluated to produce the id before `suffix` is appended.
    """
    kind: RefKind
    name: str
    properties: tuple[str, ...] = ()
    suffix: str = ""


@dataclass(frozen=True)
class Macro:
    name: str
    args: tuple[str, ...]
    raw: str


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: Node
    right: Node


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: Node


@dataclass(frozen=True)
class Range:
    """Inclusive integer range `low ~ high`, drawn at evaluation time."""
    low: Node
    high: Node


@dataclass(frozen=True)
class BlockExpr:
    """A `{...}` block used as a value inside an expression."""
    block: Block


Node = Union[Literal, Reference, Macro, BinaryOp, UnaryOp, Range, BlockExpr]


# ============================================================================
# Template nodes
# ============================================================================

@dataclass(frozen=True)
class TextSpan:
    text: str


@dataclass(frozen=True)
class Template:
    parts: tuple[TemplatePart, ...]
    source: str


@dataclass(frozen=True)
class ExpressionBlock:
    expression: Node
    source: str


@dataclass(frozen=True)
class Branch:
    """One arm of a conditional. A branch without a condition always matches."""
    condition: Node | None
    body: Template


@dataclass(frozen=True)
class ConditionalBlock:
    branches: tuple[Branch, ...]
    source: str


@dataclass(frozen=True)
class ChoiceBlock:
    options: tuple[Template, ...]
    source: str


@dataclass(frozen=True)
class AliasBlock:
    name: str
    expression: Node
    source: str


@dataclass(frozen=True)
class CommentBlock:
    source: str


Block = Union[ExpressionBlock, ConditionalBlock, ChoiceBlock, AliasBlock, CommentBlock]
TemplatePart = Union[TextSpan, Block]


@dataclass(frozen=True)
class ConditionList:
    """Comma-joined clauses. An empty list is an ungated condition."""
    clauses: tuple[Node, ...]
    source: str


# ============================================================================
# Effect statements
# ============================================================================

@dataclass(frozen=True)
class EffectStatement:
    """
    One parsed effect.

    Exactly one of these shapes:
    - target + operator (+ operand): `$gold += 5`
    - macro (+ operator + operand): `%new[id] = 1`, `%schedule[...]`
    - block: `{ $a > 1 : $b += 1 | $c += 1 }`

    The operand is kept raw; it is evaluated against the state current at the
    moment the statement runs.
    """
    source: str
    target: Reference | None = None
    macro: Macro | None = None
    operator: str | None = None
    operand: str = ""
    metadata: dict[str, str] = field(default_factory=dict)
    block: ConditionalBlock | None = None
    position: int = 0


_ALIAS_ASSIGN = re.compile(r"^\s*@([A-Za-z0-9_]+)\s*=(?!=)")
_METADATA_SPLIT = re.compile(r",\s*(?=(?:desc|source|hidden)\s*(?::|$))", re.IGNORECASE)


def strip_quotes(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
        return text[1:-1]
    return text


def parse_metadata(raw: str) -> dict[str, str]:
    """
    Parse the inside of a metadata block: `desc: Paid the ferryman, hidden`.

    Commas only separate entries when a known key follows, so free text in a
    description keeps its commas. A bare key means "true".
    """
    metadata: dict[str, str] = {}
    for entry in _METADATA_SPLIT.split(raw):
        entry = entry.strip()
        if not entry:
            continue
        key, sep, value = entry.partition(":")
        key = key.strip().lower()
        metadata[key] = strip_quotes(value) if sep else "true"
    return metadata


class ExpressionParser:
    """
    Recursive-descent parser over a token list.

    `source` and `offset` let it slice raw text back out for macro bodies and
    report absolute positions in errors.
    """

    def __init__(self, tokens: list[Token], source: str, offset: int = 0):
        self.tokens = tokens
        self.source = source
        self.offset = offset
        self.index = 0

    # -- cursor ---------------------------------------------------------

    def peek(self) -> Token | None:
        if self.index < len(self.tokens):
            return self.tokens[self.index]
        return None

    def advance(self) -> Token:
        token = self.peek()
        if token is None:
            raise ParseError("Unexpected end of expression", self.source, self.offset + len(self.source))
        self.index += 1
        return token

    def at_end(self) -> bool:
        return self.index >= len(self.tokens)

    def _is_op(self, *ops: str) -> bool:
        token = self.peek()
        return token is not None and token.type == TokenType.OPERATOR and token.value in ops

    # -- grammar --------------------------------------------------------

    def parse(self) -> Node:
        node = self.parse_expression()
        if not self.at_end():
            token = self.peek()
            raise ParseError(f"Unexpected token {token.value!r}", self.source, token.position)
        return node

    def parse_expression(self) -> Node:
        return self._or()

    def _or(self) -> Node:
        left = self._and()
        while self._is_op("||"):
            self.advance()
            left = BinaryOp("||", left, self._and())
        return left

    def _and(self) -> Node:
        left = self._not()
        while self._is_op("&&"):
            self.advance()
            left = BinaryOp("&&", left, self._not())
        return left

    def _not(self) -> Node:
        if self._is_op("!"):
            self.advance()
            return UnaryOp("!", self._not())
        return self._comparison()

    def _comparison(self) -> Node:
        left = self._range()
        token = self.peek()
        if token and token.type == TokenType.OPERATOR and token.value in COMPARISON_OPS | CHANCE_OPS:
            self.advance()
            op = "==" if token.value == "=" else token.value
            return BinaryOp(op, left, self._range())
        return left

    def _range(self) -> Node:
        left = self._additive()
        token = self.peek()
        if token and token.type == TokenType.TILDE:
            self.advance()
            return Range(left, self._additive())
        return left

    def _additive(self) -> Node:
        left = self._multiplicative()
        while self._is_op("+", "-"):
            op = self.advance().value
            left = BinaryOp(op, left, self._multiplicative())
        return left

    def _multiplicative(self) -> Node:
        left = self._unary()
        while self._is_op("*", "/", "%"):
            op = self.advance().value
            left = BinaryOp(op, left, self._unary())
        return left

    def _unary(self) -> Node:
        if self._is_op("-"):
            self.advance()
            return UnaryOp("-", self._unary())
        return self._primary()

    def _primary(self) -> Node:
        token = self.advance()
        type_ = token.type

        if type_ == TokenType.NUMBER:
            return Literal(float(token.value))
        if type_ == TokenType.BOOLEAN:
            return Literal(token.value == "true")
        if type_ == TokenType.STRING:
            return Literal(token.value)
        if type_ == TokenType.WORD:
            # Bare prose words run together into one string literal
            words = [token.value]
            while self.peek() is not None and self.peek().type == TokenType.WORD:
                words.append(self.advance().value)
            return Literal(" ".join(words))
        if type_ == TokenType.LPAREN:
            node = self.parse_expression()
            closing = self.peek()
            if closing is None or closing.type != TokenType.RPAREN:
                raise ParseError("Expected ')'", self.source, token.position)
            self.advance()
            return node
        if token.is_reference:
            return self._reference(token)
        if type_ == TokenType.MACRO:
            return self._macro(token)
        if type_ == TokenType.BLOCK:
            return BlockExpr(parse_block(token.value, token.position + 1))

        raise ParseError(f"Unexpected token {token.value!r}", self.source, token.position)

    def _reference(self, token: Token) -> Reference:
        kind = {
            TokenType.QUALITY_REF: RefKind.QUALITY,
            TokenType.SELF_REF: RefKind.SELF,
            TokenType.ALIAS_REF: RefKind.ALIAS,
            TokenType.WORLD_REF: RefKind.WORLD,
            TokenType.DYNAMIC_REF: RefKind.DYNAMIC,
        }[token.type]
        properties = []
        while self.peek() is not None and self.peek().type == TokenType.PROPERTY:
            properties.append(self.advance().value)
        suffix = token.parts[0] if token.parts else ""
        return Reference(kind, token.value, tuple(properties), suffix)

    def _macro(self, token: Token) -> Macro:
        raw = self.source[token.position - self.offset:token.end - self.offset]
        return Macro(token.value, token.parts, raw)


# ============================================================================
# Entry points
# ============================================================================

@lru_cache(maxsize=2048)
def parse_expression(source: str, offset: int = 0) -> Node:
    """Parse a single expression."""
    tokens = list(Tokenizer(source, TokenMode.EXPRESSION, offset).tokens())
    if not tokens:
        raise ParseError("Empty expression", source, offset)
    return ExpressionParser(tokens, source, offset).parse()


@lru_cache(maxsize=2048)
def parse_condition(source: str, offset: int = 0) -> ConditionList:
    """Parse a condition; top-level commas join clauses with AND."""
    tokens = list(Tokenizer(source, TokenMode.EXPRESSION, offset).tokens())
    clauses: list[Node] = []
    current: list[Token] = []
    depth = 0

    def flush(at: int):
        if not current:
            raise ParseError("Empty condition clause", source, at)
        clauses.append(ExpressionParser(list(current), source, offset).parse())
        current.clear()

    for token in tokens:
        if token.type == TokenType.LPAREN:
            depth += 1
        elif token.type == TokenType.RPAREN:
            depth -= 1
        elif token.type == TokenType.COMMA and depth == 0:
            flush(token.position)
            continue
        current.append(token)

    if tokens:
        flush(offset + len(source))
    return ConditionList(tuple(clauses), source)


@lru_cache(maxsize=2048)
def parse_template(source: str, offset: int = 0) -> Template:
    """Parse a text template into literal spans and blocks."""
    parts: list[TemplatePart] = []
    for token in Tokenizer(source, TokenMode.TEXT, offset).tokens():
        if token.type == TokenType.TEXT:
            parts.append(TextSpan(token.value))
        else:
            parts.append(parse_block(token.value, token.position + 1))
    return Template(tuple(parts), source)


@lru_cache(maxsize=2048)
def parse_block(source: str, offset: int = 0) -> Block:
    """
    Parse the inside of one `{...}` block.

    Forms are tried in order: comment, alias assignment, conditional (any
    top-level `:`), random choice (top-level `|`), bare expression.
    """
    stripped = source.strip()
    lead = offset + (len(source) - len(source.lstrip()))

    if stripped.startswith("//"):
        return CommentBlock(source)

    alias = _ALIAS_ASSIGN.match(source)
    if alias:
        expr_start = alias.end()
        expression = parse_expression(source[expr_start:], offset + expr_start)
        return AliasBlock(alias.group(1), expression, source)

    pieces = split_top_level(source, "|", respect_quotes=True)
    branches: list[Branch] = []
    conditional = False
    for index, (piece, start) in enumerate(pieces):
        colon = _top_level_colon(piece)
        if colon is not None and index > 0 and not _reads_as_condition(piece[:colon]):
            # Prose with a colon, e.g. "| Dead: sadly"
            colon = None
        if colon is None:
            body = strip_quotes(piece)
            branches.append(Branch(None, parse_template(body, offset + start)))
            continue
        conditional = True
        condition = parse_expression(piece[:colon], offset + start)
        body = strip_quotes(piece[colon + 1:])
        branches.append(Branch(condition, parse_template(body, offset + start + colon + 1)))

    if conditional:
        return ConditionalBlock(tuple(branches), source)
    if len(branches) > 1:
        return ChoiceBlock(tuple(b.body for b in branches), source)
    if not stripped:
        raise ParseError("Empty block", source, lead)
    return ExpressionBlock(parse_expression(source, offset), source)


def _reads_as_condition(head: str) -> bool:
    try:
        node = parse_expression(head)
    except ParseError:
        return False
    return _is_condition(node)


def _is_condition(node: Node) -> bool:
    """True when a node reads state or compares; a bare word or number does not."""
    if isinstance(node, (Reference, Macro, BlockExpr)):
        return True
    if isinstance(node, Literal):
        return isinstance(node.value, bool)
    if isinstance(node, UnaryOp):
        return _is_condition(node.operand)
    if isinstance(node, BinaryOp):
        if node.op in COMPARISON_OPS or node.op in ("&&", "||"):
            return True
        return _is_condition(node.left) or _is_condition(node.right)
    return False


def _top_level_colon(piece: str) -> int | None:
    parts = split_top_level(piece, ":", respect_quotes=True)
    if len(parts) < 2:
        return None
    return parts[1][1] - 1


@lru_cache(maxsize=1024)
def parse_effects(source: str, offset: int = 0) -> tuple[EffectStatement, ...]:
    """Parse a comma-separated effect list."""
    statements = []
    for piece, start in split_top_level(source, ",", respect_quotes=True):
        if not piece.strip():
            continue
        statements.append(parse_effect_statement(piece, offset + start))
    return tuple(statements)


def parse_effect_statement(source: str, offset: int = 0) -> EffectStatement:
    """
    Parse one effect statement.

    Tokens are pulled lazily and only up to the operator; the operand is
    taken verbatim from the rest of the statement.
    """
    stripped = source.strip()
    lead = len(source) - len(source.lstrip())
    position = offset + lead

    if stripped.startswith("{") and find_block_end(stripped, 0, position) == len(stripped) - 1:
        block = parse_block(stripped[1:-1], position + 1)
        if not isinstance(block, ConditionalBlock):
            raise ParseError("Effect block must be a conditional", source, position)
        return EffectStatement(source=stripped, block=block, position=position)

    tokens: Iterator[Token] = Tokenizer(source, TokenMode.EXPRESSION, offset).tokens()
    head = next(tokens, None)
    if head is None:
        raise ParseError("Empty effect statement", source, position)

    target: Reference | None = None
    macro: Macro | None = None
    if head.type == TokenType.MACRO:
        macro = Macro(head.value, head.parts, source[head.position - offset:head.end - offset])
    elif head.is_reference:
        target = Reference(
            {
                TokenType.QUALITY_REF: RefKind.QUALITY,
                TokenType.SELF_REF: RefKind.SELF,
                TokenType.ALIAS_REF: RefKind.ALIAS,
                TokenType.WORLD_REF: RefKind.WORLD,
                TokenType.DYNAMIC_REF: RefKind.DYNAMIC,
            }[head.type],
            head.value,
            (),
            head.parts[0] if head.parts else "",
        )
    else:
        raise ParseError("Effect must start with a quality reference or macro", source, head.position)

    metadata: dict[str, str] = {}
    token = next(tokens, None)
    while token is not None and token.type == TokenType.METADATA:
        metadata.update(parse_metadata(token.value))
        token = next(tokens, None)

    if token is None:
        if macro is None:
            raise ParseError("Missing operator", source, offset + len(source))
        return EffectStatement(source=stripped, macro=macro, metadata=metadata, position=position)

    if token.type != TokenType.OPERATOR or token.value not in ASSIGNMENT_OPS:
        raise ParseError(f"Expected assignment operator, got {token.value!r}", source, token.position)

    operand = source[token.end - offset:].strip()
    if token.value in ("++", "--"):
        if operand:
            raise ParseError(f"Unexpected operand after {token.value!r}", source, token.end)
    elif not operand:
        raise ParseError("Missing operand", source, token.end)

    return EffectStatement(
        source=stripped,
        target=target,
        macro=macro,
        operator=token.value,
        operand=operand,
        metadata=metadata,
        position=position,
    )
