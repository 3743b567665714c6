"""
Evaluator for conditions, text templates and standalone blocks.

Evaluates parsed rule-language fragments against a character's qualities,
the shared world overlay and the alias table.

Supports:
- References: $id, $id.prop, $. (self), @alias, #world, ${...}suffix
- Comparisons: ==, !=, <, >, <=, >= (`=` reads as `==`)
- Boolean operators: &&, ||, !
- Arithmetic: +, -, *, /, %
- Skill checks: >>, <<, ><, <> (yield a percent chance)
- Ranges: low ~ high
- Macros, via MacroExpander

Nothing here raises to the caller for bad content. An unresolved reference
reads as 0 in arithmetic and renders as empty text. A condition that fails
to parse is false; a template that fails to parse renders as its raw text.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Any, Mapping
import logging
import random

from ..config import Settings
from .errors import ParseError
from .macros import MacroExpander
from .parser import (
    AliasBlock,
    BinaryOp,
    Block,
    BlockExpr,
    ChoiceBlock,
    CommentBlock,
    ConditionalBlock,
    ExpressionBlock,
    Literal,
    Macro,
    Node,
    Range,
    RefKind,
    Reference,
    Template,
    TextSpan,
    UnaryOp,
    CHANCE_OPS,
    COMPARISON_OPS,
    parse_block,
    parse_condition,
    parse_expression,
    parse_template,
)
from .challenge import calculate_chance
from .quality import (
    PyramidalState,
    QualityKind,
    QualityState,
    QualityStore,
    StringState,
    to_number,
)
from .tokenizer import find_block_end

logger = logging.getLogger(__name__)


class Unset(float):
    """
    Value of an unresolved reference: 0 in arithmetic and comparisons, empty
    when rendered as text.
    """

    def __new__(cls):
        return super().__new__(cls, 0.0)

    def __repr__(self):
        return "UNSET"


UNSET = Unset()

FORMATTERS = {
    "upper": str.upper,
    "lower": str.lower,
    "capital": lambda s: s[:1].upper() + s[1:],
}


@dataclass
class EvaluationContext:
    """
    Everything an evaluation can read.

    `aliases` and `errors` are shared between a context and the contexts
    derived from it, so an alias bound inside a nested block stays visible
    for the rest of the evaluation.
    """
    store: QualityStore
    world: Mapping[str, QualityState] = field(default_factory=dict)
    aliases: dict[str, str] = field(default_factory=dict)
    bonuses: Mapping[str, int] = field(default_factory=dict)
    resolution_roll: float = 0.0
    rng: random.Random = field(default_factory=random.Random)
    settings: Settings = field(default_factory=Settings)
    errors: list[str] = field(default_factory=list)
    self_id: str | None = None
    self_state: QualityState | None = None
    depth: int = 0

    def with_self(self, qid: str, state: QualityState | None) -> EvaluationContext:
        return replace(self, self_id=qid, self_state=state)

    def deeper(self) -> EvaluationContext:
        return replace(self, depth=self.depth + 1)


def format_value(value: Any) -> str:
    """String form of an evaluated value. Integral numbers drop the fraction."""
    if value is None or isinstance(value, Unset):
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return str(round(value, 10))
    return str(value)


def truthy(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value > 0
    if isinstance(value, str):
        if value.strip().lower() == "true":
            return True
        number = to_number(value)
        return number is not None and number > 0
    return False


def _strip_braces(text: str) -> str:
    text = text.strip()
    if text.startswith("{"):
        try:
            if find_block_end(text, 0) == len(text) - 1:
                return text[1:-1]
        except ParseError:
            return text
    return text


class ExpressionEvaluator:
    """
    Walks parsed nodes and produces values.

    Values are floats, strings or bools; `format_value` turns any of them
    into display text.
    """

    def __init__(self):
        self.macros = MacroExpander(self)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def evaluate_condition(self, expr: str | None, ctx: EvaluationContext) -> bool:
        """Evaluate a condition. Empty means ungated; a parse failure means closed."""
        if expr is None or not expr.strip():
            return True
        try:
            conditions = parse_condition(expr.strip())
        except ParseError as e:
            self._degrade(ctx, f"Condition failed to parse: {e}")
            return False
        return all(truthy(self.evaluate(clause, ctx)) for clause in conditions.clauses)

    def evaluate_text(self, template: str | None, ctx: EvaluationContext) -> str:
        """Render a text template. A template that fails to parse comes back raw."""
        if not template:
            return ""
        if "{" not in template:
            return template
        try:
            parsed = parse_template(template)
        except ParseError as e:
            self._degrade(ctx, f"Template failed to parse: {e}")
            return template
        return self.render_template(parsed, ctx)

    def evaluate_block(self, expr: str | None, ctx: EvaluationContext) -> str:
        """Evaluate one block standalone; the surrounding braces are optional."""
        if expr is None:
            return ""
        inner = _strip_braces(expr)
        if not inner.strip():
            return ""
        try:
            block = parse_block(inner)
        except ParseError as e:
            self._degrade(ctx, f"Block failed to parse: {e}")
            return expr
        return self.render_block(block, ctx)

    def evaluate_value(self, expr: str, ctx: EvaluationContext) -> Any:
        """Evaluate an expression and return the raw value, or None if it does not parse."""
        try:
            node = parse_expression(_strip_braces(expr))
        except ParseError as e:
            self._degrade(ctx, f"Expression failed to parse: {e}")
            return None
        return self.evaluate(node, ctx)

    def evaluate_number(self, expr: str, ctx: EvaluationContext) -> float | None:
        return to_number(self.evaluate_value(expr, ctx))

    # ------------------------------------------------------------------
    # Templates and blocks
    # ------------------------------------------------------------------

    def render_template(self, template: Template, ctx: EvaluationContext) -> str:
        out = []
        for part in template.parts:
            if isinstance(part, TextSpan):
                out.append(part.text)
            else:
                out.append(self.render_block(part, ctx))
        return "".join(out)

    def render_block(self, block: Block, ctx: EvaluationContext) -> str:
        if ctx.depth >= ctx.settings.max_depth:
            self._degrade(ctx, f"Maximum evaluation depth {ctx.settings.max_depth} exceeded")
            return ""
        inner = ctx.deeper()

        if isinstance(block, CommentBlock):
            return ""

        elif isinstance(block, AliasBlock):
            expression = block.expression
            if isinstance(expression, Reference) and expression.kind == RefKind.QUALITY and not expression.properties:
                ctx.aliases[block.name] = expression.name
            else:
                ctx.aliases[block.name] = format_value(self.evaluate(expression, inner))
            return ""

        elif isinstance(block, ConditionalBlock):
            for branch in block.branches:
                if branch.condition is None or truthy(self.evaluate(branch.condition, inner)):
                    return self.render_template(branch.body, inner)
            return ""

        elif isinstance(block, ChoiceBlock):
            return self.render_template(ctx.rng.choice(block.options), inner)

        elif isinstance(block, ExpressionBlock):
            return format_value(self.evaluate(block.expression, inner))

        else:
            raise TypeError(f"Unknown block: {type(block).__name__}")

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def evaluate(self, node: Node, ctx: EvaluationContext) -> Any:
        if isinstance(node, Literal):
            return node.value

        if isinstance(node, Reference):
            return self.resolve_reference(node, ctx)

        if isinstance(node, Macro):
            return self.macros.expand(node, ctx)

        if isinstance(node, BlockExpr):
            return self.render_block(node.block, ctx)

        if isinstance(node, UnaryOp):
            operand = self.evaluate(node.operand, ctx)
            if node.op == "!":
                return not truthy(operand)
            return -(to_number(operand) or 0.0)

        if isinstance(node, Range):
            return self._range(node, ctx)

        if isinstance(node, BinaryOp):
            op = node.op
            if op == "||":
                return truthy(self.evaluate(node.left, ctx)) or truthy(self.evaluate(node.right, ctx))
            if op == "&&":
                return truthy(self.evaluate(node.left, ctx)) and truthy(self.evaluate(node.right, ctx))

            left = self.evaluate(node.left, ctx)
            right = self.evaluate(node.right, ctx)
            if op in COMPARISON_OPS:
                return self._compare(left, right, op)
            if op in CHANCE_OPS:
                return calculate_chance(to_number(left) or 0.0, to_number(right) or 0.0, op)
            return self._arithmetic(op, left, right, ctx)

        raise TypeError(f"Unknown expression node: {type(node).__name__}")

    def _compare(self, left: Any, right: Any, op: str) -> bool:
        """Numeric comparison when both sides are numbers, string comparison otherwise."""
        left_num, right_num = to_number(left), to_number(right)
        if left_num is not None and right_num is not None:
            left, right = left_num, right_num
        else:
            left, right = format_value(left), format_value(right)

        if op == "==":
            return left == right
        elif op == "!=":
            return left != right
        elif op == "<":
            return left < right
        elif op == ">":
            return left > right
        elif op == "<=":
            return left <= right
        elif op == ">=":
            return left >= right
        return False

    def _arithmetic(self, op: str, left: Any, right: Any, ctx: EvaluationContext) -> Any:
        left_num, right_num = to_number(left), to_number(right)
        if left_num is None or right_num is None:
            if op == "+":
                return format_value(left) + format_value(right)
            left_num = left_num or 0.0
            right_num = right_num or 0.0

        if op == "+":
            return left_num + right_num
        if op == "-":
            return left_num - right_num
        if op == "*":
            return left_num * right_num
        if op in ("/", "%"):
            if right_num == 0:
                logger.warning("Division by zero in %s %s %s", format_value(left), op, format_value(right))
                ctx.errors.append("Division by zero")
                return 0.0
            return left_num / right_num if op == "/" else left_num % right_num
        raise ValueError(f"Unknown operator: {op}")

    def _range(self, node: Range, ctx: EvaluationContext) -> int:
        low = int(to_number(self.evaluate(node.low, ctx)) or 0)
        high = int(to_number(self.evaluate(node.high, ctx)) or 0)
        if high < low:
            low, high = high, low
        limit = ctx.settings.range_limit
        if high - low > limit:
            logger.warning("Range %d ~ %d exceeds limit %d; truncating", low, high, limit)
            high = low + limit
        return ctx.rng.randint(low, high)

    # ------------------------------------------------------------------
    # References
    # ------------------------------------------------------------------

    def resolve_reference(self, ref: Reference, ctx: EvaluationContext) -> Any:
        world = False
        if ref.kind == RefKind.QUALITY:
            qid = ref.name
            state = ctx.store.get(qid)
        elif ref.kind == RefKind.SELF:
            qid = ctx.self_id
            if qid is None:
                logger.debug("Self reference outside a quality context")
                return "" if ref.properties else UNSET
            state = ctx.self_state if ctx.self_state is not None else ctx.store.get(qid)
        elif ref.kind == RefKind.ALIAS:
            target = ctx.aliases.get(ref.name)
            if target is None:
                logger.debug("Unresolved alias @%s", ref.name)
                return "" if ref.properties else UNSET
            state = ctx.store.get(target)
            if state is None and ctx.store.definition(target) is None and not ref.properties:
                # Alias bound to a plain value rather than a quality id
                return target
            qid = target
        elif ref.kind == RefKind.WORLD:
            qid = ref.name
            state = ctx.world.get(qid)
            world = True
        elif ref.kind == RefKind.DYNAMIC:
            qid = self.evaluate_block(ref.name, ctx).strip().lstrip("$") + ref.suffix
            state = ctx.store.get(qid)
        else:
            raise TypeError(f"Unknown reference kind: {ref.kind}")

        if not ref.properties:
            return self._value_of(qid, state, ctx, world)
        return self._resolve_properties(qid, state, ref.properties, ctx, world)

    def _value_of(self, qid: str, state: QualityState | None, ctx: EvaluationContext, world: bool = False) -> Any:
        if state is None:
            definition = ctx.store.definition(qid)
            logger.debug("Unresolved reference %s%s", "#" if world else "$", qid)
            if definition is not None and definition.kind == QualityKind.STRING:
                return ""
            bonus = 0 if world else ctx.bonuses.get(qid, 0)
            return self._capped(qid, bonus, ctx) if bonus > 0 else UNSET
        elif isinstance(state, PyramidalState):
            if world:
                return state.level
            return self._capped(qid, state.level + ctx.bonuses.get(qid, 0), ctx)
        elif isinstance(state, StringState):
            return state.value
        else:
            raise TypeError(f"Unknown quality state: {type(state).__name__}")

    def _capped(self, qid: str, level: int, ctx: EvaluationContext) -> int:
        """Clamp a level with bonuses applied to [0, cap]."""
        level = max(0, level)
        cap = ctx.store.cap_for(qid)
        return level if cap is None else min(level, cap)

    def _resolve_properties(
        self,
        qid: str,
        state: QualityState | None,
        properties: tuple[str, ...],
        ctx: EvaluationContext,
        world: bool,
    ) -> Any:
        """
        Walk a property chain.

        Formatters (.upper, .lower, .capital) apply to the value so far. Any
        other property after the first treats the value so far as a quality
        id, so `$weapon.name` works when $weapon holds an item id.
        """
        value: Any = None
        for prop in properties:
            formatter = FORMATTERS.get(prop)
            if formatter is not None:
                base = self._value_of(qid, state, ctx, world) if value is None else value
                value = formatter(format_value(base))
                continue
            if value is not None:
                qid = format_value(value)
                state = ctx.store.get(qid)
                world = False
            value = self._property(qid, state, prop, ctx, world)
        return value

    def _property(self, qid: str, state: QualityState | None, prop: str, ctx: EvaluationContext, world: bool) -> Any:
        definition = ctx.store.definition(qid)
        properties = state.properties if state is not None else {}

        if prop in ("name", "description"):
            if prop in properties:
                text = str(properties[prop])
            else:
                text = getattr(definition, prop) if definition else ""
            return self._property_text(text, qid, state, ctx)
        if prop == "id":
            return qid
        if prop == "level":
            if isinstance(state, StringState):
                return 0
            return self._value_of(qid, state, ctx, world)
        if prop == "cp":
            return state.change_points if isinstance(state, PyramidalState) else 0
        if prop == "value":
            return self._value_of(qid, state, ctx, world)
        if prop == "category":
            return definition.category if definition else ""
        if prop in ("plural", "singular"):
            text = ""
            if definition is not None:
                text = definition.plural_name if prop == "plural" else definition.singular_name
                text = text or definition.name
            return self._property_text(text, qid, state, ctx)

        if prop in properties:
            return self._property_text(format_value(properties[prop]), qid, state, ctx)
        if definition is not None and prop in definition.variants:
            return self._property_text(definition.variants[prop], qid, state, ctx)
        logger.debug("Unknown property %s.%s", qid, prop)
        return ""

    def _property_text(self, text: str, qid: str, state: QualityState | None, ctx: EvaluationContext) -> str:
        if "{" not in text:
            return text
        return self.evaluate_text(text, ctx.with_self(qid, state).deeper())

    # ------------------------------------------------------------------

    def _degrade(self, ctx: EvaluationContext, message: str):
        logger.warning(message)
        ctx.errors.append(message)
