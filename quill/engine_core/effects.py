"""
Effect Applier - parses and applies effect lists.

An effect list is a comma-separated sequence of statements:

    $gold -= 10, $sword[source: market] ++, $title = Knight of {$city}

Statements run strictly in source order with no rollback, so a later
statement sees the changes of earlier ones. A statement that fails (bad
syntax, wrong operator for the quality kind, a world target) is logged,
recorded in the context's error list and skipped; the rest still run.

Beyond plain assignments:
- `{ cond : effects | effects }` applies the selected branch as a nested list
- `%new[id; template, key: value] = value` creates a quality explicitly
- `%all[category; filter] op value` changes every matching quality
- `%schedule`, `%reset`, `%update`, `%cancel` are handed back as deferred
  macros for the caller
"""

from __future__ import annotations
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Callable
import logging
import math

from .errors import EffectError, ParseError
from .evaluator import EvaluationContext, ExpressionEvaluator, format_value, truthy
from .macros import TIMER_MACROS
from .parser import (
    ConditionalBlock,
    EffectStatement,
    RefKind,
    Reference,
    parse_effect_statement,
    parse_expression,
    strip_quotes,
)
from .quality import (
    PyramidalState,
    QualityKind,
    QualityState,
    QualityStore,
    StringState,
    to_number,
)
from .tokenizer import split_top_level

logger = logging.getLogger(__name__)


@dataclass
class ChangeRecord:
    """One applied change, for display and for equip-time validation."""
    quality_id: str
    name: str
    kind: QualityKind
    before: int | str | None
    after: int | str
    cp_before: int | None = None
    cp_after: int | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    text: str = ""
    hidden: bool = False
    scope: str = "character"
    created: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "quality_id": self.quality_id,
            "name": self.name,
            "kind": self.kind.value,
            "before": self.before,
            "after": self.after,
            "cp_before": self.cp_before,
            "cp_after": self.cp_after,
            "metadata": dict(self.metadata),
            "text": self.text,
            "hidden": self.hidden,
            "scope": self.scope,
            "created": self.created,
        }


@dataclass
class DeferredMacro:
    """A timer macro the engine does not run itself."""
    name: str
    args: list[str]
    raw: str

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "args": list(self.args), "raw": self.raw}


def _state_value(state: QualityState | None) -> int | str | None:
    if state is None:
        return None
    elif isinstance(state, PyramidalState):
        return state.level
    elif isinstance(state, StringState):
        return state.value
    else:
        raise TypeError(f"Unknown quality state: {type(state).__name__}")


def _state_points(state: QualityState | None) -> int | None:
    return state.change_points if isinstance(state, PyramidalState) else None


def _property_value(raw: str) -> Any:
    number = to_number(raw)
    if number is None:
        return raw
    return int(number) if number.is_integer() else number


@dataclass
class EffectApplier:
    """
    Applies effect statements to a QualityStore.

    `changes` and `deferred` accumulate across calls; each apply call also
    returns the records it produced.
    """
    store: QualityStore
    evaluator: ExpressionEvaluator
    changes: list[ChangeRecord] = field(default_factory=list)
    deferred: list[DeferredMacro] = field(default_factory=list)

    def apply_effects(self, effects: str | None, ctx: EvaluationContext) -> list[ChangeRecord]:
        """Apply a comma-separated effect list in order."""
        start = len(self.changes)
        if not effects or not effects.strip():
            return []
        if ctx.depth >= ctx.settings.max_depth:
            self._fail(ctx, f"Maximum effect depth {ctx.settings.max_depth} exceeded", effects)
            return []

        for piece, offset in split_top_level(effects, ",", respect_quotes=True):
            if not piece.strip():
                continue
            try:
                statement = parse_effect_statement(piece, offset)
            except ParseError as e:
                self._fail(ctx, f"Effect failed to parse: {e}", piece.strip())
                continue
            self.apply_statement(statement, ctx)
        return self.changes[start:]

    def apply_effect(self, statement: str, ctx: EvaluationContext) -> list[ChangeRecord]:
        """Apply a single statement."""
        start = len(self.changes)
        try:
            parsed = parse_effect_statement(statement)
        except ParseError as e:
            self._fail(ctx, f"Effect failed to parse: {e}", statement.strip())
            return []
        self.apply_statement(parsed, ctx)
        return self.changes[start:]

    def apply_statement(self, statement: EffectStatement, ctx: EvaluationContext):
        try:
            if statement.block is not None:
                self._apply_block(statement.block, ctx)
            elif statement.macro is not None:
                self._apply_macro(statement, ctx)
            else:
                self._apply_assignment(statement, ctx)
        except (EffectError, ParseError) as e:
            self._fail(ctx, str(e), statement.source)

    def change_quality(
        self,
        qid: str,
        op: str,
        value: Any,
        metadata: dict[str, str] | None,
        ctx: EvaluationContext,
    ) -> ChangeRecord:
        """
        Change one quality and record it. An id with neither a definition nor
        a state becomes a dynamic quality first.
        """
        metadata = dict(metadata or {})
        created = False
        if self.store.definition(qid) is None and self.store.get(qid) is None:
            logger.info("Creating dynamic quality %s", qid)
            if op == "=":
                self.store.create_new_quality(qid, self._creation_value(value))
                return self._record(qid, None, self.store.get(qid), metadata, ctx, created=True)
            self.store.create_new_quality(qid, 0)
            created = True

        state = self.store.get(qid)
        if isinstance(state, StringState) or (
            state is None and self._definition_kind(qid) == QualityKind.STRING
        ):
            value = format_value(value)

        if isinstance(state, PyramidalState) and op in ("=", "+=", "-="):
            value = self._whole_number(qid, value, ctx)

        try:
            before, after = self.store.change_quality(qid, op, value)
        except EffectError:
            if created:
                self.store.discard_quality(qid)
            raise
        return self._record(qid, before, after, metadata, ctx, created=created)

    # ------------------------------------------------------------------
    # Statement forms
    # ------------------------------------------------------------------

    def _apply_block(self, block: ConditionalBlock, ctx: EvaluationContext):
        inner = ctx.deeper()
        for branch in block.branches:
            if branch.condition is None or truthy(self.evaluator.evaluate(branch.condition, inner)):
                self.apply_effects(branch.body.source, inner)
                return

    def _apply_assignment(self, statement: EffectStatement, ctx: EvaluationContext):
        qid = self._resolve_target(statement.target, ctx)
        value = self._operand(statement, ctx)
        self.change_quality(qid, statement.operator, value, statement.metadata, ctx)

    def _apply_macro(self, statement: EffectStatement, ctx: EvaluationContext):
        handlers: dict[str, Callable] = {
            "new": self._macro_new,
            "all": self._macro_all,
        }
        for name in TIMER_MACROS:
            handlers[name] = self._macro_deferred

        handler = handlers.get(statement.macro.name)
        if handler is None:
            raise EffectError(f"Unknown effect macro %{statement.macro.name}", statement.source)
        handler(statement, ctx)

    def _macro_new(self, statement: EffectStatement, ctx: EvaluationContext):
        macro = statement.macro
        if not macro.args or not macro.args[0].strip():
            raise EffectError("%new needs an id", statement.source)
        qid = self.evaluator.macros.arg_text(macro.args[0], ctx).strip().lstrip("$")

        template: str | None = None
        properties: dict[str, Any] = {}
        if len(macro.args) > 1:
            entries = [e.strip() for arg in macro.args[1:] for e, _ in split_top_level(arg, ",")]
            entries = [e for e in entries if e]
            if entries and ":" not in entries[0]:
                template = entries.pop(0)
            for entry in entries:
                key, _, raw = entry.partition(":")
                properties[key.strip()] = _property_value(strip_quotes(raw))

        value: Any = 1
        if statement.operator == "=":
            value = self._creation_value(self._operand(statement, ctx))
        elif statement.operator is not None:
            raise EffectError("%new only supports '='", statement.source)

        existing = self.store.get(qid)
        before = deepcopy(existing) if existing is not None else None
        self.store.create_new_quality(qid, value, template=template, properties=properties)
        self._record(qid, before, self.store.get(qid), dict(statement.metadata), ctx, created=before is None)

    def _macro_all(self, statement: EffectStatement, ctx: EvaluationContext):
        macro = statement.macro
        if statement.operator is None:
            raise EffectError("%all needs an operator", statement.source)
        category = self.evaluator.macros.arg_text(macro.args[0], ctx) if macro.args else ""
        filter_expr = macro.args[1] if len(macro.args) > 1 else ""
        value = self._operand(statement, ctx)
        for qid in self.evaluator.macros.candidates(category, filter_expr, ctx):
            try:
                self.change_quality(qid, statement.operator, value, statement.metadata, ctx)
            except EffectError as e:
                self._fail(ctx, str(e), f"{statement.source} ({qid})")

    def _macro_deferred(self, statement: EffectStatement, ctx: EvaluationContext):
        macro = statement.macro
        args = [self.evaluator.evaluate_text(arg, ctx) for arg in macro.args]
        self.deferred.append(DeferredMacro(macro.name, args, macro.raw))
        logger.debug("Deferred %s", macro.raw)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _resolve_target(self, target: Reference, ctx: EvaluationContext) -> str:
        if target.kind == RefKind.QUALITY:
            return target.name
        elif target.kind == RefKind.ALIAS:
            qid = ctx.aliases.get(target.name)
            if not qid:
                raise EffectError(f"Unresolved alias @{target.name}")
            return qid
        elif target.kind == RefKind.SELF:
            if not ctx.self_id:
                raise EffectError("Self reference outside a quality context")
            return ctx.self_id
        elif target.kind == RefKind.DYNAMIC:
            qid = self.evaluator.evaluate_block(target.name, ctx).strip().lstrip("$") + target.suffix
            if not qid:
                raise EffectError("Dynamic target resolved to an empty id")
            return qid
        elif target.kind == RefKind.WORLD:
            raise EffectError(f"World quality #{target.name} cannot be changed by effects")
        else:
            raise TypeError(f"Unknown reference kind: {target.kind}")

    def _operand(self, statement: EffectStatement, ctx: EvaluationContext) -> Any:
        """
        Evaluate the operand against current state.

        Quoted operands are literal text. Otherwise the operand is read as an
        expression, falling back to a text template for prose.
        """
        if statement.operator in ("++", "--"):
            return 1
        operand = statement.operand.strip()
        if len(operand) >= 2 and operand[0] == operand[-1] and operand[0] in ("'", '"'):
            return self.evaluator.evaluate_text(operand[1:-1], ctx)
        try:
            node = parse_expression(operand)
        except ParseError:
            return self.evaluator.evaluate_text(operand, ctx)
        return self.evaluator.evaluate(node, ctx)

    def _whole_number(self, qid: str, value: Any, ctx: EvaluationContext) -> Any:
        """Pyramidal changes are whole numbers; a fractional operand is floored and noted."""
        number = to_number(value)
        if number is None or number.is_integer():
            return value
        floored = math.floor(number)
        message = f"Fractional value {format_value(number)} for {qid} floored to {floored}"
        logger.warning(message)
        ctx.errors.append(message)
        return floored

    def _creation_value(self, value: Any) -> Any:
        number = to_number(value)
        return number if number is not None else format_value(value)

    def _definition_kind(self, qid: str) -> QualityKind | None:
        definition = self.store.definition(qid)
        return definition.kind if definition else None

    def _record(
        self,
        qid: str,
        before: QualityState | None,
        after: QualityState,
        metadata: dict[str, str],
        ctx: EvaluationContext,
        created: bool = False,
    ) -> ChangeRecord:
        definition = self.store.definition(qid)
        self_ctx = ctx.with_self(qid, after)
        name = self.evaluator.evaluate_text(definition.name, self_ctx) if definition and definition.name else qid

        before_value, after_value = _state_value(before), _state_value(after)
        cp_before, cp_after = _state_points(before), _state_points(after)

        text = ""
        if metadata.get("desc"):
            text = self.evaluator.evaluate_text(metadata["desc"], self_ctx)
        elif isinstance(after, StringState):
            text = f"{name} is now {after.value}"
        elif isinstance(after, PyramidalState):
            level_before = before_value if isinstance(before_value, int) else 0
            points_before = cp_before or 0
            if after.level > level_before or (after.level == level_before and after.change_points > points_before):
                increase = definition.increase_description if definition else ""
                text = self.evaluator.evaluate_text(increase, self_ctx) or f"{name} increased."
            elif after.level < level_before or after.change_points < points_before:
                decrease = definition.decrease_description if definition else ""
                text = self.evaluator.evaluate_text(decrease, self_ctx) or f"{name} decreased."
        else:
            raise TypeError(f"Unknown quality state: {type(after).__name__}")

        hidden_flag = metadata.get("hidden", "").strip().lower() not in ("", "false", "0", "no")
        record = ChangeRecord(
            quality_id=qid,
            name=name,
            kind=after.kind,
            before=before_value,
            after=after_value,
            cp_before=cp_before,
            cp_after=cp_after,
            metadata=metadata,
            text=text,
            hidden=hidden_flag or bool(definition and definition.has_tag("hidden")),
            created=created,
        )
        self.changes.append(record)
        return record

    def _fail(self, ctx: EvaluationContext, message: str, statement: str):
        logger.warning("Skipping effect %r: %s", statement, message)
        ctx.errors.append(f"{message} (in {statement!r})")
