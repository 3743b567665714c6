"""
Macro expansion for `%name[arg; arg; ...]` inside expressions and templates.

Collection macros select qualities by definition category, sorted by
ordering then name:
    %count[cat; filter]              number of matches
    %list[cat; filter; .prop; sep]   names of all matches, joined
    %all[cat; ...]                   ids of all matches
    %pick[cat; n; ...]               n random matches
    %roll[cat; n; ...]               n draws weighted by level

Randomness macros:
    %random[chance; invert]   true when the resolution roll is under chance
    %choice[a; b; c]          one option, rendered as text
    %chance[skill >> target; margin, min, max, pivot]

Anything else (including %new and the timer macros, which only mean
something inside an effect list) renders as its raw text.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, TYPE_CHECKING
import logging

from .challenge import calculate_chance, parse_chance_options, split_check
from .parser import Macro
from .quality import PyramidalState, QualityDefinition, QualityKind, StringState, to_number
from .tokenizer import split_top_level

if TYPE_CHECKING:
    from .evaluator import EvaluationContext, ExpressionEvaluator

logger = logging.getLogger(__name__)

SEPARATORS = {
    "comma": ", ",
    "pipe": " | ",
    "newline": "\n",
    "break": "<br/>",
    "and": " and ",
    "space": " ",
}

OWNED_FILTERS = frozenset({">0", "has", "owned"})
COLLECTION_MACROS = frozenset({"count", "list", "all", "pick", "roll"})
TIMER_MACROS = frozenset({"schedule", "reset", "update", "cancel"})

# Weight ceiling per quality in %roll
MAX_ROLL_TICKETS = 100


@dataclass
class CollectionArgs:
    category: str
    count: int | None
    filter: str
    prop: str
    separator: str


class MacroExpander:
    """Expands macros against an evaluation context."""

    def __init__(self, evaluator: ExpressionEvaluator):
        self.evaluator = evaluator
        self._handlers = {
            "random": self._random,
            "choice": self._choice,
            "chance": self._chance,
        }

    def expand(self, macro: Macro, ctx: EvaluationContext) -> Any:
        name = macro.name
        if name in COLLECTION_MACROS:
            return self._collection(macro, ctx)
        handler = self._handlers.get(name)
        if handler is not None:
            return handler(macro, ctx)
        if name in TIMER_MACROS or name == "new":
            logger.debug("Macro %s passed through in expression context", name)
        else:
            logger.warning("Unknown macro %%%s", name)
        return macro.raw

    # ------------------------------------------------------------------
    # Argument helpers
    # ------------------------------------------------------------------

    def arg_text(self, arg: str, ctx: EvaluationContext) -> str:
        """Evaluate an argument that may be a literal, a reference or a block."""
        arg = arg.strip()
        if arg.startswith("{"):
            return self.evaluator.evaluate_text(arg, ctx)
        if any(sigil in arg for sigil in "$@#%"):
            return self.evaluator.evaluate_block(arg, ctx)
        return arg

    def _count_arg(self, arg: str, ctx: EvaluationContext) -> int | None:
        arg = arg.strip()
        number = to_number(arg)
        if number is None and arg[:1] in ("{", "$", "@") and not any(c in arg for c in "<>=!&|"):
            number = to_number(self.arg_text(arg, ctx))
        if number is None:
            return None
        return max(1, int(round(number)))

    def parse_collection_args(self, macro: Macro, ctx: EvaluationContext) -> CollectionArgs:
        args = list(macro.args)
        category = self.arg_text(args[0], ctx) if args else ""
        rest = [a.strip() for a in args[1:]]

        count: int | None = None if macro.name in ("all", "list") else 1
        filter_expr = ""
        prop = ".name" if macro.name == "list" else "id"
        separator = ", "

        index = 0
        if index < len(rest):
            parsed = self._count_arg(rest[index], ctx)
            if parsed is not None:
                count = parsed
                index += 1
        if index < len(rest):
            arg = rest[index]
            if arg == "id" or arg.startswith("."):
                prop = arg
            else:
                filter_expr = arg
                if index + 1 < len(rest):
                    index += 1
                    prop = rest[index]
            index += 1
        if index < len(rest):
            raw = rest[index]
            separator = SEPARATORS.get(raw.lower(), raw.replace("'", "").replace('"', ""))

        return CollectionArgs(category.strip(), count, filter_expr, prop, separator)

    # ------------------------------------------------------------------
    # Collection macros
    # ------------------------------------------------------------------

    def candidates(self, category: str, filter_expr: str, ctx: EvaluationContext) -> list[str]:
        """Ids in `category`, sorted by (ordering, name), that pass the filter."""
        target = category.strip().lower()
        definitions = [
            d for d in ctx.store.all_definitions().values()
            if target in (c.lower() for c in d.categories)
        ]
        definitions.sort(key=lambda d: (d.ordering, (d.name or d.id).lower()))

        filter_expr = filter_expr.strip()
        if not filter_expr or filter_expr == "true":
            return [d.id for d in definitions]

        selected = []
        for definition in definitions:
            state = ctx.store.get(definition.id)
            if filter_expr in OWNED_FILTERS:
                if isinstance(state, PyramidalState) and state.level > 0:
                    selected.append(definition.id)
                continue
            if state is None:
                state = _empty_state(definition)
            if self.evaluator.evaluate_condition(filter_expr, ctx.with_self(definition.id, state)):
                selected.append(definition.id)
        return selected

    def _collection(self, macro: Macro, ctx: EvaluationContext) -> Any:
        args = self.parse_collection_args(macro, ctx)
        ids = self.candidates(args.category, args.filter, ctx)

        if macro.name == "count":
            return len(ids)
        if not ids:
            return "nothing"

        if macro.name == "roll":
            pool: list[str] = []
            for qid in ids:
                state = ctx.store.get(qid)
                if isinstance(state, PyramidalState) and state.level > 0:
                    pool.extend([qid] * min(state.level, MAX_ROLL_TICKETS))
            if not pool:
                return "nothing"
            selected = [ctx.rng.choice(pool) for _ in range(args.count or 1)]
        elif macro.name == "pick":
            selected = ctx.rng.sample(ids, min(args.count or 1, len(ids)))
        else:
            selected = ids if args.count is None else ids[:args.count]

        results = [self._project(qid, args.prop, ctx) for qid in selected]
        logger.debug("%%%s[%s] -> %d items", macro.name, args.category, len(results))
        return args.separator.join(results)

    def _project(self, qid: str, prop: str, ctx: EvaluationContext) -> str:
        prop = prop.strip()
        if prop in ("", "id"):
            return qid
        if prop.startswith("$") or prop.startswith("{"):
            template = prop if prop.startswith("{") else "{" + prop + "}"
        else:
            template = "{$." + prop.lstrip(".") + "}"
        state = ctx.store.get(qid)
        return self.evaluator.evaluate_text(template, ctx.with_self(qid, state))

    # ------------------------------------------------------------------
    # Randomness
    # ------------------------------------------------------------------

    def _random(self, macro: Macro, ctx: EvaluationContext) -> bool:
        if not macro.args:
            return False
        chance = to_number(self.arg_text(macro.args[0], ctx))
        if chance is None:
            return False
        options = [o.strip() for arg in macro.args[1:] for o in arg.split(",")]
        hit = ctx.resolution_roll < chance
        return not hit if "invert" in options else hit

    def _choice(self, macro: Macro, ctx: EvaluationContext) -> str:
        options = [a for a in macro.args if a.strip()]
        if not options:
            return ""
        return self.evaluator.evaluate_text(ctx.rng.choice(options).strip(), ctx)

    def _chance(self, macro: Macro, ctx: EvaluationContext) -> int:
        if not macro.args:
            return 0
        check = split_check(macro.args[0])
        if check is None:
            logger.warning("Malformed chance check: %s", macro.raw)
            return 0
        skill_expr, op, target_expr = check
        skill = self.evaluator.evaluate_number(skill_expr, ctx) or 0.0
        target = self.evaluator.evaluate_number(target_expr, ctx) or 0.0

        extra = [piece for arg in macro.args[1:] for piece, _ in split_top_level(arg, ",")]
        options = parse_chance_options(extra, lambda text: self.evaluator.evaluate_number(text, ctx))
        return calculate_chance(
            skill, target, op,
            margin=options.margin,
            min_cap=options.min_cap,
            max_cap=options.max_cap,
            pivot=options.pivot,
        )


def _empty_state(definition: QualityDefinition):
    if definition.kind == QualityKind.STRING:
        return StringState()
    return PyramidalState()
