"""
Quality Store - per-character quality state and pyramidal leveling.

A Pyramidal quality tracks accumulated change points; its level is the
largest L with change_points >= L*(L+1)/2, so each level costs one more
point than the last:

    cp:     0  1  2  3  4  5  6 ... 10
    level:  0  1  1  2  2  2  3 ...  4

A String quality holds free text and only accepts `=`.

Quality state is a tagged union (PyramidalState | StringState). Every branch
on it ends in a TypeError for unknown variants.
"""

from __future__ import annotations
from copy import deepcopy
from dataclasses import dataclass, field
from enum import Enum
from math import floor, isqrt
from typing import Any, Callable, Mapping, Union
import logging

from .errors import EffectError

logger = logging.getLogger(__name__)


class QualityKind(str, Enum):
    """Quality data kinds."""
    PYRAMIDAL = "P"
    STRING = "S"


@dataclass
class QualityDefinition:
    """
    Authored definition of a quality.

    `max` is a level cap: a number, an expression evaluated against the
    character, or None for uncapped. `slots` and `category` are comma lists.
    """
    id: str
    kind: QualityKind = QualityKind.PYRAMIDAL
    name: str = ""
    description: str = ""
    category: str = ""
    max: int | str | None = None
    slots: str = ""
    tags: list[str] = field(default_factory=list)
    bonus: str = ""
    ordering: int = 0
    increase_description: str = ""
    decrease_description: str = ""
    singular_name: str = ""
    plural_name: str = ""
    lock_message: str = ""
    variants: dict[str, str] = field(default_factory=dict)

    @property
    def allowed_slots(self) -> list[str]:
        return [s.strip() for s in self.slots.split(",") if s.strip()]

    @property
    def categories(self) -> list[str]:
        return [c.strip() for c in self.category.split(",") if c.strip()]

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags


@dataclass
class PyramidalState:
    """Numeric quality. `level` always follows `change_points`."""
    level: int = 0
    change_points: int = 0
    properties: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> QualityKind:
        return QualityKind.PYRAMIDAL


@dataclass
class StringState:
    """Free-text quality."""
    value: str = ""
    properties: dict[str, Any] = field(default_factory=dict)

    @property
    def kind(self) -> QualityKind:
        return QualityKind.STRING


QualityState = Union[PyramidalState, StringState]


# ============================================================================
# Leveling math
# ============================================================================

def triangular(n: int) -> int:
    """Change points needed to reach level n."""
    return n * (n + 1) // 2


def level_for_points(change_points: int, cap: int | None = None) -> int:
    """Largest level whose triangular cost fits in `change_points`, clamped to cap."""
    if change_points <= 0:
        return 0
    level = (isqrt(8 * change_points + 1) - 1) // 2
    if cap is not None:
        level = min(level, cap)
    return level


def to_number(value: Any) -> float | None:
    """Numeric view of a value, or None when it has none. Empty text is not a number."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return float(text)
        except ValueError:
            return None
    return None


def apply_operator(state: QualityState, op: str, value: Any, cap: int | None = None) -> QualityState:
    """
    Return a new state with `op value` applied.

    Raises EffectError for an operator the state's kind does not support or a
    non-numeric operand on a Pyramidal quality.
    """
    if isinstance(state, PyramidalState):
        if op in ("++", "--"):
            amount = 1.0
        else:
            amount = to_number(value)
            if amount is None:
                raise EffectError(f"Non-numeric value {value!r} for pyramidal quality")

        if op == "=":
            level = max(0, floor(amount))
            if cap is not None:
                level = min(level, cap)
            return PyramidalState(level, triangular(level), dict(state.properties))

        if op in ("+=", "++"):
            points = state.change_points + floor(amount)
        elif op in ("-=", "--"):
            points = state.change_points - floor(amount)
        else:
            raise EffectError(f"Unsupported operator {op!r}")

        points = max(0, points)
        if cap is not None:
            points = min(points, triangular(cap))
        return PyramidalState(level_for_points(points, cap), points, dict(state.properties))

    elif isinstance(state, StringState):
        if op != "=":
            raise EffectError(f"Operator {op!r} is not valid on a string quality")
        return StringState("" if value is None else _stringify(value), dict(state.properties))

    else:
        raise TypeError(f"Unknown quality state: {type(state).__name__}")


def _stringify(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def state_from_dict(data: Mapping[str, Any]) -> QualityState:
    """
    Build a state from a plain mapping.

    Uses the `type` tag when present ("P"/"S"); otherwise a `value` field
    marks a String quality.
    """
    tag = data.get("type")
    if tag is None:
        tag = QualityKind.STRING.value if "value" in data else QualityKind.PYRAMIDAL.value
    kind = QualityKind(tag)
    properties = dict(data.get("properties") or {})
    if kind == QualityKind.STRING:
        return StringState(str(data.get("value", "")), properties)
    points = int(data.get("change_points", 0))
    if "change_points" not in data and "level" in data:
        points = triangular(int(data["level"]))
    return PyramidalState(level_for_points(points), points, properties)


def state_to_dict(state: QualityState) -> dict[str, Any]:
    if isinstance(state, PyramidalState):
        data: dict[str, Any] = {
            "type": QualityKind.PYRAMIDAL.value,
            "level": state.level,
            "change_points": state.change_points,
        }
    elif isinstance(state, StringState):
        data = {"type": QualityKind.STRING.value, "value": state.value}
    else:
        raise TypeError(f"Unknown quality state: {type(state).__name__}")
    if state.properties:
        data["properties"] = dict(state.properties)
    return data


# ============================================================================
# Store
# ============================================================================

class QualityStore:
    """
    Owns one character's quality map plus the dynamic definitions created
    while evaluating against it.

    `cap_resolver` evaluates expression caps (e.g. "$level * 2"); the engine
    supplies one bound to its evaluator.
    """

    def __init__(
        self,
        qualities: dict[str, QualityState],
        definitions: Mapping[str, QualityDefinition],
        cap_resolver: Callable[[str, str], int | None] | None = None,
    ):
        self.qualities = qualities
        self.definitions = definitions
        self.dynamic_definitions: dict[str, QualityDefinition] = {}
        self.cap_resolver = cap_resolver

    def get(self, qid: str) -> QualityState | None:
        return self.qualities.get(qid)

    def definition(self, qid: str) -> QualityDefinition | None:
        return self.definitions.get(qid) or self.dynamic_definitions.get(qid)

    def all_definitions(self) -> dict[str, QualityDefinition]:
        merged = dict(self.dynamic_definitions)
        merged.update(self.definitions)
        return merged

    def cap_for(self, qid: str) -> int | None:
        definition = self.definition(qid)
        if definition is None or definition.max is None or definition.max == "":
            return None
        if isinstance(definition.max, (int, float)):
            return max(0, int(definition.max))
        number = to_number(definition.max)
        if number is not None:
            return max(0, int(number))
        if self.cap_resolver is None:
            return None
        cap = self.cap_resolver(qid, definition.max)
        return None if cap is None else max(0, cap)

    def level(self, qid: str) -> int:
        """Raw level without equipment bonuses. String and missing qualities are 0."""
        state = self.get(qid)
        if state is None or isinstance(state, StringState):
            return 0
        elif isinstance(state, PyramidalState):
            return state.level
        else:
            raise TypeError(f"Unknown quality state: {type(state).__name__}")

    def ensure_state(self, qid: str) -> QualityState:
        """Return the state for `qid`, creating an empty one of the definition's kind."""
        state = self.get(qid)
        if state is not None:
            return state
        definition = self.definition(qid)
        if definition is not None and definition.kind == QualityKind.STRING:
            state = StringState()
        else:
            state = PyramidalState()
        self.qualities[qid] = state
        return state

    def change_quality(self, qid: str, op: str, value: Any) -> tuple[QualityState | None, QualityState]:
        """
        Apply one operator to a quality.

        Returns (before, after). `before` is None when the state did not
        exist yet.
        """
        existing = self.get(qid)
        before = deepcopy(existing) if existing is not None else None
        state = self.ensure_state(qid)
        try:
            after = apply_operator(state, op, value, self.cap_for(qid))
        except EffectError:
            if existing is None:
                del self.qualities[qid]
            raise
        self.qualities[qid] = after
        return before, deepcopy(after)

    def discard_quality(self, qid: str):
        """Drop a dynamic quality that was created for a change that then failed."""
        self.qualities.pop(qid, None)
        self.dynamic_definitions.pop(qid, None)

    def create_new_quality(
        self,
        qid: str,
        value: Any = 1,
        cap: int | None = None,
        template: str | None = None,
        properties: Mapping[str, Any] | None = None,
    ) -> QualityState:
        """
        Create a quality that has no authored definition, or update it if it
        already exists.

        A dynamic definition is registered for the caller to persist. When
        `template` names an existing definition, its fields seed the new one.
        """
        props = dict(properties or {})
        template_def = self.definition(template) if template else None
        numeric = to_number(value)

        if template_def is not None:
            kind = template_def.kind
        elif isinstance(value, str) and numeric is None:
            kind = QualityKind.STRING
        else:
            kind = QualityKind.PYRAMIDAL

        if self.definition(qid) is None:
            seed = deepcopy(template_def) if template_def else QualityDefinition(
                id=qid, kind=kind, description="Dynamically created.", category="Dynamic",
            )
            seed.id = qid
            seed.kind = kind
            if "name" in props:
                seed.name = str(props["name"])
            elif not seed.name:
                seed.name = qid
            if "description" in props:
                seed.description = str(props["description"])
            if cap is not None:
                seed.max = cap
            self.dynamic_definitions[qid] = seed
            logger.info("Registered dynamic quality %s", qid)

        variants = dict(template_def.variants) if template_def else {}
        variants.update(props)

        state = self.get(qid)
        if state is None:
            if kind == QualityKind.STRING:
                state = StringState(_stringify(value) if value is not None else "", variants)
            else:
                level = max(0, int(numeric or 0))
                limit = cap if cap is not None else self.cap_for(qid)
                if limit is not None:
                    level = min(level, limit)
                state = PyramidalState(level, triangular(level), variants)
            self.qualities[qid] = state
            return state

        state.properties.update(variants)
        if isinstance(state, PyramidalState):
            if numeric is not None:
                updated = apply_operator(state, "=", numeric, self.cap_for(qid))
                state.level, state.change_points = updated.level, updated.change_points
        elif isinstance(state, StringState):
            if value is not None:
                state.value = _stringify(value)
        else:
            raise TypeError(f"Unknown quality state: {type(state).__name__}")
        return state

    def snapshot(self) -> dict[str, QualityState]:
        return deepcopy(self.qualities)
