"""
Story Engine - the facade callers use.

One engine wraps one character for one request:

    engine = StoryEngine(qualities, content, equipment, world, seed=7)
    if engine.evaluate_condition(option["unlock_if"]):
        result = engine.resolve_option(storylet, option)
    save(engine.get_qualities(), engine.dynamic_definitions)

The engine deep-copies the qualities it is given and never persists
anything. The caller reads back the mutated state, the change records and
any dynamic definitions, and stores them.
"""

from __future__ import annotations
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Mapping
import logging
import random
import re

from ..config import Settings
from .content import ContentContext
from .effects import ChangeRecord, DeferredMacro, EffectApplier
from .errors import EffectError, EquipError
from .evaluator import EvaluationContext, ExpressionEvaluator, format_value
from .quality import (
    PyramidalState,
    QualityDefinition,
    QualityState,
    QualityStore,
    StringState,
    level_for_points,
    state_from_dict,
    to_number,
    triangular,
)
from .tokenizer import split_top_level

logger = logging.getLogger(__name__)

# Keys that identify content rather than display it
RENDER_SKIP_KEYS = frozenset({"id", "deck", "ordering", "world_id", "owner_id"})

_BONUS = re.compile(r"^\$([A-Za-z0-9_]+)\s*([+-])\s*(\d+(?:\.\d+)?)$")


@dataclass
class EquipResult:
    """Outcome of an equip or unequip request."""
    success: bool
    slot: str
    item_id: str | None = None
    message: str = ""
    locked: bool = False
    equipment: dict[str, str | None] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "slot": self.slot,
            "item_id": self.item_id,
            "message": self.message,
            "locked": self.locked,
            "equipment": dict(self.equipment),
        }


@dataclass
class ChallengeDetails:
    """A resolved skill check. `roll` is -1 when the option had no challenge."""
    chance: int
    roll: int
    success: bool
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "chance": self.chance,
            "roll": self.roll,
            "success": self.success,
            "description": self.description,
        }


@dataclass
class OptionResult:
    """Everything that happened when an option was played."""
    success: bool
    body: str
    challenge: ChallengeDetails
    changes: list[ChangeRecord] = field(default_factory=list)
    deferred: list[DeferredMacro] = field(default_factory=list)
    redirect: str | None = None
    move_to: str | None = None
    errors: list[str] = field(default_factory=list)
    dynamic_definitions: dict[str, QualityDefinition] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "body": self.body,
            "challenge": self.challenge.to_dict(),
            "changes": [c.to_dict() for c in self.changes],
            "deferred": [d.to_dict() for d in self.deferred],
            "redirect": self.redirect,
            "move_to": self.move_to,
            "errors": list(self.errors),
            "dynamic_definitions": sorted(self.dynamic_definitions),
        }


def _normalize_states(states: Mapping[str, Any] | None) -> dict[str, QualityState]:
    normalized: dict[str, QualityState] = {}
    for qid, state in (states or {}).items():
        if isinstance(state, (PyramidalState, StringState)):
            normalized[qid] = deepcopy(state)
        elif isinstance(state, Mapping):
            normalized[qid] = state_from_dict(state)
        else:
            raise TypeError(f"Unknown quality state for {qid}: {type(state).__name__}")
    return normalized


class StoryEngine:
    """
    Facade over the evaluator, effect applier and quality store.

    Attributes:
        errors: degradation messages from every operation so far
        changes: change records from every effect applied so far
        deferred: timer macros handed back for the caller
        dynamic_definitions: definitions created for unknown qualities
    """

    def __init__(
        self,
        qualities: Mapping[str, Any] | None,
        content: ContentContext,
        equipment: Mapping[str, str | None] | None = None,
        world: Mapping[str, Any] | None = None,
        *,
        seed: int | None = None,
        settings: Settings | None = None,
    ):
        self.content = content
        self.settings = settings or Settings()
        self.rng = random.Random(seed)
        self.resolution_roll = self.rng.random() * 100
        self.equipment: dict[str, str | None] = dict(equipment or {})
        self.world = _normalize_states(world)
        self.aliases: dict[str, str] = {}
        self.errors: list[str] = []

        self.store = QualityStore(
            _normalize_states(qualities),
            content.definitions,
            cap_resolver=self._resolve_cap,
        )
        self._resolving_caps: set[str] = set()
        self.evaluator = ExpressionEvaluator()
        self.applier = EffectApplier(self.store, self.evaluator)
        self._clamp_to_caps()

    @property
    def changes(self) -> list[ChangeRecord]:
        return self.applier.changes

    @property
    def deferred(self) -> list[DeferredMacro]:
        return self.applier.deferred

    @property
    def dynamic_definitions(self) -> dict[str, QualityDefinition]:
        return self.store.dynamic_definitions

    # ------------------------------------------------------------------
    # Contexts
    # ------------------------------------------------------------------

    def _base_context(self) -> EvaluationContext:
        return EvaluationContext(
            store=self.store,
            world=self.world,
            aliases=self.aliases,
            resolution_roll=self.resolution_roll,
            rng=self.rng,
            settings=self.settings,
            errors=self.errors,
        )

    def context(self, self_id: str | None = None) -> EvaluationContext:
        """Evaluation context with equipment bonuses applied."""
        ctx = self._base_context()
        ctx.bonuses = self.equipment_bonuses()
        if self_id is not None:
            ctx = ctx.with_self(self_id, self.store.get(self_id))
        return ctx

    def _resolve_cap(self, qid: str, expression: str) -> int | None:
        # A cap that reads its own quality sees it uncapped
        if qid in self._resolving_caps:
            return None
        self._resolving_caps.add(qid)
        try:
            number = self.evaluator.evaluate_number(expression, self._base_context())
        finally:
            self._resolving_caps.discard(qid)
        if number is None:
            logger.warning("Cap for %s did not evaluate to a number: %s", qid, expression)
            return None
        return int(number)

    def _clamp_to_caps(self):
        """Bring snapshot states over their cap back to it."""
        for qid, state in list(self.store.qualities.items()):
            if not isinstance(state, PyramidalState):
                continue
            cap = self.store.cap_for(qid)
            points = state.change_points
            if cap is not None:
                points = min(points, triangular(cap))
            level = level_for_points(points, cap)
            if (level, points) != (state.level, state.change_points):
                logger.info("Clamping %s to level %d (%d cp)", qid, level, points)
                self.store.qualities[qid] = PyramidalState(level, points, state.properties)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_condition(self, expression: str | None, self_id: str | None = None) -> bool:
        return self.evaluator.evaluate_condition(expression, self.context(self_id))

    def evaluate_text(self, template: str | None, self_id: str | None = None) -> str:
        return self.evaluator.evaluate_text(template, self.context(self_id))

    def evaluate_block(self, expression: str | None, self_id: str | None = None) -> str:
        return self.evaluator.evaluate_block(expression, self.context(self_id))

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def apply_effects(self, effects: str | None) -> list[ChangeRecord]:
        return self.applier.apply_effects(effects, self.context())

    def apply_effect(self, statement: str) -> list[ChangeRecord]:
        return self.applier.apply_effect(statement, self.context())

    def change_quality(
        self,
        qid: str,
        op: str,
        value: Any = None,
        metadata: dict[str, str] | None = None,
    ) -> ChangeRecord | None:
        """Change one quality directly. Returns None if the change was rejected."""
        ctx = self.context()
        try:
            return self.applier.change_quality(qid, op, value, metadata, ctx)
        except EffectError as e:
            logger.warning("Skipping change to %s: %s", qid, e)
            self.errors.append(f"{e} (changing {qid!r})")
            return None

    def create_new_quality(
        self,
        qid: str,
        value: Any = 1,
        cap: int | None = None,
        template: str | None = None,
        properties: Mapping[str, Any] | None = None,
    ) -> QualityState:
        return self.store.create_new_quality(qid, value, cap=cap, template=template, properties=properties)

    def get_qualities(self) -> dict[str, QualityState]:
        return self.store.snapshot()

    # ------------------------------------------------------------------
    # Levels and equipment
    # ------------------------------------------------------------------

    def equipment_bonuses(self) -> dict[str, int]:
        """Per-quality totals of the `bonus` adjustments of equipped items."""
        totals: dict[str, int] = {}
        ctx = self._base_context()
        for item_id in self.equipment.values():
            if not item_id:
                continue
            definition = self.store.definition(item_id)
            if definition is None or not definition.bonus:
                continue
            text = self.evaluator.evaluate_text(definition.bonus, ctx.with_self(item_id, self.store.get(item_id)))
            for part, _ in split_top_level(text, ","):
                match = _BONUS.match(part.strip())
                if not match:
                    continue
                qid, sign, amount = match.groups()
                delta = int(float(amount))
                totals[qid] = totals.get(qid, 0) + (delta if sign == "+" else -delta)
        return totals

    def effective_level(self, qid: str) -> int:
        """Level plus equipment bonuses, clamped to [0, cap]."""
        state = self.store.get(qid)
        if state is None and qid in self.world:
            state = self.world[qid]
        level = state.level if isinstance(state, PyramidalState) else 0
        level += self.equipment_bonuses().get(qid, 0)
        level = max(0, level)
        cap = self.store.cap_for(qid)
        if cap is not None:
            level = min(level, cap)
        return level

    def _item_name(self, item_id: str) -> str:
        definition = self.store.definition(item_id)
        if definition is None or not definition.name:
            return item_id
        return self.evaluate_text(definition.name, self_id=item_id)

    def _check_removable(self, slot: str, item_id: str):
        definition = self.store.definition(item_id)
        if definition is not None and definition.has_tag("cursed"):
            message = definition.lock_message or f"{self._item_name(item_id)} is cursed and cannot be removed."
            raise EquipError(self.evaluate_text(message, self_id=item_id), slot, locked=True)

    def _check_equippable(self, slot: str, item_id: str):
        definition = self.store.definition(item_id)
        if definition is None:
            raise EquipError(f"Unknown item {item_id!r}.", slot)
        if self.store.level(item_id) < 1:
            raise EquipError(f"You do not own {self._item_name(item_id)}.", slot)
        if slot not in definition.allowed_slots:
            raise EquipError(f"{self._item_name(item_id)} cannot be equipped in {slot}.", slot)

    def equip(self, slot: str, item_id: str | None) -> EquipResult:
        """
        Put an item in a slot. Equipping None clears the slot.

        Rejected when the item is unknown, not owned, not allowed in the
        slot, or when the slot's current item is cursed. A rejection leaves
        the equipment map unchanged.
        """
        if not item_id:
            return self.unequip(slot)

        current = self.equipment.get(slot)
        try:
            self._check_equippable(slot, item_id)
            if current == item_id:
                return EquipResult(True, slot, item_id, "Already equipped.", equipment=dict(self.equipment))
            if current:
                self._check_removable(slot, current)
            moved_from = [s for s, i in self.equipment.items() if i == item_id and s != slot]
            for other_slot in moved_from:
                self._check_removable(other_slot, item_id)
        except EquipError as e:
            logger.info("Equip rejected for slot %s: %s", slot, e.message)
            return EquipResult(False, slot, item_id, e.message, e.locked, dict(self.equipment))

        for other_slot in moved_from:
            self.equipment[other_slot] = None
        self.equipment[slot] = item_id
        return EquipResult(True, slot, item_id, f"Equipped {self._item_name(item_id)}.", equipment=dict(self.equipment))

    def unequip(self, slot: str) -> EquipResult:
        """Clear a slot unless it holds a cursed item."""
        current = self.equipment.get(slot)
        if not current:
            return EquipResult(True, slot, None, "Nothing to remove.", equipment=dict(self.equipment))
        try:
            self._check_removable(slot, current)
        except EquipError as e:
            logger.info("Unequip rejected for slot %s: %s", slot, e.message)
            return EquipResult(False, slot, current, e.message, e.locked, dict(self.equipment))

        self.equipment[slot] = None
        return EquipResult(True, slot, current, f"Removed {self._item_name(current)}.", equipment=dict(self.equipment))

    # ------------------------------------------------------------------
    # Content
    # ------------------------------------------------------------------

    def render(self, obj: Any) -> Any:
        """Deep copy of `obj` with every template string resolved."""
        ctx = self.context()
        return self._render_value(deepcopy(obj), ctx)

    def _render_value(self, value: Any, ctx: EvaluationContext) -> Any:
        if isinstance(value, str):
            if any(sigil in value for sigil in "{$#@"):
                return self.evaluator.evaluate_text(value, ctx)
            return value
        if isinstance(value, list):
            return [self._render_value(item, ctx) for item in value]
        if isinstance(value, dict):
            return {
                key: item if key in RENDER_SKIP_KEYS else self._render_value(item, ctx)
                for key, item in value.items()
            }
        return value

    def render_storylet(self, storylet: Mapping[str, Any]) -> dict[str, Any]:
        """Render a storylet and compute each option's action cost."""
        rendered = self.render(dict(storylet))
        options = storylet.get("options") or []
        for raw, option in zip(options, rendered.get("options") or []):
            option["computed_action_cost"] = self._action_cost(raw.get("action_cost"))
        return rendered

    def _action_cost(self, cost: Any) -> int | str:
        if cost is None or cost == "":
            return 0
        text = format_value(cost) if not isinstance(cost, str) else cost
        number = to_number(self.evaluate_block(text))
        if number is None:
            return text
        return int(number)

    def challenge_details(self, challenge: str | None) -> ChallengeDetails:
        """Evaluate a challenge expression and roll against it."""
        if not challenge or not challenge.strip():
            return ChallengeDetails(chance=100, roll=-1, success=True)
        number = to_number(self.evaluate_block(challenge))
        chance = 100 if number is None else int(number)
        roll = int(self.resolution_roll)
        return ChallengeDetails(
            chance=chance,
            roll=roll,
            success=self.resolution_roll <= chance,
            description=f"Rolled {roll} vs {chance}%",
        )

    def resolve_option(self, storylet: Mapping[str, Any], option: Mapping[str, Any] | str) -> OptionResult:
        """
        Play an option: roll its challenge, render the pass or fail body,
        then apply the matching effects.
        """
        if isinstance(option, str):
            option_id = option
            option = next((o for o in storylet.get("options") or [] if o.get("id") == option_id), None)
            if option is None:
                raise KeyError(f"Storylet {storylet.get('id')!r} has no option {option_id!r}")

        self.changes.clear()
        self.deferred.clear()
        self.errors.clear()
        self.aliases.clear()

        challenge = self.challenge_details(option.get("challenge"))
        prefix = "pass" if challenge.success else "fail"

        body = self.evaluate_text(option.get(f"{prefix}_long") or "")
        changes = self.apply_effects(option.get(f"{prefix}_quality_change"))

        return OptionResult(
            success=challenge.success,
            body=body,
            challenge=challenge,
            changes=list(changes),
            deferred=list(self.deferred),
            redirect=option.get(f"{prefix}_redirect"),
            move_to=option.get(f"{prefix}_move_to"),
            errors=list(self.errors),
            dynamic_definitions=dict(self.dynamic_definitions),
        )
