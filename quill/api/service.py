"""
API Service - Business logic layer between the console API and the engine.

The service:
1. Builds a fresh StoryEngine from the snapshot in each request
2. Translates requests to engine calls
3. Formats engine results as response models

Nothing is kept between requests. This layer is framework-agnostic (can be
used with FastAPI, the CLI, or directly in tests).
"""

from __future__ import annotations
from dataclasses import dataclass, field
import logging

from ..config import Settings
from ..engine_core.engine import StoryEngine
from ..engine_core.content import scan_dynamic_ids
from ..engine_core.parser import parse_block, parse_condition, parse_effects, parse_template
from .schemas import (
    # Requests
    EvaluateRequest,
    ApplyEffectsRequest,
    RenderRequest,
    EquipRequest,
    ScanRequest,
    ValidateRequest,
    # Responses
    EvaluateResponse,
    ApplyEffectsResponse,
    RenderResponse,
    EquipResponse,
    ScanResponse,
    ValidateResponse,
    # Shared
    ChangeRecordSchema,
    DeferredMacroSchema,
    EngineSnapshot,
    QualityDefinitionSchema,
    QualityStateSchema,
    # Enums
    EvaluationMode,
    ValidationMode,
)

logger = logging.getLogger(__name__)


@dataclass
class ConsoleService:
    """
    Stateless service behind the authoring console.

    Usage:
        service = ConsoleService()

        # Try a condition against a snapshot
        response = service.evaluate(EvaluateRequest(mode="condition", expression="$gold >= 5"))

        # Preview what an option's effects would do
        response = service.apply_effects(ApplyEffectsRequest(snapshot=snapshot, effects="$gold -= 5"))
    """
    settings: Settings = field(default_factory=Settings)

    def build_engine(self, snapshot: EngineSnapshot) -> StoryEngine:
        return StoryEngine(
            {qid: state.to_state() for qid, state in snapshot.qualities.items()},
            snapshot.content.to_context(),
            equipment=snapshot.equipment,
            world={qid: state.to_state() for qid, state in snapshot.world.items()},
            seed=snapshot.seed,
            settings=self.settings,
        )

    def evaluate(self, request: EvaluateRequest) -> EvaluateResponse:
        """Evaluate a condition, text template or block against the snapshot."""
        engine = self.build_engine(request.snapshot)
        if request.mode == EvaluationMode.CONDITION:
            result = engine.evaluate_condition(request.expression, self_id=request.self_id)
        elif request.mode == EvaluationMode.BLOCK:
            result = engine.evaluate_block(request.expression, self_id=request.self_id)
        else:
            result = engine.evaluate_text(request.expression, self_id=request.self_id)
        return EvaluateResponse(mode=request.mode, result=result, errors=list(engine.errors))

    def apply_effects(self, request: ApplyEffectsRequest) -> ApplyEffectsResponse:
        """
        Apply an effect list and return the changes plus the resulting state.

        Statements that fail are skipped and listed in `errors`.
        """
        engine = self.build_engine(request.snapshot)
        changes = engine.apply_effects(request.effects)
        return ApplyEffectsResponse(
            changes=[ChangeRecordSchema(**c.to_dict()) for c in changes],
            qualities={qid: QualityStateSchema.from_state(s) for qid, s in engine.get_qualities().items()},
            deferred=[DeferredMacroSchema(**d.to_dict()) for d in engine.deferred],
            dynamic_definitions=[
                QualityDefinitionSchema.from_definition(d)
                for _, d in sorted(engine.dynamic_definitions.items())
            ],
            errors=list(engine.errors),
        )

    def render(self, request: RenderRequest) -> RenderResponse:
        engine = self.build_engine(request.snapshot)
        if request.storylet:
            rendered = engine.render_storylet(request.target)
        else:
            rendered = engine.render(request.target)
        return RenderResponse(rendered=rendered, errors=list(engine.errors))

    def equip(self, request: EquipRequest) -> EquipResponse:
        """Validate an equip request. A rejection has success=False and the unchanged equipment."""
        engine = self.build_engine(request.snapshot)
        result = engine.equip(request.slot, request.item_id)
        return EquipResponse(**result.to_dict())

    def scan(self, request: ScanRequest) -> ScanResponse:
        return ScanResponse(dynamic_ids=scan_dynamic_ids(request.content.to_context()))

    def validate(self, request: ValidateRequest) -> ValidateResponse:
        """
        Parse without evaluating.

        Raises:
            ParseError: if the expression does not parse in the given mode
        """
        expression = request.expression
        if request.mode == ValidationMode.CONDITION:
            parse_condition(expression.strip())
        elif request.mode == ValidationMode.BLOCK:
            inner = expression.strip()
            if inner.startswith("{") and inner.endswith("}"):
                inner = inner[1:-1]
            parse_block(inner)
        elif request.mode == ValidationMode.EFFECTS:
            parse_effects(expression)
        else:
            parse_template(expression)
        logger.debug("Validated %s expression %r", request.mode.value, expression)
        return ValidateResponse(valid=True, mode=request.mode)
