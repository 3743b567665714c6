"""
Pydantic Schemas for API - request/response models for the authoring console.

These models define the contract between the console front-end and the
engine. Every request carries the full state snapshot it runs against; the
API keeps nothing between calls.

Error Codes:
- PARSE_ERROR: An expression, template or effect list could not be parsed
- VALIDATION_ERROR: The request body failed schema validation
- EQUIP_REJECTED: An equip or unequip request was refused
- INTERNAL_ERROR: Anything else
"""

from enum import Enum
from typing import Optional, Any, Union
from pydantic import BaseModel, Field

from ..engine_core.content import ContentContext
from ..engine_core.quality import (
    PyramidalState,
    QualityDefinition,
    QualityKind,
    QualityState,
    StringState,
    level_for_points,
    triangular,
)


# =============================================================================
# Enums
# =============================================================================

class ErrorCode(str, Enum):
    """Structured error codes."""
    PARSE_ERROR = "PARSE_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    EQUIP_REJECTED = "EQUIP_REJECTED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class EvaluationMode(str, Enum):
    """Which grammar an expression is read with."""
    CONDITION = "condition"
    TEXT = "text"
    BLOCK = "block"


class ValidationMode(str, Enum):
    """Grammars the validate endpoint can check."""
    CONDITION = "condition"
    TEXT = "text"
    BLOCK = "block"
    EFFECTS = "effects"


# =============================================================================
# Shared Models
# =============================================================================

class QualityDefinitionSchema(BaseModel):
    """An authored quality definition."""
    id: str
    type: QualityKind = QualityKind.PYRAMIDAL
    name: str = ""
    description: str = ""
    category: str = ""
    max: Optional[Union[int, str]] = Field(None, description="Numeric cap or cap expression")
    slots: str = Field("", description="Comma list of equipment slots")
    tags: list[str] = Field(default_factory=list)
    bonus: str = Field("", description="Equipment bonus, e.g. '$strength + 2, $luck - 1'")
    ordering: int = 0
    increase_description: str = ""
    decrease_description: str = ""
    singular_name: str = ""
    plural_name: str = ""
    lock_message: str = ""
    variants: dict[str, str] = Field(default_factory=dict)

    def to_definition(self) -> QualityDefinition:
        return QualityDefinition(
            id=self.id,
            kind=self.type,
            name=self.name,
            description=self.description,
            category=self.category,
            max=self.max,
            slots=self.slots,
            tags=list(self.tags),
            bonus=self.bonus,
            ordering=self.ordering,
            increase_description=self.increase_description,
            decrease_description=self.decrease_description,
            singular_name=self.singular_name,
            plural_name=self.plural_name,
            lock_message=self.lock_message,
            variants=dict(self.variants),
        )

    @classmethod
    def from_definition(cls, definition: QualityDefinition) -> "QualityDefinitionSchema":
        return cls(
            id=definition.id,
            type=definition.kind,
            name=definition.name,
            description=definition.description,
            category=definition.category,
            max=definition.max,
            slots=definition.slots,
            tags=list(definition.tags),
            bonus=definition.bonus,
            ordering=definition.ordering,
            increase_description=definition.increase_description,
            decrease_description=definition.decrease_description,
            singular_name=definition.singular_name,
            plural_name=definition.plural_name,
            lock_message=definition.lock_message,
            variants=dict(definition.variants),
        )


class QualityStateSchema(BaseModel):
    """
    One quality held by a character or the world.

    Pyramidal states may give `level` alone; change points then default to
    the minimum for that level. Without `type`, a non-empty `value` marks a
    String quality.
    """
    type: Optional[QualityKind] = None
    level: int = Field(0, ge=0)
    change_points: Optional[int] = Field(None, ge=0)
    value: str = ""
    properties: dict[str, Any] = Field(default_factory=dict)

    def to_state(self) -> QualityState:
        kind = self.type or (QualityKind.STRING if self.value else QualityKind.PYRAMIDAL)
        if kind == QualityKind.STRING:
            return StringState(self.value, dict(self.properties))
        points = self.change_points if self.change_points is not None else triangular(self.level)
        return PyramidalState(level_for_points(points), points, dict(self.properties))

    @classmethod
    def from_state(cls, state: QualityState) -> "QualityStateSchema":
        if isinstance(state, StringState):
            return cls(type=QualityKind.STRING, value=state.value, properties=dict(state.properties))
        return cls(
            type=QualityKind.PYRAMIDAL,
            level=state.level,
            change_points=state.change_points,
            properties=dict(state.properties),
        )


class ContentPayload(BaseModel):
    """Definitions and storylets for one world."""
    qualities: list[QualityDefinitionSchema] = Field(default_factory=list)
    storylets: list[dict[str, Any]] = Field(default_factory=list)

    def to_context(self) -> ContentContext:
        return ContentContext(
            definitions={q.id: q.to_definition() for q in self.qualities},
            storylets={str(s.get("id", i)): s for i, s in enumerate(self.storylets)},
        )


class EngineSnapshot(BaseModel):
    """Everything an engine is built from."""
    qualities: dict[str, QualityStateSchema] = Field(default_factory=dict)
    equipment: dict[str, Optional[str]] = Field(default_factory=dict)
    world: dict[str, QualityStateSchema] = Field(default_factory=dict)
    content: ContentPayload = Field(default_factory=ContentPayload)
    seed: Optional[int] = Field(None, description="Seed for rolls and random picks")


class ChangeRecordSchema(BaseModel):
    """One applied change."""
    quality_id: str
    name: str
    kind: QualityKind
    before: Optional[Union[int, str]] = None
    after: Union[int, str]
    cp_before: Optional[int] = None
    cp_after: Optional[int] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    text: str = ""
    hidden: bool = False
    scope: str = "character"
    created: bool = False

    model_config = {"from_attributes": True}


class DeferredMacroSchema(BaseModel):
    """A timer macro handed back to the caller."""
    name: str
    args: list[str] = Field(default_factory=list)
    raw: str

    model_config = {"from_attributes": True}


# =============================================================================
# Request Models
# =============================================================================

class EvaluateRequest(BaseModel):
    """Evaluate a condition, a text template or a single block."""
    snapshot: EngineSnapshot = Field(default_factory=EngineSnapshot)
    mode: EvaluationMode = EvaluationMode.TEXT
    expression: str
    self_id: Optional[str] = Field(None, description="Quality bound to `$.`")


class ApplyEffectsRequest(BaseModel):
    """Apply an effect list to the snapshot's qualities."""
    snapshot: EngineSnapshot = Field(default_factory=EngineSnapshot)
    effects: str


class RenderRequest(BaseModel):
    """Render a content object (or a storylet) against the snapshot."""
    snapshot: EngineSnapshot = Field(default_factory=EngineSnapshot)
    target: dict[str, Any]
    storylet: bool = Field(False, description="Also compute option action costs")


class EquipRequest(BaseModel):
    """Put an item in a slot, or clear it when item_id is null."""
    snapshot: EngineSnapshot = Field(default_factory=EngineSnapshot)
    slot: str
    item_id: Optional[str] = None


class ScanRequest(BaseModel):
    """Find dynamically created quality ids in a world's content."""
    content: ContentPayload


class ValidateRequest(BaseModel):
    """Check that an expression parses, without evaluating it."""
    mode: ValidationMode = ValidationMode.TEXT
    expression: str


# =============================================================================
# Response Models
# =============================================================================

class EvaluateResponse(BaseModel):
    """Result of an evaluation."""
    mode: EvaluationMode
    result: Union[bool, str]
    errors: list[str] = Field(default_factory=list)


class ApplyEffectsResponse(BaseModel):
    """Changes applied and the state they left behind."""
    changes: list[ChangeRecordSchema] = Field(default_factory=list)
    qualities: dict[str, QualityStateSchema] = Field(default_factory=dict)
    deferred: list[DeferredMacroSchema] = Field(default_factory=list)
    dynamic_definitions: list[QualityDefinitionSchema] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class RenderResponse(BaseModel):
    """A rendered copy of the target."""
    rendered: dict[str, Any]
    errors: list[str] = Field(default_factory=list)


class EquipResponse(BaseModel):
    """Outcome of an equip request."""
    success: bool
    slot: str
    item_id: Optional[str] = None
    message: str = ""
    locked: bool = False
    equipment: dict[str, Optional[str]] = Field(default_factory=dict)


class ScanResponse(BaseModel):
    """Ids created or changed without an authored definition."""
    dynamic_ids: list[str] = Field(default_factory=list)


class ValidateResponse(BaseModel):
    """The expression parsed."""
    valid: bool = True
    mode: ValidationMode


class ErrorResponse(BaseModel):
    """Structured error response."""
    error: str
    error_code: ErrorCode
    details: Optional[dict[str, Any]] = None
    api_version: str = "v1"


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    service: str
    version: str
