"""
Tests for API Pydantic schemas.

Validates that:
- Quality states accept a level alone and reject negative values
- Definitions convert to and from engine definitions
- Snapshots default to an empty world
- Error responses are properly structured
"""

import pytest
from pydantic import ValidationError


class TestQualitySchemas:
    """Tests for quality state and definition models."""

    def test_level_only_state(self):
        """A level alone gets the minimum change points for that level."""
        from quill.api.schemas import QualityStateSchema
        from quill.engine_core.quality import PyramidalState

        state = QualityStateSchema(level=4).to_state()

        assert state == PyramidalState(4, 10)

    def test_change_points_win_over_level(self):
        from quill.api.schemas import QualityStateSchema

        state = QualityStateSchema(level=1, change_points=7).to_state()

        assert state.level == 3
        assert state.change_points == 7

    def test_value_marks_string_state(self):
        from quill.api.schemas import QualityStateSchema
        from quill.engine_core.quality import StringState

        assert QualityStateSchema(value="Vell").to_state() == StringState("Vell")
        assert QualityStateSchema(type="S").to_state() == StringState("")

    def test_negative_level_rejected(self):
        from quill.api.schemas import QualityStateSchema

        with pytest.raises(ValidationError):
            QualityStateSchema(level=-1)

        with pytest.raises(ValidationError):
            QualityStateSchema(change_points=-3)

    def test_unknown_type_rejected(self):
        from quill.api.schemas import QualityStateSchema

        with pytest.raises(ValidationError):
            QualityStateSchema(type="X", level=1)

    def test_state_dump(self):
        from quill.api.schemas import QualityStateSchema
        from quill.engine_core.quality import PyramidalState

        data = QualityStateSchema.from_state(PyramidalState(2, 4, {"seal": 2})).model_dump(mode="json")

        assert data == {
            "type": "P",
            "level": 2,
            "change_points": 4,
            "value": "",
            "properties": {"seal": 2},
        }

    def test_definition_conversion(self):
        """Definitions survive a trip through the engine type."""
        from quill.api.schemas import QualityDefinitionSchema
        from quill.engine_core.quality import QualityKind

        schema = QualityDefinitionSchema(
            id="ring",
            name="Bone Ring",
            category="Item",
            slots="finger",
            tags=["cursed"],
            max=1,
        )
        definition = schema.to_definition()

        assert definition.kind == QualityKind.PYRAMIDAL
        assert definition.has_tag("cursed")
        assert definition.allowed_slots == ["finger"]
        assert QualityDefinitionSchema.from_definition(definition) == schema

    def test_expression_cap(self):
        from quill.api.schemas import QualityDefinitionSchema

        assert QualityDefinitionSchema(id="renown", max="$strength * 2").max == "$strength * 2"


class TestSnapshotSchemas:
    """Tests for snapshots and content payloads."""

    def test_snapshot_defaults(self):
        from quill.api.schemas import EngineSnapshot

        snapshot = EngineSnapshot()

        assert snapshot.qualities == {}
        assert snapshot.equipment == {}
        assert snapshot.world == {}
        assert snapshot.content.qualities == []
        assert snapshot.seed is None

    def test_snapshot_from_json(self):
        from quill.api.schemas import EngineSnapshot, QualityStateSchema

        snapshot = EngineSnapshot.model_validate({
            "qualities": {"gold": {"level": 3}},
            "equipment": {"hand": None},
            "seed": 4,
        })

        assert isinstance(snapshot.qualities["gold"], QualityStateSchema)
        assert snapshot.equipment == {"hand": None}

    def test_content_keys_storylets_by_id(self):
        """Storylets without an id are keyed by position."""
        from quill.api.schemas import ContentPayload

        context = ContentPayload(
            qualities=[{"id": "gold", "name": "Gold"}],
            storylets=[{"id": "ferry"}, {"text": "untitled"}],
        ).to_context()

        assert list(context.definitions) == ["gold"]
        assert list(context.storylets) == ["ferry", "1"]

    def test_request_requires_expression(self):
        from quill.api.schemas import EvaluateRequest

        with pytest.raises(ValidationError):
            EvaluateRequest(mode="condition")

    def test_request_rejects_unknown_mode(self):
        from quill.api.schemas import EvaluateRequest

        with pytest.raises(ValidationError):
            EvaluateRequest(mode="effects", expression="$gold += 1")


class TestResponseSchemas:
    """Tests for response and error models."""

    def test_error_response_schema(self):
        """ErrorResponse has a structured error code."""
        from quill.api.schemas import ErrorResponse, ErrorCode

        error = ErrorResponse(
            error="Unexpected token",
            error_code=ErrorCode.PARSE_ERROR,
            details={"fragment": "$gold >", "position": 6},
        )

        data = error.model_dump()
        assert data["error_code"] == "PARSE_ERROR"
        assert data["details"]["position"] == 6
        assert data["api_version"] == "v1"

    def test_all_error_codes_defined(self):
        from quill.api.schemas import ErrorCode

        assert {code.value for code in ErrorCode} == {
            "PARSE_ERROR",
            "VALIDATION_ERROR",
            "EQUIP_REJECTED",
            "INTERNAL_ERROR",
        }

    def test_evaluate_response_keeps_bool(self):
        from quill.api.schemas import EvaluateResponse

        assert EvaluateResponse(mode="condition", result=True).model_dump()["result"] is True
        assert EvaluateResponse(mode="text", result="3").model_dump()["result"] == "3"

    def test_change_record_from_engine(self, engine):
        from quill.api.schemas import ChangeRecordSchema

        record = engine.apply_effects("$gold += 1")[0]
        data = ChangeRecordSchema(**record.to_dict()).model_dump(mode="json")

        assert data["quality_id"] == "gold"
        assert data["kind"] == "P"
        assert data["cp_after"] == 7
