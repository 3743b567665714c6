"""
Tests for the Quality Store.

Tests:
- Pyramidal leveling math
- Operators on pyramidal and string states
- Caps, including expression caps
- Dynamic quality creation
- Plain-mapping state conversion
"""

import pytest

from ..engine_core.errors import EffectError
from ..engine_core.quality import (
    PyramidalState,
    QualityDefinition,
    QualityKind,
    QualityStore,
    StringState,
    apply_operator,
    level_for_points,
    state_from_dict,
    state_to_dict,
    to_number,
    triangular,
)


class TestLeveling:
    """Tests for pyramidal level math."""

    @pytest.mark.parametrize("points,level", [(0, 0), (1, 1), (2, 1), (3, 2), (5, 2), (6, 3), (10, 4), (14, 4)])
    def test_level_for_points(self, points, level):
        """Level L costs L*(L+1)/2 change points."""
        assert level_for_points(points) == level

    def test_negative_points(self):
        assert level_for_points(-4) == 0

    def test_triangular(self):
        assert [triangular(n) for n in range(5)] == [0, 1, 3, 6, 10]

    def test_level_cap(self):
        assert level_for_points(100, cap=3) == 3

    def test_level_is_monotonic(self):
        """More points never means a lower level."""
        levels = [level_for_points(cp) for cp in range(200)]
        assert levels == sorted(levels)


class TestOperators:
    """Tests for apply_operator."""

    def test_add_points(self):
        state = apply_operator(PyramidalState(0, 0), "+=", 3)

        assert state.change_points == 3
        assert state.level == 2

    def test_increment(self):
        state = apply_operator(PyramidalState(1, 1), "++", None)

        assert state.change_points == 2
        assert state.level == 1

    def test_floor_at_zero(self):
        state = apply_operator(PyramidalState(1, 1), "-=", 10)

        assert state.change_points == 0
        assert state.level == 0

    def test_set_level(self):
        """`=` sets the level and rebases change points to the level's minimum."""
        state = apply_operator(PyramidalState(1, 2), "=", 4)

        assert state.level == 4
        assert state.change_points == 10

    def test_cap_clamps_points(self):
        state = apply_operator(PyramidalState(2, 3), "+=", 50, cap=3)

        assert state.level == 3
        assert state.change_points == triangular(3)

    def test_cap_clamps_set(self):
        state = apply_operator(PyramidalState(0, 0), "=", 9, cap=3)

        assert state.level == 3

    def test_numeric_string_operand(self):
        state = apply_operator(PyramidalState(0, 0), "+=", "3")

        assert state.level == 2

    def test_non_numeric_operand(self):
        with pytest.raises(EffectError):
            apply_operator(PyramidalState(0, 0), "+=", "lots")

    def test_string_set(self):
        state = apply_operator(StringState("old"), "=", "new")

        assert state.value == "new"

    def test_string_set_number(self):
        """Integral numbers are stored without a fraction."""
        state = apply_operator(StringState(""), "=", 3.0)

        assert state.value == "3"

    @pytest.mark.parametrize("op", ["+=", "-=", "++", "--"])
    def test_string_rejects_arithmetic(self, op):
        with pytest.raises(EffectError):
            apply_operator(StringState("x"), op, 1)

    def test_properties_survive(self):
        state = apply_operator(PyramidalState(0, 0, {"colour": "red"}), "+=", 1)

        assert state.properties == {"colour": "red"}

    def test_to_number(self):
        assert to_number("4") == 4.0
        assert to_number(" 2.5 ") == 2.5
        assert to_number(True) == 1.0
        assert to_number("") is None
        assert to_number("four") is None


class TestStore:
    """Tests for QualityStore."""

    @pytest.fixture
    def store(self, definitions):
        qualities = {
            "gold": PyramidalState(3, 6),
            "title": StringState("Wanderer"),
            "strength": PyramidalState(2, 3),
        }
        return QualityStore(qualities, definitions, cap_resolver=lambda qid, expr: 4)

    def test_change_returns_before_and_after(self, store):
        before, after = store.change_quality("gold", "+=", 4)

        assert before.level == 3
        assert after.level == 4
        assert store.get("gold").change_points == 10

    def test_change_missing_quality(self, store):
        """A missing state starts at zero; `before` is None."""
        before, after = store.change_quality("hp", "+=", 1)

        assert before is None
        assert after.level == 1

    def test_failed_change_leaves_no_state(self, store):
        with pytest.raises(EffectError):
            store.change_quality("city", "+=", 1)

        assert store.get("city") is None

    def test_numeric_cap(self, store):
        store.change_quality("luck", "+=", 1000)

        assert store.level("luck") == 3

    def test_expression_cap(self, store):
        """Expression caps go through the resolver."""
        assert store.cap_for("renown") == 4

    def test_uncapped(self, store):
        assert store.cap_for("gold") is None

    def test_level_of_string_is_zero(self, store):
        assert store.level("title") == 0

    def test_ensure_state_uses_definition_kind(self, store):
        assert isinstance(store.ensure_state("city"), StringState)
        assert isinstance(store.ensure_state("hp"), PyramidalState)

    def test_snapshot_is_a_copy(self, store):
        snapshot = store.snapshot()
        snapshot["gold"].level = 99

        assert store.get("gold").level == 3


class TestCreateNewQuality:
    """Tests for dynamic quality creation."""

    @pytest.fixture
    def store(self, definitions):
        return QualityStore({}, definitions)

    def test_creates_definition_and_state(self, store):
        state = store.create_new_quality("visits", 2)

        assert state.level == 2
        definition = store.dynamic_definitions["visits"]
        assert definition.kind == QualityKind.PYRAMIDAL
        assert definition.name == "visits"
        assert definition.category == "Dynamic"

    def test_text_value_makes_string_quality(self, store):
        state = store.create_new_quality("nickname", "Ash")

        assert isinstance(state, StringState)
        assert store.dynamic_definitions["nickname"].kind == QualityKind.STRING

    def test_template_seeds_definition(self, store):
        state = store.create_new_quality("rusty_sword", 1, template="sword", properties={"name": "Rusty Sword"})

        definition = store.definition("rusty_sword")
        assert definition.name == "Rusty Sword"
        assert definition.slots == "hand"
        assert definition.category == "Item, Weapon"
        assert state.properties["name"] == "Rusty Sword"

    def test_cap(self, store):
        state = store.create_new_quality("charges", 10, cap=5)

        assert state.level == 5
        assert store.cap_for("charges") == 5

    def test_created_once(self, store):
        """Creating again updates the state but keeps one definition."""
        store.create_new_quality("visits", 1)
        store.create_new_quality("visits", 3)

        assert list(store.dynamic_definitions) == ["visits"]
        assert store.level("visits") == 3

    def test_authored_definition_not_replaced(self, store):
        store.create_new_quality("gold", 5)

        assert "gold" not in store.dynamic_definitions
        assert store.level("gold") == 5

    def test_definitions_merge(self, store):
        store.create_new_quality("visits", 1)
        merged = store.all_definitions()

        assert "visits" in merged
        assert merged["gold"].name == "Gold"


class TestStateDicts:
    """Tests for plain-mapping state conversion."""

    def test_level_only(self):
        """A level without change points starts at that level's minimum."""
        state = state_from_dict({"level": 3})

        assert state == PyramidalState(3, 6)

    def test_points_decide_level(self):
        state = state_from_dict({"type": "P", "level": 1, "change_points": 7})

        assert state.level == 3

    def test_value_means_string(self):
        state = state_from_dict({"value": "Vell"})

        assert state == StringState("Vell")

    def test_round_trip(self):
        state = PyramidalState(2, 4, {"colour": "red"})

        assert state_from_dict(state_to_dict(state)) == state
