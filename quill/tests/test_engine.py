"""
Tests for the StoryEngine facade.

Tests:
- Building an engine from states or plain mappings
- Equipment validation and bonuses
- Rendering content and storylets
- Challenges and option resolution
- Dynamic id scanning
"""

import pytest

from ..engine_core.content import ContentContext, scan_dynamic_ids
from ..engine_core.engine import StoryEngine
from ..engine_core.quality import PyramidalState, StringState


class TestConstruction:
    """Tests for engine setup."""

    def test_states_from_mappings(self, content):
        engine = StoryEngine({"gold": {"level": 2}, "title": {"value": "Scribe"}}, content)

        assert engine.get_qualities() == {"gold": PyramidalState(2, 3), "title": StringState("Scribe")}

    def test_unknown_state_type(self, content):
        with pytest.raises(TypeError):
            StoryEngine({"gold": 3}, content)

    def test_input_not_mutated(self, qualities, content):
        engine = StoryEngine(qualities, content)
        engine.apply_effects("$gold += 10")

        assert qualities["gold"].change_points == 6

    def test_snapshot_clamped_to_cap(self, content):
        """A stored state over its cap is brought back to it."""
        engine = StoryEngine({"luck": {"change_points": 100}}, content)

        assert engine.get_qualities()["luck"] == PyramidalState(3, 6)
        assert engine.evaluate_text("{$luck}") == "3"
        assert not engine.evaluate_condition("$luck > 3")

    def test_snapshot_clamped_to_expression_cap(self, content):
        engine = StoryEngine({"strength": {"level": 2}, "renown": {"level": 9}}, content)

        assert engine.get_qualities()["renown"] == PyramidalState(4, 10)

    def test_empty_engine(self):
        engine = StoryEngine(None, ContentContext())

        assert engine.evaluate_text("{$anything}") == ""
        assert engine.get_qualities() == {}


class TestEquipment:
    """Tests for equip and unequip."""

    def test_equip(self, engine):
        result = engine.equip("hand", "sword")

        assert result.success
        assert result.message == "Equipped Iron Sword."
        assert engine.equipment["hand"] == "sword"

    def test_equipment_bonus(self, engine):
        """Equipped item bonuses add to effective levels and references."""
        assert engine.effective_level("strength") == 2

        engine.equip("hand", "sword")

        assert engine.effective_level("strength") == 4
        assert engine.evaluate_text("{$strength}") == "4"
        assert engine.get_qualities()["strength"].level == 2

    def test_bonus_respects_cap(self, engine):
        engine.content.definitions["lantern"].bonus = "$luck + 9"
        engine.create_new_quality("lucky_charm", 1, template="lantern")
        engine.apply_effects("$luck = 1")
        engine.equip("offhand", "lucky_charm")

        assert engine.effective_level("luck") == 3

    def test_reference_respects_cap(self, engine):
        """Reads in text and conditions are clamped like effective_level."""
        engine.content.definitions["lantern"].bonus = "$luck + 9"
        engine.create_new_quality("lucky_charm", 1, template="lantern")
        engine.apply_effects("$luck = 1")
        engine.equip("offhand", "lucky_charm")

        assert engine.evaluate_text("{$luck}") == "3"
        assert not engine.evaluate_condition("$luck > 3")
        assert engine.evaluate_condition("$luck == 3")

    def test_wrong_slot(self, engine):
        result = engine.equip("finger", "sword")

        assert not result.success
        assert "cannot be equipped in finger" in result.message
        assert not result.locked

    def test_not_owned(self, engine):
        result = engine.equip("offhand", "lantern")

        assert not result.success
        assert result.message == "You do not own Lantern."

    def test_unknown_item(self, engine):
        result = engine.equip("hand", "excalibur")

        assert not result.success
        assert "Unknown item" in result.message

    def test_cursed_cannot_be_removed(self, engine):
        """A cursed item stays put and the equipment is unchanged."""
        before = dict(engine.equipment)
        result = engine.unequip("finger")

        assert not result.success
        assert result.locked
        assert result.message == "Bone Ring tightens around your finger."
        assert engine.equipment == before

    def test_cursed_cannot_be_replaced(self, engine):
        engine.create_new_quality("band", 1, template="ring", properties={"name": "Silver Band"})
        result = engine.equip("finger", "band")

        assert not result.success
        assert result.locked
        assert engine.equipment["finger"] == "ring"

    def test_already_equipped(self, engine):
        result = engine.equip("finger", "ring")

        assert result.success
        assert result.message == "Already equipped."

    def test_move_between_slots(self, engine):
        engine.equip("offhand", "shield")
        result = engine.equip("hand", "shield")

        assert result.success
        assert result.equipment["hand"] == "shield"
        assert result.equipment["offhand"] is None

    def test_unequip(self, engine):
        engine.equip("hand", "sword")
        result = engine.unequip("hand")

        assert result.success
        assert result.item_id == "sword"
        assert engine.equipment["hand"] is None

    def test_equip_none_clears(self, engine):
        engine.equip("hand", "sword")

        assert engine.equip("hand", None).success
        assert engine.equipment["hand"] is None

    def test_unequip_empty_slot(self, engine):
        result = engine.unequip("offhand")

        assert result.success
        assert result.message == "Nothing to remove."


class TestRender:
    """Tests for render and render_storylet."""

    def test_render_strings(self, engine, storylets):
        rendered = engine.render(storylets["ferry"])

        assert rendered["text"] == "The ferryman eyes your 3 coins."
        assert rendered["options"][0]["pass_long"] == "You cross to Vell."

    def test_render_copies(self, engine, storylets):
        engine.render(storylets["ferry"])

        assert storylets["ferry"]["text"] == "The ferryman eyes your {$gold} coins."

    def test_identity_keys_untouched(self, engine):
        rendered = engine.render({"id": "{$gold}", "deck": "$deck", "body": "{$gold}"})

        assert rendered == {"id": "{$gold}", "deck": "$deck", "body": "3"}

    def test_non_strings_pass_through(self, engine):
        rendered = engine.render({"count": 3, "flags": [True, None], "nested": {"text": "{$hp}"}})

        assert rendered == {"count": 3, "flags": [True, None], "nested": {"text": "4"}}

    def test_action_cost(self, engine, storylets):
        rendered = engine.render_storylet(storylets["ferry"])

        assert rendered["options"][0]["computed_action_cost"] == 1
        assert rendered["options"][1]["computed_action_cost"] == 5


class TestChallenges:
    """Tests for challenge_details."""

    def test_no_challenge(self, engine):
        details = engine.challenge_details(None)

        assert details.chance == 100
        assert details.roll == -1
        assert details.success

    def test_certain_and_impossible(self, engine):
        assert engine.challenge_details("{10 >> 1}").success
        assert not engine.challenge_details("{0 >> 10}").success

    def test_chance_and_roll(self, engine):
        details = engine.challenge_details("{$strength >> 2}")

        assert details.chance == 60
        assert details.roll == int(engine.resolution_roll)
        assert details.success == (engine.resolution_roll <= 60)

    def test_unparseable_challenge(self, engine):
        assert engine.challenge_details("{no number here}").chance == 100


class TestResolveOption:
    """Tests for playing options."""

    def test_pass_without_challenge(self, engine, storylets):
        result = engine.resolve_option(storylets["ferry"], "pay")

        assert result.success
        assert result.body == "You cross to Vell."
        assert [c.quality_id for c in result.changes] == ["gold", "crossings"]
        assert result.redirect == "far_shore"
        assert "crossings" in result.dynamic_definitions
        assert engine.get_qualities()["gold"].level == 2

    def test_challenge_pass(self, engine, storylets):
        engine.change_quality("strength", "=", 100)
        result = engine.resolve_option(storylets["ferry"], "swim")

        assert result.success
        assert result.challenge.chance == 100
        assert result.body == "Somehow you make it."
        assert [c.quality_id for c in result.changes] == ["renown"]

    def test_challenge_fail(self, engine, storylets):
        engine.change_quality("strength", "=", 0)
        result = engine.resolve_option(storylets["ferry"], "swim")

        assert not result.success
        assert result.body == "The current drags you back."
        assert result.move_to == "docks"
        assert engine.get_qualities()["hp"].level == 3

    def test_result_only_has_this_option(self, engine, storylets):
        engine.apply_effects("$gold += 1")
        result = engine.resolve_option(storylets["ferry"], "pay")

        assert len(result.changes) == 2

    def test_to_dict(self, engine, storylets):
        data = engine.resolve_option(storylets["ferry"], "pay").to_dict()

        assert data["challenge"] == {"chance": 100, "roll": -1, "success": True, "description": ""}
        assert data["changes"][0]["quality_id"] == "gold"
        assert data["dynamic_definitions"] == ["crossings"]

    def test_unknown_option(self, engine, storylets):
        with pytest.raises(KeyError):
            engine.resolve_option(storylets["ferry"], "fly")


class TestScan:
    """Tests for dynamic id scanning."""

    def test_scan(self, content):
        assert scan_dynamic_ids(content) == ["bargains", "crossings", "losses", "market_visits"]

    def test_scan_skips_bad_effects(self, definitions):
        content = ContentContext(definitions, {"s": {"options": [{"pass_quality_change": "$gold +=, $new_thing ++"}]}})

        assert content.scan_dynamic_ids() == []
