"""
Tests for macros and skill checks.

Tests:
- Collection macros over categories with filters and projections
- Randomness macros
- Chance calculation and %chance arguments
- Pass-through of macros that only mean something in effects
"""

import pytest

from ..engine_core.challenge import (
    ChanceOptions,
    calculate_chance,
    parse_chance_options,
    split_check,
)


class TestCollections:
    """Tests for %count, %list, %all, %pick and %roll."""

    def test_count(self, engine):
        assert engine.evaluate_text("{%count[Stat]}") == "3"

    def test_count_with_filter(self, engine):
        assert engine.evaluate_text("{%count[Item; owned]}") == "3"
        assert engine.evaluate_text("{%count[Item; $.level > 0]}") == "3"
        assert engine.evaluate_text("{%count[Stat; $.level > 1]}") == "2"

    def test_count_in_condition(self, engine):
        assert engine.evaluate_condition("%count[Item; owned] >= 3")

    def test_list_sorted_by_ordering_then_name(self, engine):
        assert engine.evaluate_text("{%list[Stat]}") == "Health, Strength, Cunning"

    def test_list_owned(self, engine):
        assert engine.evaluate_text("{%list[Item; owned]}") == "Bone Ring, Iron Sword, Oak Shield"

    def test_list_separator(self, engine):
        assert engine.evaluate_text("{%list[Stat; true; .name; and]}") == "Health and Strength and Cunning"

    def test_list_count(self, engine):
        assert engine.evaluate_text("{%list[Stat; 2]}") == "Health, Strength"

    def test_all_gives_ids(self, engine):
        assert engine.evaluate_text("{%all[Stat]}") == "hp, strength, cunning"

    def test_empty_collection(self, engine):
        assert engine.evaluate_text("{%list[Nothing]}") == "nothing"

    def test_pick(self, engine):
        picked = engine.evaluate_text("{%pick[Stat; 2]}").split(", ")

        assert len(picked) == 2
        assert set(picked) <= {"hp", "strength", "cunning"}

    def test_roll_only_owned(self, engine):
        """Roll weights by level, so unowned qualities never come up."""
        for _ in range(10):
            assert engine.evaluate_text("{%roll[Item]}") in ("ring", "sword", "shield")

    def test_category_match_is_per_entry(self, engine):
        """A definition in several categories matches each one."""
        assert engine.evaluate_text("{%list[Weapon]}") == "Iron Sword"


class TestRandomness:
    """Tests for %random and %choice."""

    def test_random_bounds(self, engine):
        assert engine.evaluate_text("{%random[100]}") == "true"
        assert engine.evaluate_text("{%random[0]}") == "false"

    def test_random_invert(self, engine):
        assert engine.evaluate_text("{%random[100; invert]}") == "false"

    def test_choice(self, engine):
        assert engine.evaluate_text("{%choice[{$title}; {$city}]}") in ("Wanderer", "Vell")


class TestPassThrough:
    """Tests for macros rendered as raw text."""

    def test_unknown_macro(self, engine):
        assert engine.evaluate_text("{%frobnicate[x]}") == "%frobnicate[x]"

    def test_effect_only_macro(self, engine):
        assert engine.evaluate_text("{%schedule[$hp += 1; 4h]}") == "%schedule[$hp += 1; 4h]"


class TestChance:
    """Tests for skill-check math."""

    def test_at_target_is_pivot(self):
        assert calculate_chance(5, 5, ">>") == 60

    def test_ramp_bounds(self):
        """0% at target-margin, 100% at target+margin."""
        assert calculate_chance(0, 5, ">>") == 0
        assert calculate_chance(10, 5, ">>") == 100
        assert calculate_chance(20, 5, ">>") == 100

    def test_ramp_midpoints(self):
        assert calculate_chance(2.5, 5, ">>") == 30
        assert calculate_chance(7.5, 5, ">>") == 80

    def test_inverse(self):
        assert calculate_chance(5, 5, "<<") == 40
        assert calculate_chance(10, 5, "<<") == 0

    def test_proximity(self):
        assert calculate_chance(5, 5, "><") == 100
        assert calculate_chance(7, 5, "><", margin=4) == 50
        assert calculate_chance(9, 5, "><", margin=4) == 0

    def test_distance(self):
        assert calculate_chance(5, 5, "<>") == 0
        assert calculate_chance(9, 5, "<>", margin=4) == 100

    def test_clamp(self):
        assert calculate_chance(0, 5, ">>", min_cap=10) == 10
        assert calculate_chance(10, 5, ">>", max_cap=90) == 90

    def test_zero_margin(self):
        """A zero target would divide by zero; margin falls back to 1."""
        assert calculate_chance(0, 0, ">>") == 60

    def test_pivot(self):
        assert calculate_chance(5, 5, ">>", pivot=50) == 50

    def test_unknown_operator(self):
        with pytest.raises(ValueError):
            calculate_chance(1, 1, "+")

    def test_positional_options(self):
        options = parse_chance_options(["4", "5", "95"], lambda text: None)

        assert options == ChanceOptions(margin=4.0, min_cap=5.0, max_cap=95.0)

    def test_named_options(self):
        options = parse_chance_options(["pivot: 50", "margin: 2"], lambda text: float(text))

        assert options.pivot == 50.0
        assert options.margin == 2.0

    def test_split_check(self):
        assert split_check("$strength >> 4") == ("$strength", ">>", "4")
        assert split_check("$strength") is None

    def test_operator_in_expression(self, engine):
        assert engine.evaluate_text("{$strength >> 2}") == "60"

    def test_chance_macro(self, engine):
        assert engine.evaluate_text("{%chance[$strength >> 2]}") == "60"
        assert engine.evaluate_text("{%chance[$strength >> 2; pivot: 50]}") == "50"
        assert engine.evaluate_text("{%chance[$strength >> 4; 2]}") == "0"
