"""
Pytest fixtures for Quill tests.
"""

import pytest

from ..engine_core.content import ContentContext
from ..engine_core.engine import StoryEngine
from ..engine_core.quality import (
    PyramidalState,
    QualityDefinition,
    QualityKind,
    StringState,
    triangular,
)


def pyramidal(level: int, **properties) -> PyramidalState:
    """State at the minimum change points for `level`."""
    return PyramidalState(level, triangular(level), dict(properties))


@pytest.fixture
def definitions() -> dict[str, QualityDefinition]:
    """A small world: currency, stats, a capped quality, text qualities and items."""
    defs = [
        QualityDefinition(id="gold", name="Gold", category="Currency", plural_name="Gold Coins"),
        QualityDefinition(id="strength", name="Strength", category="Stat", ordering=1),
        QualityDefinition(id="cunning", name="Cunning", category="Stat", ordering=2),
        QualityDefinition(id="hp", name="Health", category="Stat", ordering=0),
        QualityDefinition(id="luck", name="Luck", max=3),
        QualityDefinition(id="renown", name="Renown", max="$strength * 2"),
        QualityDefinition(id="title", kind=QualityKind.STRING, name="Title"),
        QualityDefinition(id="city", kind=QualityKind.STRING, name="City"),
        QualityDefinition(
            id="sword",
            name="Iron Sword",
            category="Item, Weapon",
            slots="hand",
            bonus="$strength + 2",
            increase_description="You find {$.name}.",
        ),
        QualityDefinition(
            id="shield",
            name="Oak Shield",
            category="Item",
            slots="hand, offhand",
            bonus="$hp + 1",
            ordering=1,
        ),
        QualityDefinition(
            id="ring",
            name="Bone Ring",
            category="Item",
            slots="finger",
            tags=["cursed"],
            lock_message="{$.name} tightens around your finger.",
        ),
        QualityDefinition(id="lantern", name="Lantern", category="Item", slots="offhand"),
        QualityDefinition(
            id="secret",
            name="Secret",
            tags=["hidden"],
            variants={"hint": "Something about {$city}"},
        ),
    ]
    return {d.id: d for d in defs}


@pytest.fixture
def storylets() -> dict[str, dict]:
    """Storylets exercising challenges, effects and dynamic qualities."""
    return {
        "ferry": {
            "id": "ferry",
            "deck": "docks",
            "name": "The Ferry",
            "text": "The ferryman eyes your {$gold} coins.",
            "options": [
                {
                    "id": "pay",
                    "name": "Pay the fare",
                    "action_cost": "1",
                    "pass_long": "You cross to {$city}.",
                    "pass_quality_change": "$gold -= 3, $crossings ++",
                    "pass_redirect": "far_shore",
                },
                {
                    "id": "swim",
                    "name": "Swim",
                    "action_cost": "{$hp + 1}",
                    "challenge": "{$strength >> 50}",
                    "pass_long": "Somehow you make it.",
                    "pass_quality_change": "$renown += 1",
                    "fail_long": "The current drags you back.",
                    "fail_quality_change": "$hp -= 1",
                    "fail_move_to": "docks",
                },
            ],
        },
        "market": {
            "id": "market",
            "text": "%new[market_visits; gold, name: Visits] lies in wait.",
            "options": [
                {
                    "id": "haggle",
                    "pass_quality_change": "{ $cunning > 1 : $bargains += 1 | $losses += 1 }, $gold -= 1",
                },
            ],
        },
    }


@pytest.fixture
def content(definitions, storylets) -> ContentContext:
    return ContentContext(definitions=definitions, storylets=storylets)


@pytest.fixture
def qualities() -> dict:
    """A character: gold 3 (6 cp), strength 2, hp 4, title, and some items."""
    return {
        "gold": pyramidal(3),
        "strength": pyramidal(2),
        "hp": pyramidal(4),
        "cunning": pyramidal(1),
        "title": StringState("Wanderer"),
        "city": StringState("Vell"),
        "sword": pyramidal(1),
        "shield": pyramidal(1),
        "ring": pyramidal(1),
    }


@pytest.fixture
def engine(qualities, content) -> StoryEngine:
    """A seeded engine with the cursed ring already worn."""
    return StoryEngine(
        qualities,
        content,
        equipment={"finger": "ring", "hand": None, "offhand": None},
        world={"season": pyramidal(2), "weather": StringState("rain")},
        seed=7,
    )
