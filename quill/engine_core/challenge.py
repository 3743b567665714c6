"""
Skill-check chance math.

A check compares a skill against a target with one of four operators and
yields a success chance in whole percent:

- `>>`  skill should be high: 0% at target-margin, `pivot`% at target,
        100% at target+margin, linear in between
- `<<`  the inverse of `>>`
- `><`  skill should be close: 100% at the target, 0% at margin away
- `<>`  skill should be far: the inverse of `><`

The result is clamped to [min, max]. Margin defaults to the target itself.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable
import math
import re

DEFAULT_PIVOT = 60.0

_NAMED_ARG = re.compile(r"^([A-Za-z]+)\s*:\s*(.*)$")
_CHECK = re.compile(r"^\s*(.*?)\s*(>>|<<|><|<>|==|!=)\s*(.*?)\s*$", re.DOTALL)


@dataclass
class ChanceOptions:
    margin: float | None = None
    min_cap: float = 0.0
    max_cap: float = 100.0
    pivot: float = DEFAULT_PIVOT


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _ramp(skill: float, target: float, margin: float, pivot: float) -> float:
    lower = target - margin
    if skill <= lower:
        return 0.0
    if skill >= target + margin:
        return 1.0
    if skill < target:
        return ((skill - lower) / margin) * pivot
    return pivot + ((skill - target) / margin) * (1 - pivot)


def calculate_chance(
    skill: float,
    target: float,
    op: str,
    margin: float | None = None,
    min_cap: float = 0.0,
    max_cap: float = 100.0,
    pivot: float = DEFAULT_PIVOT,
) -> int:
    """Success chance in percent for `skill op target`."""
    if margin is None:
        margin = target
    if margin <= 0:
        margin = 1.0
    pivot_fraction = pivot / 100

    if op == ">>":
        chance = _ramp(skill, target, margin, pivot_fraction)
    elif op == "<<":
        chance = 1.0 - _ramp(skill, target, margin, pivot_fraction)
    elif op in ("><", "=="):
        distance = abs(skill - target)
        chance = 0.0 if distance >= margin else 1.0 - distance / margin
    elif op in ("<>", "!="):
        distance = abs(skill - target)
        chance = 1.0 if distance >= margin else distance / margin
    else:
        raise ValueError(f"Unknown chance operator: {op}")

    percent = max(min_cap, min(max_cap, chance * 100))
    return _round_half_up(percent)


def parse_chance_options(
    args: list[str],
    evaluate: Callable[[str], float | None],
) -> ChanceOptions:
    """
    Parse `margin, min, max, pivot` arguments.

    Positional values fill the slots in that order; named ones
    (`margin: 4`) may be expressions and go straight to their slot.
    Values that do not evaluate to a number are ignored.
    """
    options = ChanceOptions()
    slots = ("margin", "min_cap", "max_cap", "pivot")
    names = {"margin": "margin", "min": "min_cap", "max": "max_cap", "pivot": "pivot"}
    position = 0

    for arg in args:
        arg = arg.strip()
        if not arg:
            continue
        named = _NAMED_ARG.match(arg)
        if named:
            key = names.get(named.group(1).lower())
            value = evaluate(named.group(2))
            if key and value is not None:
                setattr(options, key, value)
            continue
        try:
            value = float(arg)
        except ValueError:
            continue
        if position < len(slots):
            setattr(options, slots[position], value)
        position += 1

    return options


def split_check(expression: str) -> tuple[str, str, str] | None:
    """Split `skill op target` into its parts, or None if no check operator is present."""
    match = _CHECK.match(expression)
    if not match:
        return None
    return match.group(1), match.group(2), match.group(3)
