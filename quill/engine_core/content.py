"""
Content context - the authored definitions and storylets an engine reads.

A ContentContext is built by the caller for one request and handed to the
engine; nothing here is global. Storylets stay plain dicts in their stored
shape (text, options, pass/fail effect strings, ...).
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Iterator
import logging
import re

from .errors import ParseError
from .parser import EffectStatement, RefKind, parse_effects
from .quality import QualityDefinition

logger = logging.getLogger(__name__)

_NEW_ID = re.compile(r"%new\[\s*\$?([A-Za-z0-9_]+)\s*[;\]]")


@dataclass
class ContentContext:
    """Request-scoped view of a world's content."""
    definitions: dict[str, QualityDefinition] = field(default_factory=dict)
    storylets: dict[str, dict[str, Any]] = field(default_factory=dict)

    def definition(self, qid: str) -> QualityDefinition | None:
        return self.definitions.get(qid)

    def storylet(self, storylet_id: str) -> dict[str, Any] | None:
        return self.storylets.get(storylet_id)

    def scan_dynamic_ids(self) -> list[str]:
        return scan_dynamic_ids(self)


def _strings(obj: Any) -> Iterator[str]:
    if isinstance(obj, str):
        yield obj
    elif isinstance(obj, dict):
        for value in obj.values():
            yield from _strings(value)
    elif isinstance(obj, list):
        for item in obj:
            yield from _strings(item)


def _is_effect_key(key: str) -> bool:
    return key.endswith("quality_change")


def _effect_targets(effects: str) -> Iterator[str]:
    """Quality ids an effect list assigns to, including inside conditional blocks."""
    try:
        statements = parse_effects(effects)
    except ParseError as e:
        logger.debug("Skipping unparseable effects during scan: %s", e)
        return
    for statement in statements:
        yield from _statement_targets(statement)


def _statement_targets(statement: EffectStatement) -> Iterator[str]:
    if statement.block is not None:
        for branch in statement.block.branches:
            yield from _effect_targets(branch.body.source)
    elif statement.target is not None and statement.target.kind == RefKind.QUALITY:
        yield statement.target.name


def scan_dynamic_ids(content: ContentContext) -> list[str]:
    """
    Ids that storylets create or change without an authored definition.

    Looks for `%new[id...]` anywhere in storylet text and options, and for
    effect targets missing from the definitions.
    """
    found: set[str] = set()
    for storylet in content.storylets.values():
        for text in _strings(storylet):
            found.update(m.group(1) for m in _NEW_ID.finditer(text))

        for option in storylet.get("options") or []:
            for key, value in option.items():
                if _is_effect_key(key) and isinstance(value, str):
                    found.update(_effect_targets(value))

    return sorted(qid for qid in found if qid not in content.definitions)
