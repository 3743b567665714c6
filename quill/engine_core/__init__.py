"""
Engine Core - the rule language and the quality model it runs against.

The engine is the runtime that:
1. Tokenizes and parses conditions, text templates and effect lists
2. Evaluates them against a character's qualities and the world overlay
3. Applies effects to the Quality Store, producing change records
4. Validates equipment changes
"""

from .errors import QuillError, ParseError, EffectError, EquipError
from .quality import (
    QualityKind,
    QualityDefinition,
    PyramidalState,
    StringState,
    QualityState,
    QualityStore,
    triangular,
    level_for_points,
)
from .content import ContentContext, scan_dynamic_ids
from .evaluator import EvaluationContext, ExpressionEvaluator
from .effects import ChangeRecord, DeferredMacro, EffectApplier
from .engine import StoryEngine, EquipResult, ChallengeDetails, OptionResult

__all__ = [
    "QuillError",
    "ParseError",
    "EffectError",
    "EquipError",
    "QualityKind",
    "QualityDefinition",
    "PyramidalState",
    "StringState",
    "QualityState",
    "QualityStore",
    "triangular",
    "level_for_points",
    "ContentContext",
    "scan_dynamic_ids",
    "EvaluationContext",
    "ExpressionEvaluator",
    "ChangeRecord",
    "DeferredMacro",
    "EffectApplier",
    "StoryEngine",
    "EquipResult",
    "ChallengeDetails",
    "OptionResult",
]
