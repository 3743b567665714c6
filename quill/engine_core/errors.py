"""
Engine errors.

The core almost never raises to its caller: parse failures degrade to raw
text or a closed gate, and effect failures skip the offending statement.
These exceptions travel between the parser, evaluator and applier, and are
caught at the facade seams.
"""

from __future__ import annotations


class QuillError(Exception):
    """Base class for all engine errors."""


class ParseError(QuillError):
    """Raised when a fragment cannot be tokenized or parsed."""

    def __init__(self, message: str, fragment: str, position: int = 0):
        self.message = message
        self.fragment = fragment
        self.position = position
        super().__init__(f"{message} at position {position} in {fragment!r}")


class EffectError(QuillError):
    """Raised when a single effect statement cannot be applied."""

    def __init__(self, message: str, statement: str | None = None):
        self.message = message
        self.statement = statement
        detail = f" (in {statement!r})" if statement else ""
        super().__init__(f"{message}{detail}")


class EquipError(QuillError):
    """Raised when an equipment change violates slot, ownership or lock rules."""

    def __init__(self, message: str, slot: str, locked: bool = False):
        self.message = message
        self.slot = slot
        self.locked = locked
        super().__init__(message)
