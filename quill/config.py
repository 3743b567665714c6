"""
Engine configuration.

Settings are read from the environment by the CLI and the API app. Library
callers that construct an engine directly get the defaults unless they pass
their own Settings.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in ("1", "true", "yes")


@dataclass
class Settings:
    """Tunables for evaluation and for the console API."""
    env: str = "development"
    allowed_origins: list[str] = field(default_factory=lambda: ["*"])

    # Nested templates, property templates and conditional effect blocks
    # all recurse; past this depth evaluation yields an empty value.
    max_depth: int = 25

    # Largest span a `low ~ high` range roll may cover.
    range_limit: int = 10000

    verbose: bool = False

    @classmethod
    def from_env(cls) -> Settings:
        origins = os.getenv("QUILL_ALLOWED_ORIGINS", "*")
        return cls(
            env=os.getenv("QUILL_ENV", "development"),
            allowed_origins=[o.strip() for o in origins.split(",") if o.strip()],
            max_depth=_env_int("QUILL_MAX_DEPTH", 25),
            range_limit=_env_int("QUILL_RANGE_LIMIT", 10000),
            verbose=_env_flag("QUILL_VERBOSE"),
        )

    def to_dict(self) -> dict:
        return {
            "env": self.env,
            "allowed_origins": list(self.allowed_origins),
            "max_depth": self.max_depth,
            "range_limit": self.range_limit,
            "verbose": self.verbose,
        }
