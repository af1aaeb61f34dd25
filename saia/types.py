"""Core types shared across all saia subsystems."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import TypeAlias

CellId: TypeAlias = str
ToolId: TypeAlias = str
PatternId: TypeAlias = str


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


# ── Router strategies ────────────────────────────────────────────────────────


class RouterStrategy(str, Enum):
    ROUND_ROBIN = "round_robin"
    RANDOM = "random"
    KEYWORD = "keyword"
    SUCCESS_RATE = "success_rate"
    RL_BANDIT = "rl_bandit"

    @classmethod
    def parse(cls, raw: str | None, default: RouterStrategy | None = None) -> RouterStrategy:
        """Lenient parse; unknown labels fall back to the default."""
        fallback = default or cls.SUCCESS_RATE
        if not raw:
            return fallback
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            return fallback
