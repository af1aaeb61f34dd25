"""Learning Router — picks a cell per request and learns from rewards.

Strategies:
  - round_robin / random: non-learned baselines
  - keyword: highest capability-tag match
  - success_rate: 0.5 * success EMA + 0.5 * tag match, with a tag guard
  - rl_bandit: epsilon-greedy over learned per-cell values

The bandit's epsilon follows a warmup → exponential decay → floor schedule.
A drift detector compares the mean reward of the last W updates against
the W before; a drop of at least ``drift_drop`` opens a temporary
exploration spike so the router re-explores after a regime change.
"""

from __future__ import annotations

import math
import random
import re
from collections import deque
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from saia.cells.cell import Cell
from saia.metrics.store import MetricsStore
from saia.patterns.registry import PatternSpec
from saia.types import RouterStrategy

NEUTRAL_VALUE = 0.5
MIN_CONFIDENCE = 0.05

_TOOL_PHRASES = [
    re.compile(r"\busing the\b.*\btool\b", re.IGNORECASE),
    re.compile(r"\buse\b.*\btool\b", re.IGNORECASE),
    re.compile(r"\btool\b.*\bto\b", re.IGNORECASE),
    re.compile(r"\bwrite\s+.*\s+to\s+file\b", re.IGNORECASE),
    re.compile(r"\bcreate\s+file\b", re.IGNORECASE),
]


class BanditParams(BaseModel):
    """Tunable bandit parameters. Values are clamped by ``LearningRouter.set_params``."""

    eps0: float = 0.15
    min_epsilon: float = 0.08
    epsilon_decay: float = 0.0
    warmup_steps: int = 0
    alpha: float = 0.2
    decay: float = 0.02
    drift_window: int = 30
    drift_drop: float = 0.08
    spike_epsilon: float = 0.30
    spike_decay: float = 0.01
    spike_steps: int = 20


class BanditState(BaseModel):
    epsilon: float = 0.15
    counts: dict[str, int] = Field(default_factory=dict)
    values: dict[str, float] = Field(default_factory=dict)


class RouteResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    cell: Cell
    confidence: float
    reason: str


def _clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, value))


def _conf(value: float) -> float:
    return _clamp(value, MIN_CONFIDENCE, 1.0)


class LearningRouter:
    """Routes prompts over a cell pool; owns the bandit state."""

    def __init__(
        self,
        cells: Iterable[Cell],
        metrics: MetricsStore,
        params: BanditParams | None = None,
        tag_guard_threshold: float = 0.6,
        base_cell_id: str = "cell-base",
        tool_ids: Iterable[str] = (),
        rng: random.Random | None = None,
    ) -> None:
        self._cells: list[Cell] = list(cells)
        if not self._cells:
            raise ValueError("LearningRouter requires at least one cell")
        self._active: list[Cell] = list(self._cells)
        self._metrics = metrics
        self._params = params or BanditParams()
        self._tag_guard = tag_guard_threshold
        self._base_cell_id = base_cell_id
        self._rng = rng or random.Random()
        self._tool_id_re: re.Pattern[str] | None = None
        self.set_tool_ids(tool_ids)

        self._values: dict[str, float] = {}
        self._counts: dict[str, int] = {}
        self._step = 0
        self._rr_index = 0
        self._spike_until = 0
        self._rewards: deque[float] = deque(maxlen=2 * self._params.drift_window)

    # ── Pool management ──────────────────────────────────────────

    @property
    def cells(self) -> list[Cell]:
        return list(self._cells)

    @property
    def pool(self) -> list[Cell]:
        return self._active or self._cells

    def get_cell(self, cell_id: str) -> Cell | None:
        return next((c for c in self._cells if c.id == cell_id), None)

    def add_cell(self, cell: Cell) -> None:
        if self.get_cell(cell.id) is not None:
            return
        self._cells.append(cell)
        self._active.append(cell)

    def remove_cell(self, cell_id: str) -> None:
        remaining = [c for c in self._cells if c.id != cell_id]
        if not remaining:
            raise ValueError("cannot remove the last cell from the pool")
        self._cells = remaining
        self._active = [c for c in self._active if c.id != cell_id]
        self._values.pop(cell_id, None)
        self._counts.pop(cell_id, None)

    def apply_pattern(self, pattern: PatternSpec | None) -> None:
        """Restrict the active pool to a pattern's cells (all cells if none match)."""
        if pattern is None:
            self._active = list(self._cells)
            return
        wanted = set(pattern.cells)
        matched = [c for c in self._cells if c.id in wanted]
        self._active = matched or list(self._cells)

    def set_tool_ids(self, tool_ids: Iterable[str]) -> None:
        ids = sorted({t for t in tool_ids if t}, key=len, reverse=True)
        if ids:
            alternatives = "|".join(re.escape(t) for t in ids)
            self._tool_id_re = re.compile(rf"(?<![\w.])(?:{alternatives})(?![\w.])", re.IGNORECASE)
        else:
            self._tool_id_re = None

    # ── Routing ──────────────────────────────────────────────────

    def route(self, text: str, strategy: RouterStrategy | str = RouterStrategy.SUCCESS_RATE) -> RouteResult:
        strategy = RouterStrategy.parse(strategy) if isinstance(strategy, str) else strategy

        if self.is_tool_prompt(text):
            base = self.get_cell(self._base_cell_id)
            if base is not None:
                return RouteResult(cell=base, confidence=1.0, reason="explicit-tool-prompt")

        if strategy is RouterStrategy.ROUND_ROBIN:
            pool = self.pool
            cell = pool[self._rr_index % len(pool)]
            self._rr_index = (self._rr_index + 1) % len(pool)
            return RouteResult(cell=cell, confidence=NEUTRAL_VALUE, reason="round_robin")

        if strategy is RouterStrategy.RANDOM:
            cell = self._rng.choice(self.pool)
            return RouteResult(cell=cell, confidence=NEUTRAL_VALUE, reason="random")

        if strategy is RouterStrategy.KEYWORD:
            cell, match = self._best_tag_match(text)
            return RouteResult(cell=cell, confidence=_conf(match), reason=f"keyword bestMatch={match:.2f}")

        if strategy is RouterStrategy.RL_BANDIT:
            return self._route_bandit(text)

        guarded = self._pick_by_tag_guard(text)
        if guarded is not None:
            cell, match = guarded
            return RouteResult(cell=cell, confidence=_conf(match), reason=f"success_rate tagGuard match={match:.2f}")
        return self._score_and_pick(text, 0.5, 0.5)

    def is_tool_prompt(self, text: str) -> bool:
        if self._tool_id_re is not None and self._tool_id_re.search(text):
            return True
        return any(p.search(text) for p in _TOOL_PHRASES)

    def _route_bandit(self, text: str) -> RouteResult:
        self._step += 1
        eps = self.effective_epsilon(self._step)
        pool = self.pool

        if self._rng.random() < eps:
            cell = self._rng.choice(pool)
            value = self._values.get(cell.id, NEUTRAL_VALUE)
            return RouteResult(cell=cell, confidence=_conf(value), reason=f"rl_bandit explore eps={eps:.3f}")

        guarded = self._pick_by_tag_guard(text)
        if guarded is not None:
            cell, match = guarded
            value = self._values.get(cell.id, match)
            return RouteResult(cell=cell, confidence=_conf(value), reason=f"rl_bandit tagGuard match={match:.2f}")

        best = pool[0]
        best_val = self._values.get(best.id, NEUTRAL_VALUE)
        for cell in pool[1:]:
            val = self._values.get(cell.id, NEUTRAL_VALUE)
            if val > best_val:
                best, best_val = cell, val
        return RouteResult(cell=best, confidence=_conf(best_val), reason=f"rl_bandit exploit value={best_val:.2f}")

    def _best_tag_match(self, text: str) -> tuple[Cell, float]:
        pool = self.pool
        best = pool[0]
        best_match = best.match_tags(text)
        for cell in pool[1:]:
            m = cell.match_tags(text)
            if m > best_match:
                best, best_match = cell, m
        return best, best_match

    def _pick_by_tag_guard(self, text: str) -> tuple[Cell, float] | None:
        cell, match = self._best_tag_match(text)
        return (cell, match) if match >= self._tag_guard else None

    def _score_cell(self, cell: Cell, text: str, perf_weight: float, tag_weight: float) -> float:
        return perf_weight * self._metrics.success_ema(cell.id) + tag_weight * cell.match_tags(text)

    def _score_and_pick(self, text: str, perf_weight: float, tag_weight: float) -> RouteResult:
        pool = self.pool
        best = pool[0]
        best_score = self._score_cell(best, text, perf_weight, tag_weight)
        for cell in pool[1:]:
            score = self._score_cell(cell, text, perf_weight, tag_weight)
            if score > best_score:
                best, best_score = cell, score
        return RouteResult(
            cell=best,
            confidence=_conf(best_score),
            reason=f"success_rate perfWeight={perf_weight} tagWeight={tag_weight} score={best_score:.2f}",
        )

    # ── Epsilon schedule ─────────────────────────────────────────

    @property
    def step(self) -> int:
        return self._step

    def scheduled_epsilon(self, step: int | None = None) -> float:
        p = self._params
        now = self._step if step is None else step
        if now <= p.warmup_steps:
            return p.eps0
        decayed = p.eps0 * math.exp(-p.epsilon_decay * (now - p.warmup_steps))
        return max(p.min_epsilon, decayed)

    def effective_epsilon(self, step: int | None = None) -> float:
        p = self._params
        now = self._step if step is None else step
        scheduled = self.scheduled_epsilon(now)
        if now < self._spike_until:
            remaining = self._spike_until - now
            spike = p.spike_epsilon * math.exp(-p.spike_decay * (p.spike_steps - remaining))
            return max(scheduled, spike)
        return scheduled

    @property
    def spike_active(self) -> bool:
        return self._step < self._spike_until

    # ── Learning ─────────────────────────────────────────────────

    def update(self, cell_id: str, reward: float) -> None:
        """Move the served cell toward ``reward``; decay the rest toward neutral."""
        r = _clamp(reward)
        p = self._params
        prev = self._values.get(cell_id, NEUTRAL_VALUE)
        self._values[cell_id] = prev + p.alpha * (r - prev)
        self._counts[cell_id] = self._counts.get(cell_id, 0) + 1

        if p.decay > 0:
            others = {c.id for c in self._cells} | set(self._values)
            others.discard(cell_id)
            for other in others:
                v = self._values.get(other, NEUTRAL_VALUE)
                self._values[other] = v * (1 - p.decay) + NEUTRAL_VALUE * p.decay

        self._rewards.append(r)
        self._maybe_spike_on_drift()

    def _maybe_spike_on_drift(self) -> None:
        w = self._params.drift_window
        if len(self._rewards) < 2 * w:
            return
        history = list(self._rewards)
        pre = sum(history[:w]) / w
        post = sum(history[w:]) / w
        if pre - post >= self._params.drift_drop:
            self._spike_until = self._step + self._params.spike_steps

    # ── State ────────────────────────────────────────────────────

    def value(self, cell_id: str) -> float:
        return self._values.get(cell_id, NEUTRAL_VALUE)

    def get_bandit_state(self) -> BanditState:
        return BanditState(
            epsilon=self._params.eps0,
            counts=dict(self._counts),
            values=dict(self._values),
        )

    def set_bandit_state(self, state: BanditState) -> None:
        self._params.eps0 = _clamp(state.epsilon)
        self._counts = dict(state.counts)
        self._values = {k: _clamp(v) for k, v in state.values.items()}

    def get_params(self) -> BanditParams:
        return self._params.model_copy()

    def set_params(self, **params: Any) -> BanditParams:
        """Update bandit parameters in place, clamping each to its valid range."""
        current = self._params.model_dump()
        for key, raw in params.items():
            if key not in current or raw is None:
                continue
            current[key] = raw
        p = BanditParams(**current)
        p.eps0 = _clamp(p.eps0)
        p.min_epsilon = _clamp(p.min_epsilon)
        p.epsilon_decay = max(0.0, p.epsilon_decay)
        p.warmup_steps = max(0, int(p.warmup_steps))
        p.alpha = _clamp(p.alpha)
        p.decay = _clamp(p.decay)
        p.drift_window = max(1, int(p.drift_window))
        p.drift_drop = _clamp(p.drift_drop)
        p.spike_epsilon = _clamp(p.spike_epsilon)
        p.spike_decay = max(0.0, p.spike_decay)
        p.spike_steps = max(1, int(p.spike_steps))
        if p.drift_window != self._params.drift_window:
            self._rewards = deque(self._rewards, maxlen=2 * p.drift_window)
        self._params = p
        return p.model_copy()
