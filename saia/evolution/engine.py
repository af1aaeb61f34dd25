"""Self-Development Engine — stability-gated switching of dispatch patterns.

Each ``evaluate()`` call is one cycle: compare global success EMA with the
previous cycle, count consecutive non-improving cycles and, once the count
reaches the configured minimum and governance approves, try the next
candidate pattern through the stability gate. Every commit or rollback is
signed and appended to the pattern log.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable

from pydantic import BaseModel

from saia.adaptation.router import LearningRouter
from saia.evolution.stability import StabilityAssessor
from saia.evolution.state import CellPrior, EvolutionState
from saia.governance.audit import AuditTrail
from saia.metrics.store import MetricsStore
from saia.patterns.registry import PatternRegistry, PatternSpec, pattern_complexity

_logger = logging.getLogger(__name__)

IMPROVEMENT_TOLERANCE = 0.001

CanaryProbe = Callable[[PatternSpec], Awaitable[float]]


class EvolutionDecision(BaseModel):
    """Result of one evaluation cycle."""

    action: str  # "observe" | "not_approved" | "commit" | "rollback"
    perf: float
    non_improving_cycles: int
    active_pattern_id: str | None = None
    candidate_id: str | None = None
    delta_v: float | None = None
    post_perf: float | None = None


class SelfDevelopmentEngine:
    def __init__(
        self,
        registry: PatternRegistry,
        metrics: MetricsStore,
        audit: AuditTrail,
        state: EvolutionState | None = None,
        stability: StabilityAssessor | None = None,
        router: LearningRouter | None = None,
        min_cycles: int = 3,
        canary: CanaryProbe | None = None,
    ) -> None:
        self._registry = registry
        self._metrics = metrics
        self._audit = audit
        self._state = state or EvolutionState()
        self._stability = stability or StabilityAssessor()
        self._router = router
        self._min_cycles = max(1, min_cycles)
        self._canary = canary
        self._counter = 0
        self._last_perf = 0.5

    @property
    def non_improving_cycles(self) -> int:
        return self._counter

    @property
    def last_perf(self) -> float:
        return self._last_perf

    @property
    def stability(self) -> StabilityAssessor:
        return self._stability

    @property
    def state(self) -> EvolutionState:
        return self._state

    # ── Snapshot ─────────────────────────────────────────────────

    def load_snapshot(self) -> bool:
        """Restore perf, active pattern, cell priors and bandit state."""
        if not self._state.load():
            return False
        data = self._state.data
        self._last_perf = data.last_perf
        self._counter = data.non_improving_cycles
        if data.active_pattern_id and self._registry.get(data.active_pattern_id):
            self._registry.set_active(data.active_pattern_id)
        for cell_id, prior in data.cells.items():
            self._metrics.set_success_ema(cell_id, prior.success_ema)
            self._metrics.set_router_confidence(cell_id, prior.router_confidence)
        self._metrics.restore_recent(data.recent)
        if self._router is not None:
            self._router.apply_pattern(self._registry.active())
            if data.bandit is not None:
                self._router.set_bandit_state(data.bandit)
        return True

    def save_snapshot(self) -> None:
        data = self._state.data
        data.last_perf = self._last_perf
        data.non_improving_cycles = self._counter
        data.active_pattern_id = self._registry.active_id
        data.cells = {
            cell_id: CellPrior(success_ema=stat.success_ema, router_confidence=stat.router_confidence)
            for cell_id, stat in self._metrics.per_cell().items()
        }
        data.recent = self._metrics.recent()
        if self._router is not None:
            data.bandit = self._router.get_bandit_state()
        self._state.save()

    # ── Cycle ────────────────────────────────────────────────────

    async def evaluate(self) -> EvolutionDecision:
        pre_perf = self._metrics.global_success_ema()
        if pre_perf <= self._last_perf + IMPROVEMENT_TOLERANCE:
            self._counter += 1
        else:
            self._counter = 0

        try:
            decision = await self._maybe_evolve(pre_perf)
        finally:
            self._last_perf = pre_perf
            self.save_snapshot()
        return decision

    async def _maybe_evolve(self, pre_perf: float) -> EvolutionDecision:
        if self._counter < self._min_cycles:
            return self._decision("observe", pre_perf)
        if not self._audit.approve_evolution():
            _logger.debug("Evolution not approved: no shared secret configured")
            return self._decision("not_approved", pre_perf)

        from_id = self._registry.active_id
        candidate = self._registry.synthesize_candidate()
        pre_cx = self._registry.active_complexity()
        post_cx = pattern_complexity(candidate)
        post_perf = await self._canary(candidate) if self._canary else pre_perf
        delta_v = self._stability.compute_prospective(pre_cx, post_cx, pre_perf, post_perf)

        if delta_v < 0:
            self._registry.set_active(candidate.id)
            self._registry.save()
            if self._router is not None:
                self._router.apply_pattern(candidate)
            self._counter = 0
            self._stability.commit(post_cx, post_perf)
            action = "commit"
            _logger.info("Evolved pattern %s -> %s (dV=%.3f)", from_id, candidate.id, delta_v)
        else:
            action = "rollback"
            _logger.info("Rejected pattern %s (dV=%.3f)", candidate.id, delta_v)

        await self._audit.log_evolution(
            decision=action,
            from_pattern=from_id,
            to_pattern=candidate.id,
            delta_v=round(delta_v, 6),
            pre_perf=pre_perf,
            post_perf=post_perf,
            non_improving_cycles=self._counter,
            reason=f"complexity {pre_cx:g} -> {post_cx:g}",
        )
        return self._decision(
            action, pre_perf, candidate_id=candidate.id, delta_v=delta_v, post_perf=post_perf,
        )

    def _decision(self, action: str, perf: float, **extra) -> EvolutionDecision:
        return EvolutionDecision(
            action=action,
            perf=perf,
            non_improving_cycles=self._counter,
            active_pattern_id=self._registry.active_id,
            **extra,
        )
