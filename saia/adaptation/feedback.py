"""Feedback Controller — turns request outcomes into cell adjustments."""

from __future__ import annotations

from pydantic import BaseModel

from saia.cells.cell import Cell
from saia.metrics.store import MetricsStore
from saia.types import clamp01


class Outcome(BaseModel):
    success: bool
    latency_ms: float
    policy_passed: bool = True


class FeedbackController:
    """Updates success EMA, SAI and temperature for the cell that served a request.

    This is the only component that changes a cell's temperature.
    """

    def __init__(
        self,
        metrics: MetricsStore,
        alpha: float = 0.2,
        latency_slo_ms: float = 2000.0,
        min_temp: float = 0.1,
        max_temp: float = 0.9,
    ) -> None:
        self._metrics = metrics
        self._alpha = alpha
        self._slo = max(1.0, latency_slo_ms)
        self._min_temp = min_temp
        self._max_temp = max_temp

    def update(self, cell: Cell, outcome: Outcome, router_confidence: float) -> float:
        """Apply one outcome. Returns the cell's new SAI."""
        prev = self._metrics.success_ema(cell.id)
        y = 1.0 if outcome.success else 0.0
        ema = self._alpha * y + (1 - self._alpha) * prev
        self._metrics.set_success_ema(cell.id, ema)

        self._metrics.increment_adaptation_steps(cell.id)
        self._metrics.set_router_confidence(cell.id, router_confidence)

        latency_penalty = min(1.0, max(0.0, outcome.latency_ms) / self._slo)
        compliance = self._metrics.compliance_ema(cell.id)
        sai = clamp01(ema * (1 - latency_penalty) * compliance)
        self._metrics.set_sai(cell.id, sai)

        confidence = 0.7 * ema + 0.3 * clamp01(router_confidence)
        cell.adjust_parameters(confidence, self._min_temp, self._max_temp)
        return self._metrics.sai(cell.id)
