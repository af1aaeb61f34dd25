"""Stability Assessor — Lyapunov-style gate for structural changes."""

from __future__ import annotations

from pydantic import BaseModel


class StabilityPoint(BaseModel):
    complexity: float = 0.0
    success: float = 0.0


class StabilityAssessor:
    """ΔV = β·Δcomplexity − α·Δsuccess; a change is accepted iff ΔV < 0."""

    def __init__(self, alpha: float = 1.0, beta: float = 0.5) -> None:
        self.alpha = alpha
        self.beta = beta
        self._last = StabilityPoint(complexity=1.0, success=0.5)

    def compute_prospective(
        self,
        prev_complexity: float,
        next_complexity: float,
        prev_success: float,
        next_success: float,
    ) -> float:
        return (
            self.beta * (next_complexity - prev_complexity)
            - self.alpha * (next_success - prev_success)
        )

    def commit(self, complexity: float, success: float) -> None:
        """Record the accepted operating point as the new baseline."""
        self._last = StabilityPoint(complexity=complexity, success=success)

    def get_last(self) -> StabilityPoint:
        return self._last
