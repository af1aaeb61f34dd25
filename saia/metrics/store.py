"""Metrics Store — per-cell EMAs, SAI and the request event history.

One instance lives on the runtime context and is passed explicitly to the
router, the feedback controller, domain synthesis and the evolution engine.
Every mutation is a short synchronous read-modify-write.
"""

from __future__ import annotations

from collections import deque

from pydantic import BaseModel, ConfigDict, Field

from saia.types import clamp01, utcnow_iso


class RequestEvent(BaseModel):
    """One handled request. Immutable once recorded."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    cell_id: str
    latency_ms: float
    success: bool
    policy_passed: bool
    timestamp: str = Field(default_factory=utcnow_iso)
    prompt: str | None = None
    response: str | None = None
    domain: str | None = None
    tags: tuple[str, ...] = ()


class CellStat(BaseModel):
    """Derived per-cell view; never written directly."""

    cell_id: str
    count: int = 0
    success_count: int = 0
    success_rate: float = 0.0
    avg_latency_ms: float = 0.0
    success_ema: float = 0.5
    compliance_ema: float = 1.0
    adaptation_steps: int = 0
    router_confidence: float = 0.0
    sai: float = 0.0


class MetricsSummary(BaseModel):
    total: int
    success_count: int
    policy_pass_count: int
    success_rate: float
    policy_pass_rate: float
    avg_latency_ms: float
    global_success_ema: float


class _Aggregate:
    __slots__ = ("count", "success", "latency_sum")

    def __init__(self) -> None:
        self.count = 0
        self.success = 0
        self.latency_sum = 0.0


def _bounded(value: float) -> float:
    return round(clamp01(value), 3)


class MetricsStore:
    """Holds request events plus the per-cell adaptation state."""

    def __init__(self, recent_limit: int = 50, global_alpha: float = 0.2) -> None:
        self._events: list[RequestEvent] = []
        self._recent: deque[RequestEvent] = deque(maxlen=recent_limit)
        self._aggregates: dict[str, _Aggregate] = {}
        self._success_ema: dict[str, float] = {}
        self._compliance_ema: dict[str, float] = {}
        self._adaptation_steps: dict[str, int] = {}
        self._router_confidence: dict[str, float] = {}
        self._sai: dict[str, float] = {}
        self._global_success_ema = 0.5
        self._global_alpha = global_alpha

    # ── Recording ────────────────────────────────────────────────

    def record(self, event: RequestEvent) -> None:
        self._events.append(event)
        self._recent.append(event)

        agg = self._aggregates.setdefault(event.cell_id, _Aggregate())
        agg.count += 1
        agg.success += int(event.success)
        agg.latency_sum += max(0.0, event.latency_ms)

        y = 1.0 if event.success else 0.0
        self._global_success_ema = (
            self._global_alpha * y + (1 - self._global_alpha) * self._global_success_ema
        )
        prev = self._compliance_ema.get(event.cell_id, 1.0)
        c = 1.0 if event.policy_passed else 0.0
        self._compliance_ema[event.cell_id] = _bounded(0.2 * c + 0.8 * prev)

    # ── Per-cell state ───────────────────────────────────────────

    def success_ema(self, cell_id: str) -> float:
        return self._success_ema.get(cell_id, 0.5)

    def set_success_ema(self, cell_id: str, value: float) -> None:
        self._success_ema[cell_id] = _bounded(value)

    def compliance_ema(self, cell_id: str) -> float:
        return self._compliance_ema.get(cell_id, 1.0)

    def increment_adaptation_steps(self, cell_id: str) -> None:
        self._adaptation_steps[cell_id] = self._adaptation_steps.get(cell_id, 0) + 1

    def router_confidence(self, cell_id: str) -> float:
        return self._router_confidence.get(cell_id, 0.0)

    def set_router_confidence(self, cell_id: str, value: float) -> None:
        self._router_confidence[cell_id] = _bounded(value)

    def sai(self, cell_id: str) -> float:
        return self._sai.get(cell_id, 0.0)

    def set_sai(self, cell_id: str, value: float) -> None:
        self._sai[cell_id] = _bounded(value)

    def forget(self, cell_id: str) -> None:
        """Drop the adaptation state of a removed cell. History is kept."""
        for table in (
            self._success_ema, self._compliance_ema, self._adaptation_steps,
            self._router_confidence, self._sai,
        ):
            table.pop(cell_id, None)

    # ── Views ────────────────────────────────────────────────────

    def cell_stat(self, cell_id: str) -> CellStat:
        agg = self._aggregates.get(cell_id)
        count = agg.count if agg else 0
        return CellStat(
            cell_id=cell_id,
            count=count,
            success_count=agg.success if agg else 0,
            success_rate=round(agg.success / count, 3) if count else 0.0,
            avg_latency_ms=round(agg.latency_sum / count, 1) if count else 0.0,
            success_ema=self.success_ema(cell_id),
            compliance_ema=self.compliance_ema(cell_id),
            adaptation_steps=self._adaptation_steps.get(cell_id, 0),
            router_confidence=self.router_confidence(cell_id),
            sai=self.sai(cell_id),
        )

    def per_cell(self) -> dict[str, CellStat]:
        ids = set(self._aggregates) | set(self._success_ema) | set(self._sai)
        return {cid: self.cell_stat(cid) for cid in sorted(ids)}

    def restore_recent(self, events: list[RequestEvent]) -> None:
        """Refill the recent window without touching counters or EMAs."""
        self._recent.extend(events)

    def recent(self, limit: int | None = None) -> list[RequestEvent]:
        events = list(self._recent)
        return events[-limit:] if limit else events

    def events(self) -> list[RequestEvent]:
        return list(self._events)

    def global_success_ema(self) -> float:
        return round(self._global_success_ema, 3)

    def summary(self) -> MetricsSummary:
        total = len(self._events)
        success = sum(1 for e in self._events if e.success)
        passed = sum(1 for e in self._events if e.policy_passed)
        latency = sum(e.latency_ms for e in self._events)
        return MetricsSummary(
            total=total,
            success_count=success,
            policy_pass_count=passed,
            success_rate=round(success / total, 3) if total else 0.0,
            policy_pass_rate=round(passed / total, 3) if total else 0.0,
            avg_latency_ms=round(latency / total, 1) if total else 0.0,
            global_success_ema=self.global_success_ema(),
        )

    def __repr__(self) -> str:
        return f"MetricsStore(events={len(self._events)}, cells={len(self._aggregates)})"
