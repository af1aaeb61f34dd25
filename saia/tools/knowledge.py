"""Tool Knowledge — per-tool outcome statistics and recommendation scoring."""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from saia.text import canonicalize, fuzzy_sim, jaccard_index, tokenize
from saia.tools.schema import TaskContext, ToolSpec

_logger = logging.getLogger(__name__)

W_TAGS = 0.45
W_DOMAIN = 0.35
W_PERF = 0.20
LATENCY_PENALTY = 0.2


class DomainStat(BaseModel):
    count: int = 0
    ok: int = 0


class ToolStat(BaseModel):
    count: int = 0
    ok: int = 0
    latency_sum: float = 0.0
    by_domain: dict[str, DomainStat] = Field(default_factory=dict)
    tags: dict[str, int] = Field(default_factory=dict)


class Recommendation(BaseModel):
    id: str
    score: float
    success_rate: float
    avg_latency_ms: float


_StatsFile = TypeAdapter(dict[str, ToolStat])


class ToolKnowledge:
    """Learns which tools work, persisted as JSON (``path=None`` = in-memory)."""

    def __init__(self, path: Path | str | None = None, latency_slo_ms: float = 2000.0) -> None:
        self._path = Path(path) if path else None
        self._slo = max(1.0, latency_slo_ms)
        self._stats: dict[str, ToolStat] = {}
        self.load()

    def load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            self._stats = _StatsFile.validate_json(self._path.read_bytes())
        except (OSError, ValidationError, ValueError) as e:
            _logger.warning("Failed to load tool knowledge %s: %s", self._path, e)
            self._stats = {}

    def save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_bytes(_StatsFile.dump_json(self._stats, indent=2))

    def record_outcome(self, tool_id: str, ok: bool, latency_ms: float, task: TaskContext | None = None) -> None:
        task = task or TaskContext()
        s = self._stats.setdefault(tool_id, ToolStat())
        s.count += 1
        if ok:
            s.ok += 1
        s.latency_sum += max(0.0, latency_ms)
        domain = canonicalize(task.domain)
        if domain:
            d = s.by_domain.setdefault(domain, DomainStat())
            d.count += 1
            if ok:
                d.ok += 1
        for tag in task.tags:
            t = canonicalize(tag)
            if t:
                s.tags[t] = s.tags.get(t, 0) + 1
        self.save()

    def stat(self, tool_id: str) -> ToolStat:
        return self._stats.get(tool_id) or ToolStat()

    def success_rate(self, tool_id: str) -> float:
        s = self._stats.get(tool_id)
        return round(s.ok / s.count, 3) if s and s.count else 0.0

    def avg_latency(self, tool_id: str) -> float:
        s = self._stats.get(tool_id)
        return round(s.latency_sum / s.count, 1) if s and s.count else 0.0

    def score(self, spec: ToolSpec, task: TaskContext) -> float:
        ctx_tags = {canonicalize(t) for t in task.tags if canonicalize(t)}
        wanted = ctx_tags or set(tokenize(task.prompt))
        tag_match = jaccard_index(wanted, {canonicalize(t) for t in spec.tags})

        domain = canonicalize(task.domain)
        dom_match = 0.0
        if domain and spec.domains:
            dom_match = max(fuzzy_sim(domain, canonicalize(d)) for d in spec.domains)

        penalty = min(1.0, self.avg_latency(spec.id) / self._slo) * LATENCY_PENALTY
        perf = self.success_rate(spec.id) - penalty
        return W_TAGS * tag_match + W_DOMAIN * dom_match + W_PERF * perf

    def recommend(self, specs: list[ToolSpec], task: TaskContext, k: int = 3) -> list[Recommendation]:
        """Top-k tools for the task. Ties keep registration order."""
        scored = [
            Recommendation(
                id=spec.id,
                score=round(self.score(spec, task), 4),
                success_rate=self.success_rate(spec.id),
                avg_latency_ms=self.avg_latency(spec.id),
            )
            for spec in specs
        ]
        scored.sort(key=lambda r: r.score, reverse=True)
        return scored[: max(1, k)]

    def dump(self) -> dict[str, ToolStat]:
        return dict(self._stats)
