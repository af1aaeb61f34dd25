"""Tool Registry — the tools cells can call, with their learned statistics."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from pydantic import BaseModel

from saia.exceptions import ToolNotFoundError
from saia.tools.knowledge import Recommendation, ToolKnowledge, ToolStat
from saia.tools.schema import TaskContext, ToolContext, ToolOutput, ToolSpec

ToolHandler = Callable[[dict[str, Any], ToolContext], Awaitable[ToolOutput]]


class ToolWithStats(BaseModel):
    spec: ToolSpec
    stats: ToolStat
    success_rate: float
    avg_latency_ms: float


class ToolRegistry:
    """Registry of tools keyed by id.

    Tools are registered with a spec and an async handler taking
    ``(input, context)``. Discovery, lookups and recommendation go through here.
    """

    def __init__(self, knowledge: ToolKnowledge | None = None) -> None:
        self._tools: dict[str, tuple[ToolSpec, ToolHandler]] = {}
        self._knowledge = knowledge or ToolKnowledge()

    @property
    def knowledge(self) -> ToolKnowledge:
        return self._knowledge

    def register(self, spec: ToolSpec, handler: ToolHandler) -> None:
        self._tools[spec.id] = (spec, handler)

    def unregister(self, tool_id: str) -> None:
        self._tools.pop(tool_id, None)

    def has(self, tool_id: str) -> bool:
        return tool_id in self._tools

    def get(self, tool_id: str) -> tuple[ToolSpec, ToolHandler]:
        entry = self._tools.get(tool_id)
        if entry is None:
            raise ToolNotFoundError(f"Tool '{tool_id}' not found")
        return entry

    def ids(self) -> list[str]:
        return list(self._tools)

    def list_specs(self) -> list[ToolSpec]:
        return [spec for spec, _ in self._tools.values()]

    def list_with_stats(self) -> list[ToolWithStats]:
        return [
            ToolWithStats(
                spec=spec,
                stats=self._knowledge.stat(spec.id),
                success_rate=self._knowledge.success_rate(spec.id),
                avg_latency_ms=self._knowledge.avg_latency(spec.id),
            )
            for spec in self.list_specs()
        ]

    def record_outcome(self, tool_id: str, ok: bool, latency_ms: float, task: TaskContext | None = None) -> None:
        self._knowledge.record_outcome(tool_id, ok, latency_ms, task)

    def recommend(self, task: TaskContext, k: int = 3) -> list[Recommendation]:
        return self._knowledge.recommend(self.list_specs(), task, k)
