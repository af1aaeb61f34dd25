"""Tool schema — describes what a tool is, what it touches and what it returns."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

SideEffects = Literal["none", "read", "write", "network"]
RiskTier = Literal["low", "med", "high"]


class ToolParameter(BaseModel):
    name: str
    type: str = "string"
    description: str
    required: bool = True


class ToolSpec(BaseModel):
    """Complete description of a tool that cells can call."""

    id: str
    title: str
    description: str
    tags: list[str] = Field(default_factory=list)
    domains: list[str] = Field(default_factory=list)
    side_effects: SideEffects = "none"
    risk: RiskTier = "low"
    parameters: list[ToolParameter] = Field(default_factory=list)

    def input_schema(self) -> dict[str, Any]:
        """JSON-schema view of the parameters."""
        properties: dict[str, Any] = {}
        required: list[str] = []
        for p in self.parameters:
            properties[p.name] = {"type": p.type, "description": p.description}
            if p.required:
                required.append(p.name)
        return {"type": "object", "properties": properties, "required": required}


class TaskContext(BaseModel):
    """What the caller was doing when it reached for a tool."""

    prompt: str = ""
    domain: str = ""
    tags: list[str] = Field(default_factory=list)
    cell_id: str | None = None


class ToolContext(BaseModel):
    workspace_dir: Path = Path(".")
    task: TaskContext = Field(default_factory=TaskContext)


class ToolOutput(BaseModel):
    ok: bool
    data: Any = None
    error: str | None = None
    error_type: str | None = None
    latency_ms: float | None = None
