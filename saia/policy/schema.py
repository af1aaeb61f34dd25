"""Policy schema — decisions and what tools a request may use."""

from __future__ import annotations

from pydantic import BaseModel, Field


class PolicyDecision(BaseModel):
    """Outcome of evaluating one prompt."""

    passed: bool
    risk: float = Field(default=0.0, ge=0.0, le=1.0)
    reason: str | None = None


class ToolPolicy(BaseModel):
    """Tool access policy applied by the governed runner.

    The default policy allows every tool without network side effects;
    network access must be opted into explicitly.
    """

    allowed_tools: list[str] = Field(
        default_factory=lambda: ["*"],
        description="Tool ids that may run. ['*'] = all.",
    )
    denied_tools: list[str] = Field(
        default_factory=list,
        description="Tool ids that may NEVER run.",
    )
    allow_network: bool = False
    read_only: bool = False  # If True, blocks all write tools

    def denial_reason(self, tool_id: str, side_effects: str) -> str | None:
        """Why the tool is refused, or None if it may run."""
        if tool_id in self.denied_tools:
            return f"tool '{tool_id}' is denied"
        if side_effects == "network" and not self.allow_network:
            return f"tool '{tool_id}' needs network access, which is not enabled"
        if self.read_only and side_effects == "write":
            return f"tool '{tool_id}' writes, policy is read-only"
        if "*" in self.allowed_tools or tool_id in self.allowed_tools:
            return None
        return f"tool '{tool_id}' is not in the allowlist"

    def can_use_tool(self, tool_id: str, side_effects: str = "none") -> bool:
        return self.denial_reason(tool_id, side_effects) is None
