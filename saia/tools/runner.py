"""Governed Tool Runner — policy check, timed execution, signed audit, learning.

Lookup and policy failures come back as ``ToolOutput(ok=False)`` with the
error class name in ``error_type``; the runner itself never raises for a
single tool call.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

from saia.exceptions import ToolExecutionError, ToolNotFoundError, ToolPolicyDeniedError
from saia.governance.audit import AuditTrail
from saia.governance.signing import sha256_hex
from saia.policy.schema import ToolPolicy
from saia.tools.registry import ToolRegistry
from saia.tools.schema import TaskContext, ToolContext, ToolOutput

_logger = logging.getLogger(__name__)


def _failure(exc: Exception, latency_ms: float | None = None) -> ToolOutput:
    return ToolOutput(ok=False, error=str(exc), error_type=type(exc).__name__, latency_ms=latency_ms)


class GovernedToolRunner:
    def __init__(
        self,
        registry: ToolRegistry,
        audit: AuditTrail,
        policy: ToolPolicy | None = None,
        workspace_dir: Path | str = ".",
    ) -> None:
        self._registry = registry
        self._audit = audit
        self._policy = policy or ToolPolicy()
        self._workspace = Path(workspace_dir)

    @property
    def policy(self) -> ToolPolicy:
        return self._policy

    async def run(self, tool_id: str, tool_input: dict[str, Any] | None = None, task: TaskContext | None = None) -> ToolOutput:
        tool_input = tool_input or {}
        task = task or TaskContext()
        try:
            spec, handler = self._registry.get(tool_id)
        except ToolNotFoundError as e:
            return _failure(e)

        reason = self._policy.denial_reason(spec.id, spec.side_effects)
        if reason is not None:
            _logger.info("Tool %s denied: %s", tool_id, reason)
            return _failure(ToolPolicyDeniedError(reason))

        ctx = ToolContext(workspace_dir=self._workspace, task=task)
        start = time.monotonic()
        try:
            out = await handler(tool_input, ctx)
        except ToolExecutionError as e:
            out = _failure(e)
        except Exception as e:
            _logger.warning("Tool %s failed: %s", tool_id, e)
            out = _failure(ToolExecutionError(f"{type(e).__name__}: {e}"))
        latency_ms = round((time.monotonic() - start) * 1000, 1)
        out = out.model_copy(update={"latency_ms": latency_ms})
        if not out.ok and out.error_type is None:
            out.error_type = ToolExecutionError.__name__

        await self._audit.log_tool(
            tool_id=tool_id,
            input_hash=sha256_hex(tool_input),
            ok=out.ok,
            error=out.error,
            latency_ms=latency_ms,
            cell_id=task.cell_id,
        )
        self._registry.record_outcome(tool_id, out.ok, latency_ms, task)
        return out
