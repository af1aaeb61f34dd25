"""Audit Trail — append-only signed record of actions, tool calls and evolution.

Every entry is HMAC-signed before it is written. Entries go to three NDJSON
streams under the logs directory and are mirrored in memory for queries.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import orjson
from pydantic import BaseModel, Field

from saia.exceptions import SignatureMismatchError
from saia.governance.signing import (
    ActionEvent,
    CellEvent,
    EvolutionEvent,
    SignedEvent,
    ToolEvent,
    verify_payload,
)

_logger = logging.getLogger(__name__)

STREAMS = {
    "action": "actions.jsonl",
    "tool": "tool_events.jsonl",
    "cell": "pattern_events.jsonl",
    "evolution": "pattern_events.jsonl",
}


class VerifyReport(BaseModel):
    stream: str
    checked: int = 0
    invalid: list[int] = Field(default_factory=list)  # 1-based line numbers

    @property
    def ok(self) -> bool:
        return not self.invalid


class AuditTrail:
    """Signs and appends events. ``logs_dir=None`` keeps everything in memory."""

    def __init__(self, logs_dir: Path | str | None = None, secret: str = "") -> None:
        self._dir = Path(logs_dir) if logs_dir else None
        self._secret = secret
        self._entries: list[SignedEvent] = []
        self._lock = asyncio.Lock()

    @property
    def secret_configured(self) -> bool:
        return bool(self._secret)

    def approve_evolution(self) -> bool:
        """Structural changes need an explicitly configured shared secret."""
        return self.secret_configured

    def stream_path(self, kind: str) -> Path | None:
        if self._dir is None:
            return None
        return self._dir / STREAMS[kind]

    async def record(self, event: SignedEvent) -> SignedEvent:
        """Sign and append one event (immutable append)."""
        signed = event.signed(self._secret)
        async with self._lock:
            self._entries.append(signed)
            path = self.stream_path(signed.kind)
            if path is not None:
                try:
                    path.parent.mkdir(parents=True, exist_ok=True)
                    with path.open("ab") as fh:
                        fh.write(orjson.dumps(signed.model_dump(mode="json")) + b"\n")
                except OSError as e:
                    _logger.warning("Audit append to %s failed: %s", path, e)
        return signed

    async def log_action(self, **fields: Any) -> ActionEvent:
        """Convenience: log a served request."""
        return await self.record(ActionEvent(**fields))

    async def log_tool(self, **fields: Any) -> ToolEvent:
        """Convenience: log a tool execution."""
        return await self.record(ToolEvent(**fields))

    async def log_cell(self, action: str, cell_id: str, tags: list[str] | None = None, reason: str = "") -> CellEvent:
        """Convenience: log a cell created or removed."""
        return await self.record(CellEvent(action=action, cell_id=cell_id, tags=tags or [], reason=reason))

    async def log_evolution(self, **fields: Any) -> EvolutionEvent:
        """Convenience: log an evolution decision."""
        return await self.record(EvolutionEvent(**fields))

    async def query(self, kind: str = "", limit: int = 50) -> list[SignedEvent]:
        """Query in-memory entries, most recent first."""
        results = self._entries
        if kind:
            results = [e for e in results if e.kind == kind]
        return list(reversed(results))[:limit]

    async def count(self) -> int:
        return len(self._entries)

    def read_stream(self, kind: str, limit: int = 50) -> list[dict[str, Any]]:
        """Persisted entries of one kind, most recent first. Unparseable lines are skipped."""
        path = self.stream_path(kind)
        if path is None or not path.exists():
            return [e.model_dump(mode="json") for e in reversed(self._entries) if e.kind == kind][:limit]
        rows: list[dict[str, Any]] = []
        with path.open("rb") as fh:
            for line in fh:
                try:
                    row = orjson.loads(line)
                except orjson.JSONDecodeError:
                    continue
                if isinstance(row, dict) and row.get("kind") == kind:
                    rows.append(row)
        return list(reversed(rows))[:limit]

    def verify(self, kind: str, strict: bool = False) -> VerifyReport:
        """Re-check every signature in a stream file.

        With ``strict`` the first bad line raises SignatureMismatchError.
        Lines that are not JSON objects count as invalid.
        """
        path = self.stream_path(kind)
        report = VerifyReport(stream=STREAMS[kind])
        if path is None or not path.exists():
            return report
        with path.open("rb") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                report.checked += 1
                try:
                    payload = orjson.loads(line)
                except orjson.JSONDecodeError:
                    payload = None
                if isinstance(payload, dict) and verify_payload(payload, self._secret):
                    continue
                if strict:
                    raise SignatureMismatchError(f"{path.name}:{lineno} has an invalid signature")
                report.invalid.append(lineno)
        return report

    def __repr__(self) -> str:
        return f"AuditTrail(entries={len(self._entries)})"
