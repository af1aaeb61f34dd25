"""Evolution state persistence — the snapshot that survives restarts.

Captures the last observed global performance, the active pattern id,
per-cell priors, the bandit state, synthesized domains and the recent
request window. A missing or unreadable file leaves
the defaults in place.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from saia.adaptation.router import BanditState
from saia.cells.factory import DomainSignature
from saia.metrics.store import RequestEvent
from saia.types import utcnow_iso

_logger = logging.getLogger(__name__)


class CellPrior(BaseModel):
    success_ema: float = 0.5
    router_confidence: float = 0.0


class SnapshotData(BaseModel):
    last_saved: str = Field(default_factory=utcnow_iso)
    last_perf: float = 0.5
    non_improving_cycles: int = 0
    active_pattern_id: str | None = None
    cells: dict[str, CellPrior] = Field(default_factory=dict)
    bandit: BanditState | None = None
    domains: list[DomainSignature] = Field(default_factory=list)
    recent: list[RequestEvent] = Field(default_factory=list)


class EvolutionState:
    """Loads and saves ``SnapshotData``; ``save_path=None`` keeps it in memory."""

    def __init__(self, save_path: Path | str | None = None) -> None:
        self._path = Path(save_path) if save_path else None
        self._data = SnapshotData()

    @property
    def data(self) -> SnapshotData:
        return self._data

    @property
    def path(self) -> Path | None:
        return self._path

    def save(self) -> None:
        """Persist current state to disk."""
        if self._path is None:
            return
        self._data.last_saved = utcnow_iso()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(self._data.model_dump_json(indent=2), encoding="utf-8")
        _logger.debug("Evolution state saved to %s", self._path)

    def load(self) -> bool:
        """Load state from disk. Returns True if loaded successfully."""
        if self._path is None or not self._path.exists():
            return False
        try:
            self._data = SnapshotData.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as e:
            _logger.warning("Failed to load evolution state: %s", e)
            self._data = SnapshotData()
            return False
        _logger.info(
            "Loaded evolution state: perf=%.3f active=%s cells=%d",
            self._data.last_perf,
            self._data.active_pattern_id,
            len(self._data.cells),
        )
        return True
