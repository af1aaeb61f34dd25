"""Pattern Registry — dispatch patterns and the active-pattern pointer.

A pattern is a named subset of cells plus an optional directed role graph.
The registry is persisted as JSON; a missing or corrupt file falls back to
the built-in default list.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from saia.exceptions import PatternNotFoundError

_logger = logging.getLogger(__name__)

W_NODES = 1.0
W_EDGES = 1.0
W_DEPTH = 1.0
W_ROLES = 0.5


class PatternSpec(BaseModel):
    """Immutable dispatch pattern."""

    model_config = ConfigDict(frozen=True)

    id: str
    cells: tuple[str, ...] = ()
    router: str = "success_rate"
    tags: tuple[str, ...] = ()
    edges: tuple[tuple[str, str], ...] = ()
    roles: tuple[str, ...] = ()


class RegistryFile(BaseModel):
    version: int = 1
    patterns: list[PatternSpec] = Field(default_factory=list)
    default: str | None = None


def default_registry() -> RegistryFile:
    return RegistryFile(
        patterns=[
            PatternSpec(id="solo", cells=("cell-base",), router="success_rate"),
            PatternSpec(id="bandit-pool", cells=(), router="rl_bandit"),
        ],
        default="solo",
    )


def longest_path(edges: tuple[tuple[str, str], ...] | list[tuple[str, str]]) -> int:
    """Edge count of the longest chain in the directed graph (0 if no edges).

    Memoized DFS; nodes on the current DFS stack are treated as dead ends so
    a cycle cannot recurse forever.
    """
    graph: dict[str, list[str]] = {}
    for u, v in edges:
        graph.setdefault(u, []).append(v)

    memo: dict[str, int] = {}
    on_stack: set[str] = set()

    def dfs(node: str) -> int:
        if node in memo:
            return memo[node]
        if node in on_stack:
            return 0
        on_stack.add(node)
        best = 0
        for nxt in graph.get(node, []):
            if nxt in on_stack:
                continue
            best = max(best, 1 + dfs(nxt))
        on_stack.discard(node)
        memo[node] = best
        return best

    return max((dfs(n) for n in graph), default=0)


def pattern_complexity(pattern: PatternSpec) -> float:
    """w1*|cells| + w2*|edges| + w3*longestPath + w4*|roles|."""
    return (
        W_NODES * len(pattern.cells)
        + W_EDGES * len(pattern.edges)
        + W_DEPTH * longest_path(pattern.edges)
        + W_ROLES * len(pattern.roles)
    )


class PatternRegistry:
    """Holds all patterns plus a single nullable active pointer."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path else None
        self._file = default_registry()
        self._active_id: str | None = self._file.default
        if self._path is not None:
            self.load()

    def load(self) -> bool:
        """Load from disk. Returns False (keeping defaults) when unavailable."""
        if self._path is None or not self._path.exists():
            return False
        try:
            data = RegistryFile.model_validate_json(self._path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as e:
            _logger.warning("Failed to load pattern registry %s: %s", self._path, e)
            return False
        self._file = data
        ids = {p.id for p in data.patterns}
        if data.default in ids:
            self._active_id = data.default
        else:
            self._active_id = data.patterns[0].id if data.patterns else None
        _logger.info("Loaded %d patterns (active=%s)", len(data.patterns), self._active_id)
        return True

    def save(self) -> None:
        if self._path is None:
            return
        self._file.default = self._active_id
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(self._file.model_dump_json(indent=2), encoding="utf-8")

    # ── Queries ──────────────────────────────────────────────────

    def list_patterns(self) -> list[PatternSpec]:
        return list(self._file.patterns)

    def get(self, pattern_id: str) -> PatternSpec | None:
        return next((p for p in self._file.patterns if p.id == pattern_id), None)

    @property
    def active_id(self) -> str | None:
        return self._active_id

    def active(self) -> PatternSpec | None:
        return self.get(self._active_id) if self._active_id else None

    def set_active(self, pattern_id: str | None) -> None:
        if pattern_id is not None and self.get(pattern_id) is None:
            raise PatternNotFoundError(f"Pattern '{pattern_id}' not found")
        self._active_id = pattern_id

    def register(self, pattern: PatternSpec) -> None:
        """Append a new pattern. Existing patterns are never rewritten."""
        if self.get(pattern.id) is not None:
            raise ValueError(f"Pattern '{pattern.id}' already registered")
        self._file.patterns.append(pattern)

    def active_complexity(self) -> float:
        p = self.active()
        return pattern_complexity(p) if p else 0.0

    # ── Evolution candidates ─────────────────────────────────────

    def synthesize_candidate(self) -> PatternSpec:
        """Pick the next pattern to try.

        Prefers the least complex pattern that is strictly more complex than
        the active one; otherwise advances cyclically through the list.
        """
        patterns = self._file.patterns
        if not patterns:
            raise PatternNotFoundError("No patterns available to synthesize")
        current = self.active_complexity()
        higher = [p for p in patterns if pattern_complexity(p) > current]
        if higher:
            return min(higher, key=pattern_complexity)
        idx = next((i for i, p in enumerate(patterns) if p.id == self._active_id), 0)
        return patterns[(idx + 1) % len(patterns)]

    def __repr__(self) -> str:
        return f"PatternRegistry(patterns={len(self._file.patterns)}, active={self._active_id!r})"
