"""Cell — a role-specialized request handler around the LLM backend.

A cell's identity (id, capability tags, system prompt) never changes. Its
parameter block (generation temperature, short conversational memory) is
owned by the cell: memory is updated under a per-cell lock and temperature
only moves through ``adjust_parameters`` (driven by the feedback controller).
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque

from pydantic import BaseModel, ConfigDict, Field

from saia.exceptions import BackendError
from saia.llm.base import BaseLLMProvider, LLMMessage
from saia.text import fuzzy_sim, jaccard_index, tokenize

_logger = logging.getLogger(__name__)

PRECISION_CAPABILITIES = frozenset({"code", "analysis", "technical"})

CLASSIFY_HINT = (
    "\n\nAt the end, output a JSON object with keys domain (1-2 words) "
    "and tags (3-6 short tags)."
)


class CellIdentity(BaseModel):
    """Immutable identity of a cell."""

    model_config = ConfigDict(frozen=True)

    id: str
    capabilities: tuple[str, ...] = ()
    system_prompt: str = "You are a helpful AI assistant."
    max_tokens: int = 300
    memory_size: int = 6


class CellParameters(BaseModel):
    """Mutable generation parameters owned by a cell."""

    temperature: float = 0.6
    memory: list[tuple[str, str]] = Field(default_factory=list)


class Cell:
    """Wraps the backend with a role prompt, tags and bounded memory."""

    def __init__(
        self,
        identity: CellIdentity,
        llm: BaseLLMProvider | None = None,
        temperature: float = 0.6,
        timeout_s: float = 30.0,
    ) -> None:
        self.identity = identity.model_copy(
            update={"capabilities": tuple(c.lower() for c in identity.capabilities)}
        )
        self._llm = llm
        self._timeout_s = timeout_s
        self._temperature = temperature
        self._memory: deque[tuple[str, str]] = deque(maxlen=max(0, identity.memory_size))
        self._memory_lock = asyncio.Lock()
        self._tag_tokens = {t for cap in self.identity.capabilities for t in tokenize(cap)}

    @property
    def id(self) -> str:
        return self.identity.id

    @property
    def capabilities(self) -> tuple[str, ...]:
        return self.identity.capabilities

    @property
    def temperature(self) -> float:
        return self._temperature

    @property
    def is_precision_focused(self) -> bool:
        return any(cap in PRECISION_CAPABILITIES for cap in self.capabilities)

    def parameters(self) -> CellParameters:
        """Snapshot of the mutable parameter block."""
        return CellParameters(temperature=self._temperature, memory=list(self._memory))

    # ── Acting ───────────────────────────────────────────────────

    async def act(self, prompt: str) -> str:
        """Answer a prompt. Raises BackendError if the backend fails or times out.

        Memory is appended under the cell lock; the backend call itself runs
        outside the lock so concurrent requests to the same cell overlap.
        """
        async with self._memory_lock:
            self._remember("user", prompt)
            history = list(self._memory)

        if self._llm is None:
            reply = f"STUB({self.id}): {prompt}"
        else:
            messages = [LLMMessage(role=role, content=content) for role, content in history[:-1]]
            messages.append(LLMMessage(role="user", content=prompt + CLASSIFY_HINT))
            try:
                response = await asyncio.wait_for(
                    self._llm.complete(
                        messages=messages,
                        system=self.identity.system_prompt,
                        temperature=self._temperature,
                        max_tokens=self.identity.max_tokens,
                    ),
                    timeout=self._timeout_s,
                )
            except asyncio.TimeoutError as e:
                raise BackendError(f"backend timed out after {self._timeout_s}s") from e
            except Exception as e:
                raise BackendError(f"{type(e).__name__}: {e}") from e
            reply = (response.content or "").strip() or "(no content)"

        async with self._memory_lock:
            self._remember("assistant", reply)
        return reply

    def _remember(self, role: str, content: str) -> None:
        # eviction works one message at a time; keep history opening on a user turn
        self._memory.append((role, content))
        while self._memory and self._memory[0][0] != "user":
            self._memory.popleft()

    # ── Matching & tuning ────────────────────────────────────────

    def match_tags(self, text: str) -> float:
        """Score how well a prompt matches this cell's capability tags (0..1)."""
        if not self._tag_tokens:
            return 0.0
        words = set(tokenize(text))
        if not words:
            return 0.0
        jac = jaccard_index(words, self._tag_tokens)
        best_fuzzy = max(fuzzy_sim(t, w) for t in self._tag_tokens for w in words)
        return min(1.0, 0.7 * jac + 0.3 * best_fuzzy)

    def adjust_parameters(self, confidence: float, min_temp: float = 0.1, max_temp: float = 0.9) -> float:
        """Map a confidence in [0, 1] onto the temperature range.

        Precision cells become more deterministic as confidence grows; all
        other cells become more exploratory. Returns the new temperature.
        """
        confidence = max(0.0, min(1.0, confidence))
        span = max_temp - min_temp
        if self.is_precision_focused:
            target = max_temp - confidence * span
        else:
            target = min_temp + confidence * span
        self._temperature = max(min_temp, min(max_temp, round(target, 2)))
        _logger.debug("Cell %s temperature -> %.2f", self.id, self._temperature)
        return self._temperature

    def __repr__(self) -> str:
        return f"Cell(id={self.id!r}, tags={list(self.capabilities)}, temperature={self._temperature})"
