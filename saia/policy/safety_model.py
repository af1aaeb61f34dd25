"""Safety model adapters — optional external verdicts for the policy engine.

An adapter returns a ``PolicyDecision`` when the remote model gave a
well-formed answer and ``None`` otherwise, in which case the engine falls
back to its local heuristics.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

import httpx
import orjson

from saia.policy.schema import PolicyDecision

_logger = logging.getLogger(__name__)


class SafetyModelAdapter(ABC):
    """Capability interface for an external prompt classifier."""

    name: str = "safety-model"

    @abstractmethod
    async def classify(self, text: str) -> PolicyDecision | None:
        ...

    async def aclose(self) -> None:
        return None


class NullSafetyModel(SafetyModelAdapter):
    """No external model configured. Always defers to local rules."""

    name = "null"

    async def classify(self, text: str) -> PolicyDecision | None:
        return None


def _clamp01(value: Any, fallback: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    return max(0.0, min(1.0, float(value)))


def parse_verdict(data: Any) -> PolicyDecision | None:
    """Map a raw JSON verdict onto a decision. None when malformed.

    Accepts ``allowed`` or ``passed`` booleans, or ``blocked: true``; risk
    from ``risk`` or ``score``; reason from ``reason`` or ``explanation``.
    """
    if not isinstance(data, dict):
        return None
    if isinstance(data.get("allowed"), bool):
        allowed = data["allowed"]
    elif isinstance(data.get("passed"), bool):
        allowed = data["passed"]
    elif data.get("blocked") is True:
        allowed = False
    else:
        return None
    raw_risk = data.get("risk", data.get("score"))
    risk = _clamp01(raw_risk, 0.05 if allowed else 0.99)
    reason = data.get("reason") or data.get("explanation") or ("llm_allow" if allowed else "llm_block")
    return PolicyDecision(passed=allowed, risk=risk, reason=str(reason))


class HttpSafetyModel(SafetyModelAdapter):
    """POSTs the prompt to a classifier endpoint and parses its verdict.

    Timeouts are retried up to ``max_retries`` attempts (1 to 3); any other
    failure or a malformed body yields None straight away.
    """

    name = "safety-llm"

    def __init__(
        self,
        endpoint: str,
        api_key: str = "",
        model: str = "",
        timeout_s: float = 1.2,
        max_retries: int = 2,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._model = model
        self._max_retries = max(1, min(3, max_retries))
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        if model:
            headers["X-Policy-Model"] = model
        self._client = httpx.AsyncClient(
            timeout=max(0.2, timeout_s), headers=headers, transport=transport,
        )

    async def classify(self, text: str) -> PolicyDecision | None:
        body = orjson.dumps({"prompt": text, "model": self._model or None})
        for attempt in range(1, self._max_retries + 1):
            try:
                resp = await self._client.post(self._endpoint, content=body)
            except httpx.TimeoutException:
                _logger.debug("Safety model timeout (attempt %d/%d)", attempt, self._max_retries)
                continue
            except httpx.HTTPError as e:
                _logger.warning("Safety model request failed: %s", e)
                return None
            if resp.status_code >= 400:
                _logger.debug("Safety model HTTP %d (attempt %d)", resp.status_code, attempt)
                continue
            try:
                data = orjson.loads(resp.content)
            except orjson.JSONDecodeError:
                return None
            return parse_verdict(data)
        return None

    async def aclose(self) -> None:
        await self._client.aclose()
