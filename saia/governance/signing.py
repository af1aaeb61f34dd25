"""Event signing — HMAC-SHA256 over a canonical JSON payload.

The canonical form is orjson with sorted keys over every field except the
signature fields themselves, so a record can be re-verified after a JSON
round trip.
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Any

import orjson
from pydantic import BaseModel, Field

from saia.types import new_id, utcnow_iso

SIGNATURE_ALGO = "HMAC-SHA256"
DEV_SECRET = "dev-secret"
_SIGNATURE_FIELDS = frozenset({"signature", "signature_algo"})


def canonical_payload(payload: dict[str, Any]) -> bytes:
    body = {k: v for k, v in payload.items() if k not in _SIGNATURE_FIELDS}
    return orjson.dumps(body, option=orjson.OPT_SORT_KEYS)


def sign_payload(payload: dict[str, Any], secret: str) -> str:
    key = (secret or DEV_SECRET).encode()
    return hmac.new(key, canonical_payload(payload), hashlib.sha256).hexdigest()


def verify_payload(payload: dict[str, Any], secret: str) -> bool:
    signature = payload.get("signature")
    if not isinstance(signature, str):
        return False
    return hmac.compare_digest(signature, sign_payload(payload, secret))


def sha256_hex(data: str | bytes | dict | list | None) -> str:
    """Stable content hash used for prompts, responses and tool inputs."""
    if data is None:
        data = b""
    elif isinstance(data, (dict, list)):
        data = orjson.dumps(data, option=orjson.OPT_SORT_KEYS)
    elif isinstance(data, str):
        data = data.encode()
    return hashlib.sha256(data).hexdigest()


class SignedEvent(BaseModel):
    """Base for every record written to the audit trail."""

    id: str = Field(default_factory=new_id)
    kind: str = ""
    timestamp: str = Field(default_factory=utcnow_iso)
    signature: str = ""
    signature_algo: str = SIGNATURE_ALGO

    def signed(self, secret: str) -> SignedEvent:
        """Return a copy carrying a fresh signature."""
        payload = self.model_dump(mode="json")
        return self.model_copy(update={"signature": sign_payload(payload, secret)})

    def verify(self, secret: str) -> bool:
        return verify_payload(self.model_dump(mode="json"), secret)


class ActionEvent(SignedEvent):
    kind: str = "action"
    request_id: str
    cell_id: str
    prompt_hash: str
    response_hash: str = ""
    policy_passed: bool = True
    policy_risk: float = 0.0
    policy_reason: str | None = None
    router_strategy: str = ""
    router_confidence: float = 0.0
    adaptation_reason: str = ""
    latency_ms: float = 0.0
    success: bool = False


class ToolEvent(SignedEvent):
    kind: str = "tool"
    tool_id: str
    input_hash: str
    ok: bool
    error: str | None = None
    latency_ms: float = 0.0
    cell_id: str | None = None


class CellEvent(SignedEvent):
    """Cell created or removed by domain synthesis."""

    kind: str = "cell"
    action: str  # "created" | "removed"
    cell_id: str
    tags: list[str] = Field(default_factory=list)
    reason: str = ""


class EvolutionEvent(SignedEvent):
    kind: str = "evolution"
    decision: str  # "commit" | "rollback" | "skip"
    from_pattern: str | None = None
    to_pattern: str | None = None
    delta_v: float | None = None
    pre_perf: float = 0.0
    post_perf: float = 0.0
    non_improving_cycles: int = 0
    reason: str = ""
