"""Policy knowledge — the learned state behind the risk engine.

Persisted as JSON. Missing or corrupt files fall back to the built-in seed
knowledge; partial files are merged over the defaults field by field.
"""

from __future__ import annotations

import logging
from pathlib import Path

import orjson
from pydantic import BaseModel, Field, ValidationError

from saia.exceptions import ConfigLoadError

_logger = logging.getLogger(__name__)

THRESHOLD_MIN = 0.4
THRESHOLD_MAX = 0.9

DEFAULT_RISK_TOKENS: dict[str, float] = {
    "rm": 0.5, "rf": 0.6, "format": 0.6, "shutdown": 0.6, "mkfs": 0.7,
    "drop": 0.6, "table": 0.5, "sudo": 0.5, "dd": 0.5, "dev": 0.4,
    "wipe": 0.6, "erase": 0.6, "exfiltrate": 0.7, "netcat": 0.6, "nc": 0.5,
    "passwd": 0.5, "shadow": 0.4, "keylogger": 0.7, "ransomware": 0.8,
}

DEFAULT_SEED_PHRASES = [
    "rm -rf /",
    "drop table",
    "format c:",
    "shutdown now",
    "dd if=/dev/",
    "mkfs",
    "netcat -e",
]

DEFAULT_HARD_BLOCK_PATTERNS = [
    # disk / filesystem destruction
    r"\brm\s+(?:-[a-z]+\s+)*-[a-z]*(?:r[a-z]*f|f[a-z]*r)[a-z]*\s+(?:/|~|\*)",
    r"\bmkfs(?:\.[a-z0-9]+)?\b",
    r"\bdd\s+if=\S+\s+of=/dev/",
    r"\bformat\s+[a-z]:",
    r"\bdrop\s+(?:table|database)\b",
    r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",
    # service shutdown
    r"\b(?:shutdown|poweroff|halt)\s+(?:-[a-z]+\s+)*(?:now|0)\b",
    r"\bsystemctl\s+(?:stop|disable|mask)\s+\S+",
    # privilege / security toggles
    r"\bcsrutil\s+disable\b",
    r"\bsetenforce\s+0\b",
    r"\bchmod\s+(?:-r\s+)?777\s+/",
    r"\bufw\s+disable\b",
    # reverse shells
    r"\b(?:nc|netcat|ncat)\b[^\n]*\s-e\s",
    r"\bbash\s+-i\s+>&\s*/dev/tcp/",
    r"/dev/tcp/\d{1,3}(?:\.\d{1,3}){3}/\d+",
]

DEFAULT_FULL_ACCESS_PHRASES = [
    "grant full disk access",
    "enable full disk access",
    "give full disk access",
    "grant root access",
    "give me root access",
    "grant admin privileges",
    "disable system integrity protection",
    "disable the firewall",
    "turn off antivirus",
]

DEFAULT_INTENT_WORDS = [
    "read", "show", "dump", "decrypt", "extract", "exfiltrate", "steal", "leak",
    "reveal", "print", "export", "copy", "crack", "harvest",
]

DEFAULT_TARGET_WORDS = [
    "password", "passwords", "secret", "secrets", "key", "keys", "token",
    "tokens", "credential", "credentials", "passwd", "shadow", "keychain",
    "wallet", "cookies", "ssh", "privkey",
]

DEFAULT_EXPLANATORY_MARKERS = [
    "explain", "why", "safe", "safely", "what is", "what does", "how does",
    "meaning", "educational", "understand", "learn about", "avoid", "prevent",
    "protect",
]


def _seed_ngrams(phrases: list[str], weight: float = 0.5) -> dict[str, float]:
    from saia.policy.engine import char_ngrams

    table: dict[str, float] = {}
    for phrase in phrases:
        for gram in char_ngrams(phrase):
            table[gram] = weight
    return table


class PolicyKnowledge(BaseModel):
    """Everything the policy engine learns or is seeded with."""

    version: int = 2
    risk_tokens: dict[str, float] = Field(default_factory=lambda: dict(DEFAULT_RISK_TOKENS))
    seed_phrases: list[str] = Field(default_factory=lambda: list(DEFAULT_SEED_PHRASES))
    threshold: float = 0.62
    hard_block_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_HARD_BLOCK_PATTERNS))
    full_access_phrases: list[str] = Field(default_factory=lambda: list(DEFAULT_FULL_ACCESS_PHRASES))
    intent_words: list[str] = Field(default_factory=lambda: list(DEFAULT_INTENT_WORDS))
    target_words: list[str] = Field(default_factory=lambda: list(DEFAULT_TARGET_WORDS))
    explanatory_markers: list[str] = Field(default_factory=lambda: list(DEFAULT_EXPLANATORY_MARKERS))
    proximity_window: int = 4
    fuzzy_threshold: float = 0.9
    phrase_threshold: float = 0.88
    ngram_weights: dict[str, float] = Field(default_factory=lambda: _seed_ngrams(DEFAULT_SEED_PHRASES))
    ngram_scale: float = 1.5
    max_ngrams: int = 20_000

    def normalized(self) -> PolicyKnowledge:
        """Clamp every bounded field in place and return self."""
        self.threshold = round(max(THRESHOLD_MIN, min(THRESHOLD_MAX, self.threshold)), 3)
        self.risk_tokens = {k: max(0.0, min(1.0, float(v))) for k, v in self.risk_tokens.items()}
        self.ngram_weights = {k: max(0.0, min(1.0, float(v))) for k, v in self.ngram_weights.items()}
        self.proximity_window = max(1, self.proximity_window)
        self.ngram_scale = max(0.0, self.ngram_scale)
        return self


class PolicyKnowledgeStore:
    """Loads and saves ``PolicyKnowledge`` at a JSON path (None = in-memory)."""

    def __init__(self, path: Path | str | None = None) -> None:
        self._path = Path(path) if path else None

    @property
    def path(self) -> Path | None:
        return self._path

    def read(self) -> PolicyKnowledge:
        """Strict read. Raises ConfigLoadError on missing or invalid data."""
        if self._path is None or not self._path.exists():
            raise ConfigLoadError(f"policy knowledge not found: {self._path}")
        try:
            raw = orjson.loads(self._path.read_bytes())
            if not isinstance(raw, dict):
                raise ConfigLoadError("policy knowledge must be a JSON object")
            return PolicyKnowledge(**raw).normalized()
        except (OSError, orjson.JSONDecodeError, ValidationError, TypeError) as e:
            raise ConfigLoadError(f"corrupt policy knowledge {self._path}: {e}") from e

    def load(self) -> PolicyKnowledge:
        """Read with fallback to seed defaults."""
        try:
            return self.read()
        except ConfigLoadError as e:
            if self._path is not None and self._path.exists():
                _logger.warning("Falling back to default policy knowledge: %s", e)
            return PolicyKnowledge()

    def save(self, knowledge: PolicyKnowledge) -> None:
        if self._path is None:
            return
        self.write_json(knowledge.model_dump_json(indent=2))

    def write_json(self, payload: str) -> None:
        """Atomically replace the file with an already serialized payload."""
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(payload, encoding="utf-8")
        tmp.replace(self._path)
