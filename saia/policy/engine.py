"""Policy Engine — deterministic risk scoring with online learning.

A configured safety model has the final say when it answers. Otherwise the
local hard rules run first (each skipped for explanatory prompts), then the
continuous risk score is compared with the learned threshold.
"""

from __future__ import annotations

import asyncio
import logging
import re

from saia.policy.knowledge import (
    THRESHOLD_MAX,
    THRESHOLD_MIN,
    PolicyKnowledge,
    PolicyKnowledgeStore,
)
from saia.policy.safety_model import NullSafetyModel, SafetyModelAdapter
from saia.policy.schema import PolicyDecision
from saia.text import fuzzy_sim

_logger = logging.getLogger(__name__)

MAX_SCAN_CHARS = 4000
NGRAM_SIZES = (3, 4, 5)
HARD_BLOCK_RISK = 0.95
MAX_SCAN_PIECES = 400

_WS_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"[a-z0-9]+")
_PIECE_RE = re.compile(r"[a-z0-9@$]+")
_LEET = str.maketrans({"0": "o", "1": "i", "3": "e", "4": "a", "5": "s", "7": "t", "@": "a", "$": "s"})


def normalize_text(text: str) -> str:
    """Lowercase, collapse whitespace, truncate to the scan window."""
    return _WS_RE.sub(" ", text.lower()).strip()[:MAX_SCAN_CHARS]


def char_ngrams(text: str) -> set[str]:
    """Unique character 3/4/5-grams of the normalized text."""
    norm = normalize_text(text)
    grams: set[str] = set()
    for n in NGRAM_SIZES:
        for i in range(len(norm) - n + 1):
            grams.add(norm[i : i + n])
    return grams


def words(text: str) -> list[str]:
    return _WORD_RE.findall(text.lower())


class PolicyEngine:
    """Scores prompts for risk and adapts its knowledge from outcomes."""

    def __init__(
        self,
        store: PolicyKnowledgeStore | None = None,
        safety_model: SafetyModelAdapter | None = None,
    ) -> None:
        self._store = store or PolicyKnowledgeStore()
        self._knowledge = self._store.load()
        self._safety = safety_model or NullSafetyModel()
        self._save_lock = asyncio.Lock()
        self._compile()

    def _compile(self) -> None:
        self._block_res: list[re.Pattern[str]] = []
        for pattern in self._knowledge.hard_block_patterns:
            try:
                self._block_res.append(re.compile(pattern, re.IGNORECASE))
            except re.error as e:
                _logger.warning("Skipping invalid block pattern %r: %s", pattern, e)

    @property
    def knowledge(self) -> PolicyKnowledge:
        return self._knowledge

    @property
    def threshold(self) -> float:
        return self._knowledge.threshold

    # ── Hard rules ───────────────────────────────────────────────

    def is_explanatory(self, text: str) -> bool:
        lowered = normalize_text(text)
        tokens = set(words(lowered))
        for marker in self._knowledge.explanatory_markers:
            if " " in marker:
                if marker in lowered:
                    return True
            elif marker in tokens:
                return True
        return False

    def matches_hard_block(self, text: str) -> str | None:
        lowered = normalize_text(text)
        for rx in self._block_res:
            if rx.search(lowered):
                return rx.pattern
        return None

    def matches_full_access(self, text: str) -> str | None:
        lowered = normalize_text(text)
        for phrase in self._knowledge.full_access_phrases:
            if phrase in lowered:
                return phrase
        # fuzzy pass over same-length word windows catches light rewording
        toks = words(lowered)
        for phrase in self._knowledge.full_access_phrases:
            size = len(phrase.split())
            for i in range(len(toks) - size + 1):
                window = " ".join(toks[i : i + size])
                if fuzzy_sim(window, phrase) >= self._knowledge.phrase_threshold:
                    return phrase
        return None

    def _is_intent(self, token: str) -> bool:
        return token in self._knowledge.intent_words

    def _is_target(self, token: str) -> bool:
        return token in self._knowledge.target_words

    def secret_proximity(self, text: str) -> bool:
        """Intent word within the proximity window of a target word."""
        return self._proximity_hit(words(normalize_text(text)))

    def _proximity_hit(self, toks: list[str]) -> bool:
        window = self._knowledge.proximity_window
        intents = [i for i, t in enumerate(toks) if self._is_intent(t)]
        targets = [i for i, t in enumerate(toks) if self._is_target(t)]
        return any(0 < abs(i - j) <= window for i in intents for j in targets)

    def typo_variant(self, text: str) -> bool:
        """Typo-tolerant proximity rule over a character-window scan.

        Separators are stripped from the leet-normalized text, so "pass-word"
        and "p a s s w o r d" both collapse to "password". Windows of
        len(word) ± 1 characters that start and end on piece boundaries are
        fuzzy-matched against the intent and target vocabularies.
        """
        k = self._knowledge
        pieces = _PIECE_RE.findall(normalize_text(text).translate(_LEET))[:MAX_SCAN_PIECES]
        intents = self._window_hits(pieces, k.intent_words, k.fuzzy_threshold)
        if not intents:
            return False
        targets = self._window_hits(pieces, k.target_words, k.fuzzy_threshold)
        window = k.proximity_window
        for a_start, a_end in intents:
            for b_start, b_end in targets:
                if a_end < b_start:
                    gap = b_start - a_end
                elif b_end < a_start:
                    gap = a_start - b_end
                else:
                    continue
                if gap <= window:
                    return True
        return False

    @staticmethod
    def _window_hits(pieces: list[str], vocab: list[str], threshold: float) -> list[tuple[int, int]]:
        """(first, last) piece spans whose joined characters fuzzy-match a vocab word."""
        by_len: dict[int, list[str]] = {}
        for word in vocab:
            if len(word) >= 4:
                by_len.setdefault(len(word), []).append(word)
        if not by_len:
            return []
        longest = max(by_len) + 1
        hits = []
        for start in range(len(pieces)):
            joined = ""
            for end in range(start, len(pieces)):
                joined += pieces[end]
                if len(joined) > longest:
                    break
                n = len(joined)
                candidates = by_len.get(n - 1, []) + by_len.get(n, []) + by_len.get(n + 1, [])
                if any(joined == w or fuzzy_sim(joined, w) >= threshold for w in candidates):
                    hits.append((start, end))
                    break
        return hits

    # ── Continuous score ─────────────────────────────────────────

    def token_score(self, text: str) -> float:
        """Mean learned weight of the recognized risk tokens present."""
        table = self._knowledge.risk_tokens
        weights = [table[t] for t in words(normalize_text(text)) if t in table]
        return sum(weights) / len(weights) if weights else 0.0

    def proximity_score(self, text: str) -> float:
        toks = words(normalize_text(text))
        window = self._knowledge.proximity_window
        intents = [i for i, t in enumerate(toks) if self._is_intent(t)]
        targets = [i for i, t in enumerate(toks) if self._is_target(t)]
        total = 0.0
        for i in intents:
            for j in targets:
                d = abs(i - j)
                if 0 < d <= window:
                    total += 1 - (d - 1) / window
        return min(1.0, total / 2)

    def ngram_score(self, text: str) -> float:
        grams = char_ngrams(text)
        if not grams:
            return 0.0
        table = self._knowledge.ngram_weights
        mean = sum(table.get(g, 0.0) for g in grams) / len(grams)
        return min(1.0, self._knowledge.ngram_scale * mean)

    def score(self, text: str) -> float:
        """Continuous risk in [0, 1]; pure function of text and knowledge."""
        risk = (
            0.2 * self.token_score(text)
            + 0.45 * self.proximity_score(text)
            + 0.35 * self.ngram_score(text)
        )
        return round(max(0.0, min(1.0, risk)), 4)

    # ── Evaluation ───────────────────────────────────────────────

    def evaluate_rules(self, text: str) -> PolicyDecision:
        """Local heuristics only, first hard match wins."""
        risk = self.score(text)
        reason = self._hard_reason(text)
        if reason is not None:
            return PolicyDecision(passed=False, risk=max(risk, HARD_BLOCK_RISK), reason=reason)
        if risk >= self._knowledge.threshold:
            return PolicyDecision(passed=False, risk=risk, reason=f"risk={risk}")
        return PolicyDecision(passed=True, risk=risk)

    async def evaluate(self, text: str) -> PolicyDecision:
        """Safety model verdict when well-formed, otherwise local heuristics."""
        verdict = await self._safety.classify(text)
        if verdict is not None:
            return verdict
        return self.evaluate_rules(text)

    def _hard_reason(self, text: str) -> str | None:
        if self.is_explanatory(text):
            return None
        if self.matches_hard_block(text):
            return "hard_block"
        if self.matches_full_access(text):
            return "full_access_request"
        if self.secret_proximity(text):
            return "secret_extraction"
        if self.typo_variant(text):
            return "secret_extraction_variant"
        return None

    # ── Learning ─────────────────────────────────────────────────

    def learn(self, text: str, decision: PolicyDecision, persist: bool = True) -> None:
        """Nudge token, n-gram and threshold state toward the decision."""
        k = self._knowledge
        toks = set(words(normalize_text(text)))
        grams = char_ngrams(text)
        if not decision.passed:
            for t in toks:
                w = min(1.0, k.risk_tokens.get(t, 0.0) + 0.05 + 0.05 * decision.risk)
                k.risk_tokens[t] = round(w, 3)
            step = 0.02 + 0.02 * decision.risk
            for g in grams:
                k.ngram_weights[g] = min(1.0, k.ngram_weights.get(g, 0.0) + step)
            k.threshold -= 0.01
        else:
            for t in toks & k.risk_tokens.keys():
                w = round(k.risk_tokens[t] - 0.005, 3)
                if w <= 0:
                    del k.risk_tokens[t]
                else:
                    k.risk_tokens[t] = w
            for g in grams & k.ngram_weights.keys():
                w = k.ngram_weights[g] - 0.002
                if w <= 0:
                    del k.ngram_weights[g]
                else:
                    k.ngram_weights[g] = w
            k.threshold += 0.002
        k.threshold = round(max(THRESHOLD_MIN, min(THRESHOLD_MAX, k.threshold)), 4)
        self._prune_ngrams()
        if persist:
            self._store.save(k)

    async def alearn(self, text: str, decision: PolicyDecision) -> None:
        """Learn in memory, then write the knowledge file from a worker thread.

        The snapshot is serialized on the event loop so later requests can
        keep mutating the tables; writes are serialized in arrival order.
        """
        self.learn(text, decision, persist=False)
        if self._store.path is None:
            return
        payload = self._knowledge.model_dump_json(indent=2)
        async with self._save_lock:
            await asyncio.to_thread(self._store.write_json, payload)

    def _prune_ngrams(self) -> None:
        table = self._knowledge.ngram_weights
        excess = len(table) - self._knowledge.max_ngrams
        if excess <= 0:
            return
        for gram, _ in sorted(table.items(), key=lambda kv: kv[1])[:excess]:
            del table[gram]

    def dump(self) -> dict:
        return self._knowledge.model_dump()

    async def aclose(self) -> None:
        await self._safety.aclose()
