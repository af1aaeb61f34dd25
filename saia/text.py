"""Text normalization and similarity helpers.

Everything here is pure and dependency-free; it is used by the router
(tag matching), the policy engine (fuzzy rules), tool recommendation and
domain synthesis.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def canonicalize(text: str) -> str:
    """Lowercase, collapse non-alphanumerics to single hyphens, trim hyphens.

    >>> canonicalize("  Cell_Code Review!! ")
    'cell-code-review'
    """
    lower = (text or "").lower().strip()
    return _NON_ALNUM.sub("-", lower).strip("-")


def tokenize(text: str) -> list[str]:
    """Split canonicalized text into tokens."""
    canon = canonicalize(text)
    return [t for t in canon.split("-") if t]


def jaccard_index(a: Iterable[str], b: Iterable[str]) -> float:
    """Jaccard index over token sets; 0 when either side is empty."""
    set_a = a if isinstance(a, (set, frozenset)) else set(a)
    set_b = b if isinstance(b, (set, frozenset)) else set(b)
    if not set_a or not set_b:
        return 0.0
    inter = len(set_a & set_b)
    return inter / (len(set_a) + len(set_b) - inter)


def jaro_winkler(a: str, b: str) -> float:
    """Jaro-Winkler similarity in [0, 1], prefix bonus up to 4 chars."""
    a = (a or "").lower()
    b = (b or "").lower()
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0

    match_dist = max(0, max(len(a), len(b)) // 2 - 1)
    a_matches = [False] * len(a)
    b_matches = [False] * len(b)
    matches = 0
    for i, ch in enumerate(a):
        start = max(0, i - match_dist)
        end = min(i + match_dist + 1, len(b))
        for j in range(start, end):
            if b_matches[j] or b[j] != ch:
                continue
            a_matches[i] = b_matches[j] = True
            matches += 1
            break
    if matches == 0:
        return 0.0

    transpositions = 0
    k = 0
    for i, ch in enumerate(a):
        if not a_matches[i]:
            continue
        while not b_matches[k]:
            k += 1
        if ch != b[k]:
            transpositions += 1
        k += 1

    jaro = (
        matches / len(a)
        + matches / len(b)
        + (matches - transpositions / 2) / matches
    ) / 3

    prefix = 0
    while prefix < 4 and prefix < len(a) and prefix < len(b) and a[prefix] == b[prefix]:
        prefix += 1
    return jaro + prefix * 0.1 * (1 - jaro)


def levenshtein_sim(a: str, b: str) -> float:
    """Normalized Levenshtein similarity: 1 - distance / max_len."""
    a = a or ""
    b = b or ""
    if a == b:
        return 1.0
    n, m = len(a), len(b)
    if n == 0 or m == 0:
        return 0.0

    row = list(range(m + 1))
    for i in range(1, n + 1):
        prev, row[0] = row[0], i
        for j in range(1, m + 1):
            cur = row[j]
            cost = 0 if a[i - 1] == b[j - 1] else 1
            row[j] = min(row[j] + 1, row[j - 1] + 1, prev + cost)
            prev = cur
    return max(0.0, 1 - row[m] / max(n, m))


def fuzzy_sim(a: str, b: str) -> float:
    """Blend of Jaro-Winkler (0.6) and Levenshtein (0.4) similarity."""
    return 0.6 * jaro_winkler(a, b) + 0.4 * levenshtein_sim(a, b)
