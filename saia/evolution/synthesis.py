"""Domain synthesis — proposes new cells from traffic and flags redundant ones.

``discover`` mines recent request events. Domains the model suggested are
preferred (and weighted x3 in the frequency table); frequent content tokens
backfill the remaining slots. ``find_redundant_cells`` keeps the pool from
growing without bound by pairing near-duplicate cells.
"""

from __future__ import annotations

import re
from typing import Iterable

from pydantic import BaseModel

from saia.cells.cell import Cell
from saia.cells.factory import DomainSignature
from saia.metrics.store import CellStat, RequestEvent
from saia.text import canonicalize, fuzzy_sim, jaccard_index, tokenize

STOPWORDS = frozenset(
    """
    the a an and or but of in on for to with by is are was were be as at it
    this that these those from into over about how what why which when who
    whom because than then there here you your we our they their i me my he
    she him her his hers them us do does did can could should would will just
    not no yes if else let make using use used based like also more most very
    much many please
    """.split()
)

_WEAK_SUFFIX_RE = re.compile(
    r"-(?:basics|beginner|beginners|intro|introduction|guide|guides|tutorial|"
    r"tutorials|fundamentals|overview)$"
)
_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")
SUGGESTED_WEIGHT = 3
MAX_TAGS = 12


class MergeThresholds(BaseModel):
    min_name_sim: float = 0.88
    min_tag_jaccard: float = 0.5
    min_obs: int = 5


def content_tokens(text: str) -> list[str]:
    """Lowercased words of 3+ characters that are not stopwords."""
    cleaned = _NON_ALNUM_RE.sub(" ", text.lower())
    return [w for w in cleaned.split() if len(w) >= 3 and w not in STOPWORDS]


def normalize_domain(raw: str) -> str:
    return _WEAK_SUFFIX_RE.sub("", canonicalize(raw)).strip("-")


def specialist_prompt(domain: str) -> str:
    return (
        f'You specialize in tasks related to "{domain}". '
        "Provide focused, expert, and concise responses."
    )


def discover(
    events: Iterable[RequestEvent],
    max_new: int = 3,
    min_count: int = 3,
    min_suggested: int = 2,
) -> list[DomainSignature]:
    counts: dict[str, int] = {}
    suggested: dict[str, tuple[int, list[str]]] = {}

    for event in events:
        if event.domain and event.domain.strip():
            domain = normalize_domain(event.domain)
            if not domain:
                continue
            counts[domain] = counts.get(domain, 0) + SUGGESTED_WEIGHT
            n, tags = suggested.get(domain, (0, []))
            tags.extend(t.lower() for t in event.tags if t.lower() not in tags)
            suggested[domain] = (n + 1, tags)
            continue
        for tok in content_tokens(f"{event.prompt or ''} {event.response or ''}"):
            counts[tok] = counts.get(tok, 0) + 1

    sigs: list[DomainSignature] = []
    for domain, (n, raw_tags) in sorted(suggested.items(), key=lambda kv: -kv[1][0]):
        if n < min_suggested or len(sigs) >= max_new:
            continue
        words = tokenize(domain)
        merged: list[str] = []
        for tag in [*words, *(w for t in raw_tags for w in tokenize(t))]:
            if tag not in merged:
                merged.append(tag)
        sigs.append(
            DomainSignature(
                id=domain,
                tags=merged[:MAX_TAGS] or words,
                system_prompt=specialist_prompt(domain),
            )
        )

    frequent = sorted(
        ((tok, n) for tok, n in counts.items() if n >= min_count),
        key=lambda kv: -kv[1],
    )[:max_new]
    for tok, _ in frequent:
        if len(sigs) >= max_new:
            break
        sig_id = canonicalize(tok)
        if any(s.id == sig_id for s in sigs):
            continue
        base = tokenize(tok)
        tags = list(dict.fromkeys(v for t in base for v in (t, f"{t}s", f"{t}ing", f"{t}ed")))
        sigs.append(DomainSignature(id=sig_id, tags=tags, system_prompt=specialist_prompt(tok)))
    return sigs


def _beats(a: CellStat, b: CellStat) -> bool:
    """Higher SAI wins, then lower latency, then higher count."""
    if a.sai != b.sai:
        return a.sai > b.sai
    if a.avg_latency_ms != b.avg_latency_ms:
        return a.avg_latency_ms < b.avg_latency_ms
    return a.count >= b.count


def find_redundant_cells(
    cells: Iterable[Cell],
    stats: dict[str, CellStat],
    thresholds: MergeThresholds | None = None,
) -> list[str]:
    """Ids of cells that duplicate a better-performing cell."""
    th = thresholds or MergeThresholds()
    pool = list(cells)
    tag_sets = {c.id: {w for t in c.capabilities for w in tokenize(t)} for c in pool}
    redundant: list[str] = []
    removed: set[str] = set()

    for i, a in enumerate(pool):
        if a.id in removed:
            continue
        for b in pool[i + 1 :]:
            if b.id in removed:
                continue
            sa = stats.get(a.id) or CellStat(cell_id=a.id)
            sb = stats.get(b.id) or CellStat(cell_id=b.id)
            if sa.count < th.min_obs or sb.count < th.min_obs:
                continue
            name_sim = fuzzy_sim(canonicalize(a.id.removeprefix("cell-")), canonicalize(b.id.removeprefix("cell-")))
            if name_sim < th.min_name_sim:
                continue
            if jaccard_index(tag_sets[a.id], tag_sets[b.id]) < th.min_tag_jaccard:
                continue
            loser = b.id if _beats(sa, sb) else a.id
            redundant.append(loser)
            removed.add(loser)
            if loser == a.id:
                break
    return redundant
