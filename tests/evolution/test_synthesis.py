"""Tests for domain discovery and redundant-cell detection."""

from saia.evolution.state import EvolutionState
from saia.cells.factory import DomainSignature
from saia.evolution.synthesis import (
    MergeThresholds,
    content_tokens,
    discover,
    find_redundant_cells,
    normalize_domain,
)
from saia.metrics.store import CellStat, RequestEvent


def _ev(prompt="", domain=None, tags=()):
    return RequestEvent(
        request_id="r", cell_id="cell-base", latency_ms=1, success=True, policy_passed=True,
        prompt=prompt, domain=domain, tags=tuple(tags),
    )


def test_normalize_domain_strips_weak_suffixes():
    assert normalize_domain("Cooking Basics") == "cooking"
    assert normalize_domain("Machine Learning-Intro") == "machine-learning"
    assert normalize_domain("guide") == "guide"


def test_content_tokens_drop_stopwords_and_short_words():
    assert content_tokens("How do I deploy to the Kubernetes cluster?") == ["deploy", "kubernetes", "cluster"]


def test_discover_prefers_suggested_domains_then_frequent_tokens():
    events = [
        _ev(domain="Cooking-basics", tags=["recipe"]),
        _ev(domain="cooking", tags=["Recipe", "baking"]),
        *[_ev(prompt="kubernetes deploy") for _ in range(3)],
    ]
    sigs = discover(events, max_new=3)
    assert [s.id for s in sigs] == ["cooking", "kubernetes", "deploy"]
    assert sigs[0].tags == ["cooking", "recipe", "baking"]
    assert "cooking" in sigs[0].system_prompt
    assert sigs[1].tags == ["kubernetes", "kubernetess", "kubernetesing", "kubernetesed"]


def test_discover_respects_limits():
    events = [_ev(prompt="kubernetes") for _ in range(2)]
    assert discover(events) == []
    events = [_ev(prompt="alpha beta gamma delta") for _ in range(3)]
    assert len(discover(events, max_new=2)) == 2


def _stat(cell_id, count=5, sai=0.5, latency=10.0):
    return CellStat(cell_id=cell_id, count=count, sai=sai, avg_latency_ms=latency)


def test_similar_cells_lose_to_the_better_one(cell_maker):
    cells = [
        cell_maker("cell-cooking", tags=["cooking", "recipe"]),
        cell_maker("cell-cookings", tags=["cooking", "recipe", "food"]),
    ]
    stats = {"cell-cooking": _stat("cell-cooking", sai=0.8), "cell-cookings": _stat("cell-cookings", sai=0.6)}
    assert find_redundant_cells(cells, stats) == ["cell-cookings"]

    stats["cell-cookings"] = _stat("cell-cookings", sai=0.8, latency=5.0)
    assert find_redundant_cells(cells, stats) == ["cell-cooking"]


def test_not_enough_observations(cell_maker):
    cells = [cell_maker("cell-cooking", tags=["cooking"]), cell_maker("cell-cookings", tags=["cooking"])]
    stats = {"cell-cooking": _stat("cell-cooking", count=4), "cell-cookings": _stat("cell-cookings")}
    assert find_redundant_cells(cells, stats) == []
    # identical sai and latency: the cell with more observations wins
    assert find_redundant_cells(cells, stats, MergeThresholds(min_obs=4)) == ["cell-cooking"]


def test_different_names_or_tags_are_kept(cell_maker):
    cells = [cell_maker("cell-cooking", tags=["cooking"]), cell_maker("cell-finance", tags=["cooking"])]
    stats = {c.id: _stat(c.id) for c in cells}
    assert find_redundant_cells(cells, stats) == []

    cells = [cell_maker("cell-cooking", tags=["cooking"]), cell_maker("cell-cookings", tags=["money"])]
    stats = {c.id: _stat(c.id) for c in cells}
    assert find_redundant_cells(cells, stats) == []


def test_loser_is_not_compared_again(cell_maker):
    cells = [
        cell_maker("cell-cooking", tags=["cooking"]),
        cell_maker("cell-cookings", tags=["cooking"]),
        cell_maker("cell-cookingx", tags=["cooking"]),
    ]
    stats = {
        "cell-cooking": _stat("cell-cooking", sai=0.5),
        "cell-cookings": _stat("cell-cookings", sai=0.9),
        "cell-cookingx": _stat("cell-cookingx", sai=0.7),
    }
    assert find_redundant_cells(cells, stats) == ["cell-cooking", "cell-cookingx"]


def test_state_persists_domains_and_recent(tmp_path):
    state = EvolutionState(tmp_path / "state.json")
    state.data.domains.append(DomainSignature(id="cooking", tags=["cooking"], system_prompt="p"))
    state.data.recent.append(_ev(prompt="hi", tags=["a"]))
    state.save()

    again = EvolutionState(tmp_path / "state.json")
    assert again.load()
    assert again.data.domains[0].id == "cooking"
    assert again.data.recent[0].tags == ("a",)


def test_corrupt_state_resets(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{bad")
    state = EvolutionState(path)
    assert not state.load()
    assert state.data.last_perf == 0.5
