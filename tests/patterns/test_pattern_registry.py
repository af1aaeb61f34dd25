"""Tests for the pattern registry and complexity measure."""

import pytest

from saia.exceptions import PatternNotFoundError
from saia.patterns.registry import PatternRegistry, PatternSpec, longest_path, pattern_complexity


def test_complexity_of_a_chain():
    p = PatternSpec(id="chain", cells=("a", "b", "c"), edges=(("a", "b"), ("b", "c")))
    assert pattern_complexity(p) == 7


def test_roles_count_half():
    p = PatternSpec(id="p", cells=("a",), roles=("planner", "critic"))
    assert pattern_complexity(p) == 2


def test_longest_path_handles_cycles_and_empty():
    assert longest_path([]) == 0
    assert longest_path([("a", "b"), ("b", "a")]) == 1
    assert longest_path([("a", "b"), ("b", "c"), ("a", "c"), ("c", "d")]) == 3


def test_defaults():
    reg = PatternRegistry()
    assert [p.id for p in reg.list_patterns()] == ["solo", "bandit-pool"]
    assert reg.active_id == "solo"
    assert reg.active().router == "success_rate"
    assert reg.active_complexity() == 1


def test_set_active_and_register():
    reg = PatternRegistry()
    with pytest.raises(PatternNotFoundError):
        reg.set_active("nope")
    reg.set_active(None)
    assert reg.active() is None
    assert reg.active_complexity() == 0.0

    reg.register(PatternSpec(id="duo", cells=("cell-base", "cell-x")))
    with pytest.raises(ValueError):
        reg.register(PatternSpec(id="duo"))


def test_candidate_prefers_least_complex_step_up():
    reg = PatternRegistry()
    reg.register(PatternSpec(id="big", cells=("a", "b", "c", "d")))
    reg.register(PatternSpec(id="duo", cells=("a", "b")))
    assert reg.synthesize_candidate().id == "duo"


def test_candidate_cycles_when_nothing_is_more_complex():
    reg = PatternRegistry()
    assert reg.synthesize_candidate().id == "bandit-pool"
    reg.set_active("bandit-pool")
    assert reg.synthesize_candidate().id == "solo"


def test_save_and_load(tmp_path):
    path = tmp_path / "patterns.json"
    reg = PatternRegistry(path)
    reg.register(PatternSpec(id="duo", cells=("a", "b"), edges=(("a", "b"),)))
    reg.set_active("duo")
    reg.save()

    again = PatternRegistry(path)
    assert again.active_id == "duo"
    assert again.get("duo").edges == (("a", "b"),)


def test_corrupt_file_keeps_defaults(tmp_path):
    path = tmp_path / "patterns.json"
    path.write_text("[oops")
    reg = PatternRegistry(path)
    assert reg.active_id == "solo"
    assert not reg.load()
