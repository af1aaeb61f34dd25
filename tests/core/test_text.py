"""Tests for text normalization and similarity helpers."""

from saia.text import canonicalize, fuzzy_sim, jaccard_index, jaro_winkler, levenshtein_sim, tokenize


def test_canonicalize_collapses_separators():
    assert canonicalize("  Cell_Code Review!! ") == "cell-code-review"
    assert canonicalize("") == ""


def test_tokenize_splits_on_non_alnum():
    assert tokenize("Hello, World -- 42") == ["hello", "world", "42"]


def test_jaccard_empty_side_is_zero():
    assert jaccard_index([], ["a"]) == 0.0
    assert jaccard_index(["a", "b"], ["b", "c"]) == 1 / 3


def test_jaro_winkler_known_values():
    assert jaro_winkler("martha", "martha") == 1.0
    assert abs(jaro_winkler("martha", "marhta") - 0.9611) < 0.001
    assert jaro_winkler("abc", "") == 0.0


def test_levenshtein_sim():
    assert levenshtein_sim("kitten", "sitting") == 1 - 3 / 7
    assert levenshtein_sim("", "") == 1.0


def test_fuzzy_sim_orders_close_words_higher():
    assert fuzzy_sim("password", "passw0rd") > fuzzy_sim("password", "banana")
    assert fuzzy_sim("same", "same") == 1.0
