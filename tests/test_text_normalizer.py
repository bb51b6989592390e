from simcore.text_normalizer import (
    compute_deterministic_int,
    contains_any,
    contains_term,
    normalize_to_ascii_lower,
    pick_deterministic_option,
)


def test_normalize_lowercases_and_strips_accents():
    assert normalize_to_ascii_lower("Café AU Lait") == "cafe au lait"


def test_normalize_collapses_whitespace():
    assert normalize_to_ascii_lower("  Multiple   Spaces \n here ") == "multiple spaces here"


def test_normalize_none_is_empty():
    assert normalize_to_ascii_lower(None) == ""


def test_contains_term_requires_word_start():
    assert contains_term("patient aged 54", "age")
    assert not contains_term("we will manage this", "age")


def test_contains_term_matches_multiword_terms():
    assert contains_term("Check her Pulse Ox please", "pulse ox")


def test_contains_term_empty_term_never_matches():
    assert not contains_term("anything", "")


def test_contains_any():
    assert contains_any("Giving Handover now", ("report", "handover"))
    assert not contains_any("checking airway", ("report", "handover"))


def test_deterministic_int_is_stable_and_in_range():
    first = compute_deterministic_int("session-42", 0, 9)
    assert first == compute_deterministic_int("session-42", 0, 9)
    for seed in ("a", "b", "long seed text", ""):
        assert 0 <= compute_deterministic_int(seed, 0, 9) <= 9


def test_deterministic_int_empty_seed_uses_default():
    assert compute_deterministic_int("", 0, 1000) == compute_deterministic_int("seed", 0, 1000)


def test_pick_deterministic_option():
    options = ["a", "b", "c"]
    assert pick_deterministic_option("x", options) == pick_deterministic_option("x", options)
    assert pick_deterministic_option("x", options) in options
    assert pick_deterministic_option("x", []) is None
