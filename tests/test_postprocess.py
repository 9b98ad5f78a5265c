from __future__ import annotations

import math

import pytest

from vegetable_ai.errors import InferenceError
from vegetable_ai.inference.postprocess import argmax, softmax


def test_softmax_known_values_and_argmax() -> None:
    probs = softmax([1.0, 2.0, 3.0])
    expected = (0.0900, 0.2447, 0.6652)
    assert len(probs) == 3
    for got, want in zip(probs, expected, strict=True):
        assert abs(got - want) < 1e-4
    assert abs(sum(probs) - 1.0) < 1e-6
    assert argmax(probs) == 2


def test_softmax_uniform_tie_picks_first_index() -> None:
    probs = softmax([5.0, 5.0, 5.0])
    for p in probs:
        assert abs(p - 1.0 / 3.0) < 1e-6
    assert argmax(probs) == 0


def test_argmax_tie_later_in_sequence() -> None:
    assert argmax([0.1, 0.4, 0.1, 0.4]) == 1


def test_argmax_empty_raises() -> None:
    with pytest.raises(ValueError):
        argmax([])


def test_softmax_bounds_for_mixed_scores() -> None:
    scores = [-12.5, 0.0, 3.25, 7.0, -0.5, 2.0, 1.0]
    probs = softmax(scores)
    assert len(probs) == len(scores)
    assert all(0.0 <= p <= 1.0 for p in probs)
    assert abs(sum(probs) - 1.0) < 1e-6
    assert argmax(probs) == 3


def test_stable_softmax_matches_naive_for_moderate_scores() -> None:
    scores = [0.3, -1.2, 4.4, 2.2]
    naive = softmax(scores)
    stable = softmax(scores, stable=True)
    for a, b in zip(naive, stable, strict=True):
        assert math.isclose(a, b, rel_tol=1e-12, abs_tol=1e-15)


def test_naive_softmax_overflow_is_reported() -> None:
    with pytest.raises(InferenceError):
        softmax([1000.0, 1.0])


def test_stable_softmax_handles_extreme_scores() -> None:
    probs = softmax([1000.0, 1.0], stable=True)
    assert probs[0] == pytest.approx(1.0)
    assert argmax(probs) == 0


def test_softmax_empty_raises() -> None:
    with pytest.raises(InferenceError):
        softmax([])
