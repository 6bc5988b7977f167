# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

import random

import pytest

from coreason_codematch.schemas import Candidate, Confidence
from coreason_codematch.selector import CandidateSelector, confidence_for


def cand(code_value: str, combined: float, vector: float = 0.0) -> Candidate:
    return Candidate(
        code_value=code_value,
        code_system="AMT",
        display_name=code_value,
        entity_type="medication",
        vector_score=vector,
        combined_score=combined,
    )


def test_sorted_and_ranked() -> None:
    candidates = [cand("c", 0.4), cand("a", 0.9), cand("b", 0.6)]
    result = CandidateSelector().select(candidates)

    assert [c.code_value for c in result.ranked] == ["a", "b", "c"]
    assert [c.rank for c in result.ranked] == [1, 2, 3]
    assert result.best is not None
    assert result.best.code_value == "a"
    # Inputs are not mutated
    assert all(c.rank is None for c in candidates)


def test_tie_breaks() -> None:
    candidates = [cand("b", 0.5, vector=0.2), cand("a", 0.5, vector=0.2), cand("z", 0.5, vector=0.9)]
    result = CandidateSelector().select(candidates)
    assert [c.code_value for c in result.ranked] == ["z", "a", "b"]


def test_ordering_is_deterministic_for_any_input_order() -> None:
    candidates = [cand(f"{i:03d}", round(random.Random(i).random(), 2), vector=0.1 * (i % 3)) for i in range(50)]
    expected = CandidateSelector().select(candidates).ranked
    shuffled = list(candidates)
    random.Random(7).shuffle(shuffled)
    result = CandidateSelector().select(shuffled)

    assert result.ranked == expected
    scores = [c.combined_score for c in result.ranked]
    assert scores == sorted(scores, reverse=True)
    assert [c.rank for c in result.ranked] == list(range(1, len(result.ranked) + 1))


def test_min_similarity_filters() -> None:
    result = CandidateSelector().select([cand("a", 0.8), cand("b", 0.5), cand("c", 0.49)], min_similarity=0.5)
    assert [c.code_value for c in result.ranked] == ["a", "b"]


def test_min_similarity_no_match_is_empty_not_error() -> None:
    result = CandidateSelector().select([cand("a", 0.8), cand("b", 0.3)], min_similarity=0.9)
    assert result.best is None
    assert result.ranked == []


def test_top_k() -> None:
    candidates = [cand(str(i), i / 100) for i in range(30)]
    result = CandidateSelector().select(candidates, max_candidates=5)
    assert len(result.ranked) == 5
    assert [c.rank for c in result.ranked] == [1, 2, 3, 4, 5]
    assert result.ranked[0].code_value == "29"


def test_empty_input() -> None:
    result = CandidateSelector().select([])
    assert result.best is None
    assert result.ranked == []


@pytest.mark.parametrize(
    "score, expected",
    [
        (0.95, Confidence.HIGH),
        (0.71, Confidence.HIGH),
        (0.7, Confidence.MEDIUM),
        (0.51, Confidence.MEDIUM),
        (0.5, Confidence.LOW),
        (0.0, Confidence.LOW),
    ],
)
def test_confidence_buckets(score: float, expected: Confidence) -> None:
    assert confidence_for(score) == expected
    assert CandidateSelector.confidence_for(score) == expected
