# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

from typing import List, Optional, Sequence

from loguru import logger

from coreason_codematch.schemas import Candidate, Confidence, SelectionResult

HIGH_CONFIDENCE_THRESHOLD = 0.7
MEDIUM_CONFIDENCE_THRESHOLD = 0.5


def confidence_for(score: float) -> Confidence:
    if score > HIGH_CONFIDENCE_THRESHOLD:
        return Confidence.HIGH
    if score > MEDIUM_CONFIDENCE_THRESHOLD:
        return Confidence.MEDIUM
    return Confidence.LOW


def _sort_key(candidate: Candidate) -> tuple:
    return (-candidate.combined_score, -candidate.vector_score, candidate.code_value)


class CandidateSelector:
    """
    Thresholds, orders and ranks retrieved candidates.

    Ordering is combined_score desc, then vector_score desc, then code_value asc,
    so equal inputs always produce the same ranking.
    """

    def select(
        self, candidates: Sequence[Candidate], min_similarity: float = 0.0, max_candidates: int = 20
    ) -> SelectionResult:
        kept = [c for c in candidates if c.combined_score >= min_similarity]
        if len(kept) < len(candidates):
            logger.debug(f"Dropped {len(candidates) - len(kept)} candidates below {min_similarity}")

        ordered = sorted(kept, key=_sort_key)[:max_candidates]
        ranked: List[Candidate] = [c.model_copy(update={"rank": i}) for i, c in enumerate(ordered, start=1)]
        best: Optional[Candidate] = ranked[0] if ranked else None
        return SelectionResult(best=best, ranked=ranked)

    @staticmethod
    def confidence_for(score: float) -> Confidence:
        return confidence_for(score)
