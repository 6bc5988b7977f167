# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

import time
from enum import Enum
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, Field


class EntityType(str, Enum):
    MEDICATION = "medication"
    PROCEDURE = "procedure"
    CONDITION = "condition"
    OBSERVATION = "observation"
    ALLERGY = "allergy"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ResolveStatus(str, Enum):
    MATCHED = "matched"
    NO_MATCH = "no_match"
    RETRIEVAL_UNAVAILABLE = "retrieval_unavailable"


# Column order shared by every SELECT against code_entries.
CODE_ENTRY_COLUMNS = (
    "code_system",
    "code_value",
    "country_code",
    "display_name",
    "search_text",
    "normalized_embedding_text",
    "embedding",
    "embedding_model",
    "entity_type",
    "active",
)


class CodeEntry(BaseModel):
    """
    One row of the regional code corpus.

    `embedding` is only ever set together with `normalized_embedding_text` and
    `embedding_model`.
    """

    code_system: str
    code_value: str
    country_code: str
    display_name: str
    search_text: Optional[str] = None
    normalized_embedding_text: Optional[str] = None
    embedding: Optional[List[float]] = None
    embedding_model: Optional[str] = None
    entity_type: EntityType
    active: bool = True

    @classmethod
    def from_row(cls, row: Tuple[Any, ...]) -> "CodeEntry":
        """
        Creates a CodeEntry from a DuckDB row tuple.
        Assumes row order matches CODE_ENTRY_COLUMNS.
        """
        return cls(**dict(zip(CODE_ENTRY_COLUMNS, row, strict=True)))

    @property
    def key(self) -> Tuple[str, str, str]:
        """Stable ordering key used for resumable paging."""
        return (self.code_value, self.code_system, self.country_code)


class JobFilter(BaseModel):
    code_system: Optional[str] = None
    country_code: Optional[str] = None
    entity_type: Optional[EntityType] = None


class MatchQuery(BaseModel):
    entity_text: str
    entity_type_filter: Optional[EntityType] = None
    country_filter: Optional[str] = None
    max_candidates: int = Field(default=20, ge=1)
    min_similarity: float = Field(default=0.0, ge=0.0, le=1.0)

    def to_filter(self) -> JobFilter:
        return JobFilter(entity_type=self.entity_type_filter, country_code=self.country_filter)


class Candidate(BaseModel):
    code_value: str
    code_system: str
    display_name: str
    entity_type: EntityType
    lexical_score: float = 0.0
    vector_score: float = 0.0
    combined_score: float = 0.0
    rank: Optional[int] = None


class SelectionResult(BaseModel):
    best: Optional[Candidate] = None
    ranked: List[Candidate] = Field(default_factory=list)


class ResolveOptions(BaseModel):
    max_candidates: Optional[int] = Field(default=None, ge=1)
    min_similarity: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class ResolveResult(BaseModel):
    """
    Caller-facing outcome of resolving one entity.

    `status` separates "nothing scored high enough" (no_match) from
    "the retrieval infrastructure failed" (retrieval_unavailable).
    """

    entity_text: str
    status: ResolveStatus
    best_match: Optional[Candidate] = None
    ranked_candidates: List[Candidate] = Field(default_factory=list)
    confidence: Optional[Confidence] = None
    degraded: bool = False


class NormalizationSample(BaseModel):
    code_value: str
    before: str
    after: str


class JobStats(BaseModel):
    """
    Counters for one batch job run. A single instance is passed through the
    batch loop and the embedding client, then returned.
    """

    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    api_calls: int = 0
    rate_limit_hits: int = 0
    cancelled: bool = False
    started_at: float = Field(default_factory=time.monotonic)
    finished_at: Optional[float] = None
    samples: List[NormalizationSample] = Field(default_factory=list)

    def finish(self) -> "JobStats":
        self.finished_at = time.monotonic()
        return self

    @property
    def elapsed_seconds(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.monotonic()
        return max(end - self.started_at, 0.0)

    @property
    def throughput(self) -> float:
        """Processed items per second."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.processed / elapsed

    @property
    def exit_code(self) -> int:
        return 1 if self.failed > 0 else 0


class ImportStats(BaseModel):
    inserted: int = 0
    updated: int = 0
    reset: int = 0
    unchanged: int = 0


class EmbeddingCheck(BaseModel):
    code_value: str
    display_name: str
    embedding_model: Optional[str] = None
    dimension: int
    magnitude: float
    finite: bool
    ok: bool
    sample_values: List[float] = Field(default_factory=list)


class VerificationReport(BaseModel):
    """Quality check over a sample of stored embeddings."""

    expected_dimension: int
    checked: int = 0
    passed: int = 0
    failed: int = 0
    checks: List[EmbeddingCheck] = Field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return 1 if self.failed > 0 or self.checked == 0 else 0
