# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

"""Runtime configuration loaded from CODEMATCH_* environment variables."""

from functools import lru_cache
from typing import Dict, Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RetrievalWeights(BaseModel):
    """Blend weights for lexical and vector scores."""

    lexical: float = Field(ge=0.0, le=1.0)
    vector: float = Field(ge=0.0, le=1.0)


class CodematchSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CODEMATCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Embedding provider
    embedding_url: str = "https://api-inference.huggingface.co/models/cambridgeltl/SapBERT-from-PubMedBERT-fulltext"
    embedding_api_key: Optional[str] = None
    embedding_model: str = "cambridgeltl/SapBERT-from-PubMedBERT-fulltext"
    embedding_dimension: int = 768
    embedding_payload_key: str = "inputs"

    # Retry / rate limiting
    max_attempts: int = Field(default=3, ge=1)
    model_loading_delay: float = 2.0
    rate_limit_delay: float = 60.0
    transient_delay: float = 2.0
    request_delay: float = 0.1
    request_timeout_seconds: float = 30.0

    # Query time
    query_timeout_seconds: float = 5.0
    query_max_attempts: int = Field(default=1, ge=1)
    query_cache_ttl_hours: float = Field(default=24.0, ge=0.0)
    query_cache_size: int = Field(default=1000, ge=1)

    # Retrieval
    lexical_weight: float = Field(default=0.3, ge=0.0, le=1.0)
    vector_weight: float = Field(default=0.7, ge=0.0, le=1.0)
    entity_type_weights: Dict[str, RetrievalWeights] = Field(
        default_factory=lambda: {"procedure": RetrievalWeights(lexical=0.5, vector=0.5)}
    )
    max_candidates: int = Field(default=20, ge=1)
    min_similarity: float = Field(default=0.0, ge=0.0, le=1.0)

    # Batch jobs
    page_size: int = Field(default=1000, ge=1)
    batch_size: int = Field(default=10, ge=1)
    dry_run_limit: int = Field(default=100, ge=1)
    verify_sample_size: int = Field(default=5, ge=1)

    # Storage
    db_path: str = "./data/corpus.duckdb"
    index_path: Optional[str] = None

    @model_validator(mode="after")
    def _check_weights(self) -> "CodematchSettings":
        if self.lexical_weight + self.vector_weight <= 0:
            raise ValueError("lexical_weight and vector_weight cannot both be zero")
        return self

    def weights_for(self, entity_type: Optional[str]) -> RetrievalWeights:
        """Returns the blend weights for an entity type, falling back to the defaults."""
        if entity_type and entity_type in self.entity_type_weights:
            return self.entity_type_weights[entity_type]
        return RetrievalWeights(lexical=self.lexical_weight, vector=self.vector_weight)


@lru_cache
def get_settings() -> CodematchSettings:
    return CodematchSettings()
