# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock, patch

import pytest

from coreason_codematch.build import CorpusBuilder
from coreason_codematch.config import CodematchSettings
from coreason_codematch.corpus import DuckDBCorpusStore
from coreason_codematch.exceptions import RetrievalUnavailable
from coreason_codematch.pipeline import (
    CodematchContext,
    Resolver,
    codematch_resolve,
    initialize,
    select_entity_text,
)
from coreason_codematch.retriever import HybridRetriever, QueryEmbedder, RetrievalOutcome
from coreason_codematch.schemas import (
    Candidate,
    Confidence,
    EntityType,
    MatchQuery,
    ResolveOptions,
    ResolveStatus,
)
from coreason_codematch.selector import confidence_for

from .conftest import MockEmbedder


def cand(code_value: str, combined: float) -> Candidate:
    return Candidate(
        code_value=code_value,
        code_system="AMT",
        display_name=code_value,
        entity_type="medication",
        combined_score=combined,
        vector_score=combined,
    )


@pytest.fixture
def reset_context() -> Generator[None, None, None]:
    CodematchContext.reset()
    yield
    CodematchContext.reset()


def test_select_entity_text() -> None:
    assert select_entity_text("amox", "Amoxicillin 500mg capsule") == "Amoxicillin 500mg capsule"
    assert select_entity_text("Amoxicillin 500mg", "Amoxicillin") == "Amoxicillin 500mg"
    # Equal length keeps the original
    assert select_entity_text("abc", "xyz") == "abc"
    assert select_entity_text("metformin", None) == "metformin"


def test_resolve_matched(settings: CodematchSettings) -> None:
    retriever = MagicMock()
    retriever.retrieve.return_value = RetrievalOutcome(candidates=[cand("b", 0.6), cand("a", 0.8)])
    result = Resolver(retriever, settings=settings).resolve("amoxicillin", entity_type="medication", country="AU")

    assert result.status == ResolveStatus.MATCHED
    assert result.best_match is not None
    assert result.best_match.code_value == "a"
    assert result.confidence == Confidence.HIGH
    assert [c.rank for c in result.ranked_candidates] == [1, 2]
    assert result.degraded is False

    query: MatchQuery = retriever.retrieve.call_args[0][0]
    assert query.entity_type_filter == EntityType.MEDICATION
    assert query.country_filter == "AU"
    assert query.max_candidates == settings.max_candidates


def test_resolve_options_override(settings: CodematchSettings) -> None:
    retriever = MagicMock()
    retriever.retrieve.return_value = RetrievalOutcome(candidates=[cand("a", 0.8), cand("b", 0.6), cand("c", 0.55)])
    result = Resolver(retriever, settings=settings).resolve(
        "amoxicillin", options=ResolveOptions(max_candidates=1, min_similarity=0.5)
    )
    assert [c.code_value for c in result.ranked_candidates] == ["a"]


def test_resolve_no_match_above_threshold(settings: CodematchSettings) -> None:
    retriever = MagicMock()
    retriever.retrieve.return_value = RetrievalOutcome(candidates=[cand("a", 0.8)])
    result = Resolver(retriever, settings=settings).resolve("amoxicillin", options=ResolveOptions(min_similarity=0.9))

    assert result.status == ResolveStatus.NO_MATCH
    assert result.best_match is None
    assert result.ranked_candidates == []
    assert result.confidence is None


def test_resolve_retrieval_unavailable(settings: CodematchSettings) -> None:
    retriever = MagicMock()
    retriever.retrieve.side_effect = RetrievalUnavailable("both down")
    result = Resolver(retriever, settings=settings).resolve("amoxicillin")

    assert result.status == ResolveStatus.RETRIEVAL_UNAVAILABLE
    assert result.ranked_candidates == []
    assert result.best_match is None


def test_resolve_blank_text(settings: CodematchSettings) -> None:
    retriever = MagicMock()
    result = Resolver(retriever, settings=settings).resolve("   ")
    assert result.status == ResolveStatus.NO_MATCH
    retriever.retrieve.assert_not_called()


@pytest.mark.parametrize("entity_type", ["diagnosis", "symptom", "MEDICATION"])
def test_resolve_unsupported_entity_type(entity_type: str) -> None:
    retriever = MagicMock()
    result = Resolver(retriever, settings=CodematchSettings(_env_file=None)).resolve(
        "asthma", entity_type=entity_type
    )

    assert result.status == ResolveStatus.NO_MATCH
    assert result.entity_text == "asthma"
    assert result.best_match is None
    assert result.ranked_candidates == []
    retriever.retrieve.assert_not_called()


def test_resolve_entity_type_accepts_plain_string(settings: CodematchSettings) -> None:
    retriever = MagicMock()
    retriever.retrieve.return_value = RetrievalOutcome(candidates=[cand("a", 0.9)])
    Resolver(retriever, settings=settings).resolve("amoxicillin", entity_type="medication")

    query = retriever.retrieve.call_args[0][0]
    assert query.entity_type_filter == EntityType.MEDICATION


def test_resolve_degraded_flag(settings: CodematchSettings) -> None:
    retriever = MagicMock()
    retriever.retrieve.return_value = RetrievalOutcome(candidates=[cand("a", 1.0)], degraded=True)
    result = Resolver(retriever, settings=settings).resolve("amoxicillin")
    assert result.status == ResolveStatus.MATCHED
    assert result.degraded is True


def test_resolve_end_to_end(embedded_store: DuckDBCorpusStore, settings: CodematchSettings) -> None:
    resolver = Resolver(HybridRetriever(embedded_store, QueryEmbedder(MockEmbedder()), settings=settings))
    result = resolver.resolve("Amoxicillin 500mg", entity_type=EntityType.MEDICATION, country="AU")

    assert result.status == ResolveStatus.MATCHED
    assert result.best_match is not None
    assert result.best_match.code_value == "1001"
    assert result.confidence == confidence_for(result.best_match.combined_score)


def test_context_not_initialized(reset_context: None) -> None:
    with pytest.raises(RuntimeError, match="not initialized"):
        CodematchContext.get_instance()


def test_context_wiring_and_public_api(
    reset_context: None, settings: CodematchSettings, db_path: Path, corpus_csv: Path
) -> None:
    CorpusBuilder(db_path).import_csv(corpus_csv)
    missing_index = settings.model_copy(update={"index_path": str(db_path.parent / "no_index")})

    with patch("coreason_codematch.pipeline.HttpEmbeddingClient") as MockClient:
        MockClient.from_settings.return_value.embed_one.return_value = [0.1] * 256
        initialize(missing_index)

        ctx = CodematchContext.get_instance()
        MockClient.from_settings.assert_called_once_with(missing_index, query=True)
        assert ctx.vector_index is None

        # No embeddings stored yet: lexical pass alone finds the row
        result = codematch_resolve("Metoprolol", entity_type="medication")
        assert result.status == ResolveStatus.MATCHED
        assert result.best_match is not None
        assert result.best_match.code_value == "1003"


def test_context_caches_query_embeddings(
    reset_context: None, settings: CodematchSettings, db_path: Path, corpus_csv: Path
) -> None:
    CorpusBuilder(db_path).import_csv(corpus_csv)

    with patch("coreason_codematch.pipeline.HttpEmbeddingClient") as MockClient:
        client = MockClient.from_settings.return_value
        client.embed_one.side_effect = MockEmbedder().embed_one
        initialize(settings)

        ctx = CodematchContext.get_instance()
        assert ctx.embedding_cache is not None
        codematch_resolve("Metoprolol")
        codematch_resolve("Metoprolol")
        codematch_resolve("Cefalexin")

        assert client.embed_one.call_count == 2
        assert ctx.embedding_cache.hits == 1
        assert len(ctx.embedding_cache) == 2


def test_context_query_cache_disabled(
    reset_context: None, settings: CodematchSettings, db_path: Path, corpus_csv: Path
) -> None:
    CorpusBuilder(db_path).import_csv(corpus_csv)

    with patch("coreason_codematch.pipeline.HttpEmbeddingClient") as MockClient:
        client = MockClient.from_settings.return_value
        client.embed_one.return_value = [0.1] * 256
        initialize(settings.model_copy(update={"query_cache_ttl_hours": 0.0}))

        ctx = CodematchContext.get_instance()
        assert ctx.embedding_cache is None
        codematch_resolve("Metoprolol")
        codematch_resolve("Metoprolol")
        assert client.embed_one.call_count == 2
