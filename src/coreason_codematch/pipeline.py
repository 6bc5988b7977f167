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
from typing import Optional, Union

from loguru import logger

from coreason_codematch.config import CodematchSettings, get_settings
from coreason_codematch.corpus import DuckDBCorpusStore
from coreason_codematch.embedders import HttpEmbeddingClient
from coreason_codematch.exceptions import RetrievalUnavailable
from coreason_codematch.retriever import EmbeddingCache, HybridRetriever, QueryEmbedder
from coreason_codematch.schemas import EntityType, MatchQuery, ResolveOptions, ResolveResult, ResolveStatus
from coreason_codematch.selector import CandidateSelector, confidence_for
from coreason_codematch.vector_index import LanceVectorIndex


def select_entity_text(original_text: str, ai_interpretation: Optional[str] = None) -> str:
    """
    Picks the text to match: the AI interpretation only when it is strictly
    longer than the original (OCR) text.
    """
    original = (original_text or "").strip()
    interpreted = (ai_interpretation or "").strip()
    return interpreted if len(interpreted) > len(original) else original


class Resolver:
    """
    Resolves one clinical entity to ranked regional codes.
    """

    def __init__(
        self,
        retriever: HybridRetriever,
        selector: Optional[CandidateSelector] = None,
        settings: Optional[CodematchSettings] = None,
    ):
        self.retriever = retriever
        self.selector = selector or CandidateSelector()
        self.settings = settings or get_settings()

    def resolve(
        self,
        entity_text: str,
        entity_type: Optional[Union[EntityType, str]] = None,
        country: Optional[str] = None,
        options: Optional[ResolveOptions] = None,
    ) -> ResolveResult:
        """
        Never raises for bad input: blank text or an entity type outside
        EntityType (e.g. an upstream "diagnosis") yields status no_match.
        """
        options = options or ResolveOptions()
        text = (entity_text or "").strip()
        if not text:
            logger.warning("Empty entity text, nothing to resolve")
            return ResolveResult(entity_text=entity_text or "", status=ResolveStatus.NO_MATCH)

        type_filter: Optional[EntityType] = None
        if entity_type:
            try:
                type_filter = EntityType(entity_type)
            except ValueError:
                logger.warning(f"Unsupported entity type {entity_type!r} for {text!r}, no corpus rows can match")
                return ResolveResult(entity_text=text, status=ResolveStatus.NO_MATCH)

        query = MatchQuery(
            entity_text=text,
            entity_type_filter=type_filter,
            country_filter=country,
            max_candidates=options.max_candidates or self.settings.max_candidates,
            min_similarity=(
                options.min_similarity if options.min_similarity is not None else self.settings.min_similarity
            ),
        )

        try:
            outcome = self.retriever.retrieve(query)
        except RetrievalUnavailable as e:
            logger.error(f"Retrieval unavailable for {text!r}: {e}")
            return ResolveResult(entity_text=text, status=ResolveStatus.RETRIEVAL_UNAVAILABLE, degraded=True)

        selection = self.selector.select(outcome.candidates, query.min_similarity, query.max_candidates)
        if selection.best is None:
            logger.info(f"No candidate above {query.min_similarity} for {text!r}")
            return ResolveResult(entity_text=text, status=ResolveStatus.NO_MATCH, degraded=outcome.degraded)

        return ResolveResult(
            entity_text=text,
            status=ResolveStatus.MATCHED,
            best_match=selection.best,
            ranked_candidates=selection.ranked,
            confidence=confidence_for(selection.best.combined_score),
            degraded=outcome.degraded,
        )


class CodematchContext:
    """
    Global context/singleton holding the request-time services.
    """

    _instance: Optional["CodematchContext"] = None

    def __init__(self, settings: Optional[CodematchSettings] = None):
        self.settings = settings or get_settings()
        logger.info(f"Initializing Codematch Context with corpus: {self.settings.db_path}")

        self.vector_index: Optional[LanceVectorIndex] = None
        if self.settings.index_path and Path(self.settings.index_path).exists():
            self.vector_index = LanceVectorIndex(self.settings.index_path)
        elif self.settings.index_path:
            logger.warning(f"Vector index not found at {self.settings.index_path}, using exact scan")

        self.store = DuckDBCorpusStore.open(self.settings.db_path, read_only=True, vector_index=self.vector_index)
        self.embedding_client = HttpEmbeddingClient.from_settings(self.settings, query=True)
        self.embedding_cache: Optional[EmbeddingCache] = None
        if self.settings.query_cache_ttl_hours > 0:
            self.embedding_cache = EmbeddingCache(
                ttl_seconds=self.settings.query_cache_ttl_hours * 3600, max_size=self.settings.query_cache_size
            )
        self.query_embedder = QueryEmbedder(self.embedding_client, cache=self.embedding_cache)
        self.retriever = HybridRetriever(self.store, self.query_embedder, settings=self.settings)
        self.selector = CandidateSelector()
        self.resolver = Resolver(self.retriever, self.selector, settings=self.settings)

    def close(self) -> None:
        self.embedding_client.close()
        self.store.close()

    @classmethod
    def initialize(cls, settings: Optional[CodematchSettings] = None) -> None:
        if cls._instance is not None:
            cls._instance.close()
        cls._instance = cls(settings)

    @classmethod
    def get_instance(cls) -> "CodematchContext":
        if cls._instance is None:
            raise RuntimeError("CodematchContext not initialized. Call initialize() first.")
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        if cls._instance is not None:
            cls._instance.close()
        cls._instance = None


# --- Public API Functions ---


def initialize(settings: Optional[CodematchSettings] = None) -> None:
    """Initializes the Codematch system."""
    CodematchContext.initialize(settings)


def codematch_resolve(
    entity_text: str,
    entity_type: Optional[Union[EntityType, str]] = None,
    country: Optional[str] = None,
    options: Optional[ResolveOptions] = None,
) -> ResolveResult:
    """
    Resolves entity text to ranked regional codes.
    """
    ctx = CodematchContext.get_instance()
    return ctx.resolver.resolve(entity_text, entity_type=entity_type, country=country, options=options)
