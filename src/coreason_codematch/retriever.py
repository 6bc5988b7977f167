# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

"""
Request-time candidate retrieval.

A lexical pass (whole-word term overlap in SQL) and a vector pass (cosine
nearest neighbours of the query embedding) run side by side. Their results are
unioned by code_value and blended with per-entity-type weights.
"""

import re
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

from coreason_codematch.config import CodematchSettings, RetrievalWeights, get_settings
from coreason_codematch.exceptions import EmbeddingError, EmbeddingUnavailable, RetrievalUnavailable
from coreason_codematch.interfaces import CorpusStore, Embedder
from coreason_codematch.normalizer import CONNECTOR_WORDS, FORM_WORDS
from coreason_codematch.schemas import Candidate, CodeEntry, MatchQuery

TOKEN_PATTERN = re.compile(r"[a-z0-9]+")
NUMERIC_TOKEN_PATTERN = re.compile(r"^\d+(?:mg|g|ml|mcg|micrograms?|milligrams?)?$")
UNIT_WORDS = {"mg", "g", "ml", "mcg", "microgram", "micrograms", "milligram", "milligrams"}
STOP_WORDS = UNIT_WORDS | {part for word in FORM_WORDS for part in word.split()} | set(CONNECTOR_WORDS)

LEXICAL_ONLY = RetrievalWeights(lexical=1.0, vector=0.0)
VECTOR_ONLY = RetrievalWeights(lexical=0.0, vector=1.0)


def tokenize_query(text: str) -> List[str]:
    """
    Splits entity text into lexical search terms.

    Dosage amounts, units, form words and connectors carry no identity, so they
    are dropped; if nothing else is left, every token is kept.

    >>> tokenize_query("Amoxicillin 500mg capsule")
    ['amoxicillin']
    """
    tokens = TOKEN_PATTERN.findall(text.lower())
    terms = [t for t in tokens if t not in STOP_WORDS and not NUMERIC_TOKEN_PATTERN.match(t)]
    kept = terms or tokens
    # Deduplicate, keep first-seen order.
    return list(dict.fromkeys(kept))


class EmbeddingCache:
    """Bounded in-memory cache of query embeddings with a time-to-live."""

    def __init__(self, ttl_seconds: float, max_size: int = 1000, clock: Callable[[], float] = time.monotonic):
        self._cache: Dict[str, Tuple[List[float], float]] = {}
        self._ttl_seconds = ttl_seconds
        self._max_size = max_size
        self._clock = clock
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._cache)

    def get(self, text: str) -> Optional[List[float]]:
        with self._lock:
            entry = self._cache.get(text)
            if entry is not None:
                vector, stored_at = entry
                if self._clock() - stored_at < self._ttl_seconds:
                    self.hits += 1
                    return vector
                del self._cache[text]
            self.misses += 1
            return None

    def put(self, text: str, vector: List[float]) -> None:
        with self._lock:
            if text not in self._cache and len(self._cache) >= self._max_size:
                oldest = min(self._cache, key=lambda k: self._cache[k][1])
                del self._cache[oldest]
            self._cache[text] = (vector, self._clock())

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


class QueryEmbedder:
    """Embeds entity text at request time. The text is sent as-is."""

    def __init__(self, embedder: Embedder, cache: Optional[EmbeddingCache] = None):
        self.embedder = embedder
        self.cache = cache

    def embed_query(self, entity_text: str) -> List[float]:
        if self.cache is not None:
            cached = self.cache.get(entity_text)
            if cached is not None:
                logger.debug(f"Query embedding cache hit for {entity_text[:60]!r}")
                return cached
        try:
            vector = self.embedder.embed_one(entity_text)
        except EmbeddingUnavailable:
            raise
        except EmbeddingError as e:
            raise EmbeddingUnavailable(f"Query embedding failed: {e}") from e
        if self.cache is not None:
            self.cache.put(entity_text, vector)
        return vector


@dataclass
class RetrievalOutcome:
    candidates: List[Candidate] = field(default_factory=list)
    degraded: bool = False


def _clamp(score: float) -> float:
    return min(max(score, 0.0), 1.0)


class HybridRetriever:
    """
    Builds scored candidates for a MatchQuery.

    Degrade paths:
        vector pass fails or times out -> lexical-only, degraded=True
        lexical pass fails             -> vector-only
        both fail                      -> RetrievalUnavailable
    """

    def __init__(
        self,
        store: CorpusStore,
        query_embedder: Optional[QueryEmbedder],
        settings: Optional[CodematchSettings] = None,
        timeout: Optional[float] = None,
    ):
        self.store = store
        self.query_embedder = query_embedder
        self.settings = settings or get_settings()
        self.timeout = timeout if timeout is not None else self.settings.query_timeout_seconds

    def _lexical(self, query: MatchQuery) -> List[Tuple[CodeEntry, float]]:
        terms = tokenize_query(query.entity_text)
        logger.debug(f"Lexical terms for {query.entity_text!r}: {terms}")
        return self.store.lexical_search(terms, query.to_filter(), query.max_candidates)

    def _vector(self, query: MatchQuery) -> List[Tuple[CodeEntry, float]]:
        if self.query_embedder is None:
            raise EmbeddingUnavailable("No query embedder configured")
        vector = self.query_embedder.embed_query(query.entity_text)
        return self.store.nearest(vector, query.to_filter(), query.max_candidates)

    def _collect(
        self, name: str, future: "Future[List[Tuple[CodeEntry, float]]]", deadline: float
    ) -> Optional[List[Tuple[CodeEntry, float]]]:
        try:
            return future.result(timeout=max(deadline - time.monotonic(), 0.0))
        except FutureTimeoutError:
            logger.warning(f"{name} retrieval timed out after {self.timeout}s")
        except Exception as e:
            logger.warning(f"{name} retrieval failed: {e}")
        return None

    def retrieve(self, query: MatchQuery) -> RetrievalOutcome:
        deadline = time.monotonic() + self.timeout
        executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="codematch-retrieve")
        try:
            lexical_future = executor.submit(self._lexical, query)
            vector_future = executor.submit(self._vector, query)
            lexical = self._collect("Lexical", lexical_future, deadline)
            vector = self._collect("Vector", vector_future, deadline)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        if lexical is None and vector is None:
            raise RetrievalUnavailable(f"Lexical and vector retrieval both failed for {query.entity_text!r}")

        entity_type = query.entity_type_filter.value if query.entity_type_filter else None
        degraded = False
        if vector is None:
            weights = LEXICAL_ONLY
            degraded = True
            logger.warning("Vector retrieval unavailable, falling back to lexical-only scoring")
        elif lexical is None:
            weights = VECTOR_ONLY
        else:
            weights = self.settings.weights_for(entity_type)

        candidates = self._blend(lexical or [], vector or [], weights)
        logger.info(
            f"Retrieved {len(candidates)} candidates for {query.entity_text!r} "
            f"(lexical={len(lexical or [])}, vector={len(vector or [])}, degraded={degraded})"
        )
        return RetrievalOutcome(candidates=candidates, degraded=degraded)

    def _blend(
        self,
        lexical: List[Tuple[CodeEntry, float]],
        vector: List[Tuple[CodeEntry, float]],
        weights: RetrievalWeights,
    ) -> List[Candidate]:
        merged: Dict[str, Candidate] = {}

        for entry, score in lexical:
            candidate = merged.setdefault(entry.code_value, self._candidate(entry))
            candidate.lexical_score = max(candidate.lexical_score, _clamp(score))

        for entry, score in vector:
            candidate = merged.setdefault(entry.code_value, self._candidate(entry))
            candidate.vector_score = max(candidate.vector_score, _clamp(score))

        for candidate in merged.values():
            candidate.combined_score = (
                weights.lexical * candidate.lexical_score + weights.vector * candidate.vector_score
            )
        return list(merged.values())

    @staticmethod
    def _candidate(entry: CodeEntry) -> Candidate:
        return Candidate(
            code_value=entry.code_value,
            code_system=entry.code_system,
            display_name=entry.display_name,
            entity_type=entry.entity_type,
        )
