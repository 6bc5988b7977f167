# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

from typing import Iterator, List, Optional, Protocol, Sequence, Tuple

from coreason_codematch.schemas import CodeEntry, JobFilter, JobStats


class Embedder(Protocol):
    """
    Protocol for text embedding backends.
    """

    model_name: str

    def embed(self, texts: Sequence[str], stats: Optional[JobStats] = None) -> List[Optional[List[float]]]:
        """
        Embeds a list of strings. Items that could not be embedded are None.
        A backend that honors a stop request may return a shorter list covering
        only the leading texts it handled.
        """
        ...

    def embed_one(self, text: str) -> List[float]:
        """
        Embeds a single string, raising an EmbeddingError on failure.
        """
        ...


class VectorIndex(Protocol):
    def search(
        self, vector: List[float], filters: JobFilter, limit: int
    ) -> List[Tuple[Tuple[str, str, str], float]]:
        """
        Returns ((code_value, code_system, country_code), cosine similarity) pairs,
        closest first.
        """
        ...


class CorpusStore(Protocol):
    """
    Read/write access to the code corpus.
    """

    def get(
        self, code_value: str, code_system: Optional[str] = None, country_code: Optional[str] = None
    ) -> Optional[CodeEntry]: ...

    def count(
        self,
        filters: Optional[JobFilter] = None,
        embedded: Optional[bool] = None,
        normalized: Optional[bool] = None,
    ) -> int: ...

    def scan(
        self,
        filters: JobFilter,
        active: Optional[bool] = None,
        page_size: int = 1000,
        embedded: Optional[bool] = None,
    ) -> Iterator[List[CodeEntry]]: ...

    def sample_embedded(self, filters: JobFilter, limit: int) -> List[CodeEntry]: ...

    def fetch_unnormalized_page(
        self, filters: JobFilter, after: Optional[Tuple[str, str, str]], limit: int
    ) -> List[CodeEntry]: ...

    def fetch_unembedded_page(
        self, filters: JobFilter, after: Optional[Tuple[str, str, str]], limit: int
    ) -> List[CodeEntry]: ...

    def update_normalized_text(self, entry: CodeEntry, text: str) -> None: ...

    def update_embedding(self, entry: CodeEntry, text: str, vector: List[float], model: str) -> None: ...

    def lexical_search(self, terms: Sequence[str], filters: JobFilter, limit: int) -> List[Tuple[CodeEntry, float]]:
        """Top rows by descending text relevance, relevance in [0, 1]."""
        ...

    def nearest(self, vector: List[float], filters: JobFilter, limit: int) -> List[Tuple[CodeEntry, float]]:
        """Top rows by descending cosine similarity."""
        ...
