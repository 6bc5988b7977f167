# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

import json
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx
import numpy as np
from sentence_transformers import SentenceTransformer

from coreason_codematch.config import CodematchSettings
from coreason_codematch.exceptions import (
    DimensionMismatchError,
    EmbeddingError,
    EmbeddingProviderUnavailable,
    InvalidVectorValuesError,
    JobCancelledError,
    MalformedResponseError,
)
from coreason_codematch.schemas import JobStats
from coreason_codematch.utils.logger import logger


class ResponseShape(str, Enum):
    FLAT_VECTOR = "flat_vector"
    VECTOR_LIST = "vector_list"
    TOKEN_VECTORS = "token_vectors"
    EMBEDDINGS_OBJECT = "embeddings_object"
    UNRECOGNIZED = "unrecognized"


@dataclass(frozen=True)
class ParsedResponse:
    shape: ResponseShape
    vectors: List[List[float]]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _is_vector(value: Any) -> bool:
    return isinstance(value, list) and len(value) > 0 and all(_is_number(v) for v in value)


def _is_matrix(value: Any) -> bool:
    return isinstance(value, list) and len(value) > 0 and all(_is_vector(v) for v in value)


def _unwrap_object(payload: Dict[str, Any]) -> Any:
    if "embeddings" in payload:
        return payload["embeddings"]
    if "embedding" in payload:
        return payload["embedding"]
    data = payload.get("data")
    if isinstance(data, list) and all(isinstance(d, dict) and "embedding" in d for d in data):
        return [d["embedding"] for d in data]
    return None


def classify_payload(payload: Any, expected: int = 1) -> ResponseShape:
    """
    Identifies which of the known provider response shapes a payload has.

    Args:
        payload: Decoded JSON body.
        expected: Number of input texts sent in the request.
    """
    if isinstance(payload, dict):
        return ResponseShape.EMBEDDINGS_OBJECT if _unwrap_object(payload) is not None else ResponseShape.UNRECOGNIZED
    if _is_vector(payload):
        return ResponseShape.FLAT_VECTOR if expected == 1 else ResponseShape.UNRECOGNIZED
    if _is_matrix(payload):
        if len(payload) == expected:
            return ResponseShape.VECTOR_LIST
        # A single input answered with one row per token.
        return ResponseShape.TOKEN_VECTORS if expected == 1 else ResponseShape.UNRECOGNIZED
    if isinstance(payload, list) and len(payload) == expected and all(_is_matrix(p) for p in payload):
        return ResponseShape.TOKEN_VECTORS
    return ResponseShape.UNRECOGNIZED


def _mean_pool(rows: List[List[float]]) -> List[float]:
    try:
        matrix = np.asarray(rows, dtype=np.float64)
    except ValueError as e:
        raise MalformedResponseError(f"Ragged token embeddings: {e}") from e
    return [float(x) for x in matrix.mean(axis=0).tolist()]


def parse_embedding_response(payload: Any, expected: int = 1) -> ParsedResponse:
    """
    Converts a provider payload into one vector per input text.

    Raises:
        MalformedResponseError: for an unrecognized shape.
    """
    shape = classify_payload(payload, expected)

    if shape == ResponseShape.FLAT_VECTOR:
        vectors = [[float(x) for x in payload]]
    elif shape == ResponseShape.VECTOR_LIST:
        vectors = [[float(x) for x in row] for row in payload]
    elif shape == ResponseShape.TOKEN_VECTORS:
        if _is_matrix(payload):
            vectors = [_mean_pool(payload)]
        else:
            vectors = [_mean_pool(tokens) for tokens in payload]
    elif shape == ResponseShape.EMBEDDINGS_OBJECT:
        inner = _unwrap_object(payload)
        if isinstance(inner, dict):
            raise MalformedResponseError("Nested embeddings object")
        return ParsedResponse(shape=shape, vectors=parse_embedding_response(inner, expected).vectors)
    else:
        preview = json.dumps(payload)[:200] if payload is not None else "null"
        raise MalformedResponseError(f"Unexpected embedding response format: {preview}")

    return ParsedResponse(shape=shape, vectors=vectors)


def validate_vector(vector: Sequence[float], dimension: int) -> List[float]:
    """
    Rejects vectors that must never be persisted or compared.

    Raises:
        DimensionMismatchError: wrong length.
        InvalidVectorValuesError: all zeros, NaN or infinite values.
    """
    if len(vector) != dimension:
        raise DimensionMismatchError(dimension, len(vector))
    arr = np.asarray(vector, dtype=np.float64)
    if not np.all(np.isfinite(arr)):
        raise InvalidVectorValuesError("Embedding contains NaN or infinite values")
    if not np.any(arr):
        raise InvalidVectorValuesError("Embedding is all zeros")
    return [float(x) for x in arr.tolist()]


class FailureKind(str, Enum):
    MODEL_LOADING = "model_loading"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"


class HttpEmbeddingClient:
    """
    Embedder backed by a remote inference endpoint (e.g. HuggingFace Inference API).

    One request is sent per text. Retries use a bounded loop; the delay before the
    next attempt depends on the kind of failure:

    - 503 (model loading): `backoff[MODEL_LOADING]`
    - 429 (rate limited): `backoff[RATE_LIMITED]`, and the rate-limit counter is bumped
    - other 5xx / network errors: `backoff[TRANSIENT]`

    Other 4xx answers and malformed payloads fail immediately.
    """

    def __init__(
        self,
        url: str,
        model_name: str,
        dimension: int,
        api_key: Optional[str] = None,
        max_attempts: int = 3,
        backoff: Optional[Dict[FailureKind, float]] = None,
        request_delay: float = 0.0,
        timeout: float = 30.0,
        payload_key: str = "inputs",
        http_client: Optional[httpx.Client] = None,
        stop_event: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.url = url
        self.model_name = model_name
        self.dimension = dimension
        self.max_attempts = max_attempts
        self.backoff: Dict[FailureKind, float] = {
            FailureKind.MODEL_LOADING: 2.0,
            FailureKind.RATE_LIMITED: 60.0,
            FailureKind.TRANSIENT: 2.0,
        }
        if backoff:
            self.backoff.update(backoff)
        self.request_delay = request_delay
        self.payload_key = payload_key
        self.stop_event = stop_event or threading.Event()
        self._sleep_fn = sleep

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = http_client or httpx.Client(timeout=timeout)
        self._headers = headers

        # Lifetime counters, also mirrored into JobStats when one is passed.
        self.api_calls = 0
        self.rate_limit_hits = 0
        self._last_request_at: Optional[float] = None

    @classmethod
    def from_settings(
        cls, settings: CodematchSettings, query: bool = False, **overrides: Any
    ) -> "HttpEmbeddingClient":
        """
        Builds a client from settings. Query-time clients use the shorter
        query timeout and attempt budget.
        """
        kwargs: Dict[str, Any] = {
            "url": settings.embedding_url,
            "model_name": settings.embedding_model,
            "dimension": settings.embedding_dimension,
            "api_key": settings.embedding_api_key,
            "max_attempts": settings.query_max_attempts if query else settings.max_attempts,
            "backoff": {
                FailureKind.MODEL_LOADING: settings.model_loading_delay,
                FailureKind.RATE_LIMITED: settings.rate_limit_delay,
                FailureKind.TRANSIENT: settings.transient_delay,
            },
            "request_delay": 0.0 if query else settings.request_delay,
            "timeout": settings.query_timeout_seconds if query else settings.request_timeout_seconds,
            "payload_key": settings.embedding_payload_key,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "HttpEmbeddingClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def embed(self, texts: Sequence[str], stats: Optional[JobStats] = None) -> List[Optional[List[float]]]:
        """
        Embeds each text. Failed items come back as None; the rest of the batch continues.

        Once a stop is requested no further requests are sent. The returned list
        then covers only the texts handled before the stop, in order.
        """
        results: List[Optional[List[float]]] = []
        for text in texts:
            if self.stop_event.is_set():
                break
            try:
                self._pace()
                results.append(self._embed_text(text, stats))
            except JobCancelledError:
                break
            except EmbeddingError as e:
                logger.warning(f"Embedding failed for {text[:60]!r}: {e}")
                results.append(None)
        if len(results) < len(texts):
            logger.warning(f"Stop requested: returning {len(results)} of {len(texts)} embeddings")
        return results

    def embed_one(self, text: str) -> List[float]:
        self._pace()
        return self._embed_text(text, None)

    def _pace(self) -> None:
        """Keeps at least `request_delay` seconds between consecutive provider calls, across batches."""
        if self.request_delay <= 0 or self._last_request_at is None:
            return
        wait = self.request_delay - (time.monotonic() - self._last_request_at)
        if wait > 0:
            self._sleep(wait)

    def _payload(self, text: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {self.payload_key: text}
        if self.payload_key == "inputs":
            payload["options"] = {"wait_for_model": True}
        return payload

    def _sleep(self, seconds: float) -> None:
        if self._sleep_fn is not None:
            self._sleep_fn(seconds)
            interrupted = self.stop_event.is_set()
        else:
            interrupted = self.stop_event.wait(seconds)
        if interrupted:
            raise JobCancelledError("Stop requested while waiting on the embedding provider")

    def _count_call(self, stats: Optional[JobStats]) -> None:
        self.api_calls += 1
        if stats is not None:
            stats.api_calls += 1

    def _count_rate_limit(self, stats: Optional[JobStats]) -> None:
        self.rate_limit_hits += 1
        if stats is not None:
            stats.rate_limit_hits += 1

    def _decode(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Embedding response is not JSON: {e}") from e

    def _embed_text(self, text: str, stats: Optional[JobStats]) -> List[float]:
        last_error = ""
        last_status: Optional[int] = None

        for attempt in range(1, self.max_attempts + 1):
            self._count_call(stats)
            try:
                response = self._client.post(self.url, json=self._payload(text), headers=self._headers)
            except httpx.TransportError as e:
                kind = FailureKind.TRANSIENT
                last_error = f"{type(e).__name__}: {e}"
            else:
                status = response.status_code
                if response.is_success:
                    parsed = parse_embedding_response(self._decode(response), expected=1)
                    return validate_vector(parsed.vectors[0], self.dimension)

                last_status = status
                last_error = f"HTTP {status}"
                if status == 503:
                    kind = FailureKind.MODEL_LOADING
                elif status == 429:
                    kind = FailureKind.RATE_LIMITED
                    self._count_rate_limit(stats)
                elif status >= 500:
                    kind = FailureKind.TRANSIENT
                else:
                    raise EmbeddingProviderUnavailable(
                        f"Embedding provider rejected request (HTTP {status}): {response.text[:200]}",
                        status_code=status,
                    )
            finally:
                self._last_request_at = time.monotonic()

            if attempt < self.max_attempts:
                delay = self.backoff[kind]
                logger.warning(
                    f"Embedding attempt {attempt}/{self.max_attempts} failed ({kind.value}, {last_error}); "
                    f"retrying in {delay}s"
                )
                self._sleep(delay)

        raise EmbeddingProviderUnavailable(
            f"Embedding provider unavailable after {self.max_attempts} attempts: {last_error}",
            status_code=last_status,
        )


class SentenceTransformerEmbedder:
    """
    Local embedder using a SentenceTransformer model (SapBERT by default).
    Reference: cambridgeltl/SapBERT-from-PubMedBERT-fulltext
    """

    def __init__(
        self,
        model_name: str = "cambridgeltl/SapBERT-from-PubMedBERT-fulltext",
        device: str = "cpu",
        dimension: Optional[int] = None,
    ) -> None:
        logger.info(f"Loading embedding model: {model_name} on {device}")
        try:
            self.model = SentenceTransformer(model_name, device=device)
        except Exception as e:
            logger.error(f"Failed to load model {model_name}: {e}")
            raise RuntimeError(f"Could not load embedding model: {e}") from e
        self.model_name = model_name
        self.dimension = dimension or int(self.model.get_sentence_embedding_dimension())

    def embed(self, texts: Sequence[str], stats: Optional[JobStats] = None) -> List[Optional[List[float]]]:
        if not texts:
            return []

        vectors = self.model.encode(list(texts), convert_to_numpy=True, show_progress_bar=False)
        if stats is not None:
            stats.api_calls += 1

        results: List[Optional[List[float]]] = []
        for text, vec in zip(texts, vectors, strict=True):
            try:
                results.append(validate_vector(vec.tolist(), self.dimension))
            except EmbeddingError as e:
                logger.warning(f"Rejected local embedding for {text[:60]!r}: {e}")
                results.append(None)
        return results

    def embed_one(self, text: str) -> List[float]:
        vector = self.model.encode(text, convert_to_numpy=True)
        return validate_vector(vector.tolist(), self.dimension)
