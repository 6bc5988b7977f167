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
Error taxonomy for the matching engine.

Recoverable errors (empty normalization, provider unavailable, per-row write
failure) are handled by the batch job and the retriever. Item-level errors
(dimension mismatch, invalid values, malformed response) fail a single item.
"""

from typing import Optional


class CodematchError(Exception):
    """Base class for all coreason-codematch errors."""


class EmptyNormalizationError(CodematchError):
    """Normalization removed every token from the input."""

    def __init__(self, display_name: str):
        super().__init__(f"Normalization produced an empty string for: {display_name!r}")
        self.display_name = display_name


class EmbeddingError(CodematchError):
    """Base class for embedding generation failures."""


class EmbeddingProviderUnavailable(EmbeddingError):
    """The provider could not produce a vector after all attempts."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedResponseError(EmbeddingError):
    """The provider answered with a payload shape we do not recognize."""


class DimensionMismatchError(EmbeddingError):
    def __init__(self, expected: int, actual: int):
        super().__init__(f"Expected embedding dimension {expected}, got {actual}")
        self.expected = expected
        self.actual = actual


class InvalidVectorValuesError(EmbeddingError):
    """Vector is all zeros or contains NaN/inf."""


class CorpusStoreWriteError(CodematchError):
    def __init__(self, code_value: str, reason: str):
        super().__init__(f"Failed to write corpus row {code_value}: {reason}")
        self.code_value = code_value


class RetrievalUnavailable(CodematchError):
    """Both the lexical and the vector pass failed for a query."""


class JobCancelledError(CodematchError):
    """A stop was requested while the job was waiting or between batches."""


# Names used by callers that speak in terms of the failure taxonomy.
NormalizationEmptyResult = EmptyNormalizationError
EmbeddingUnavailable = EmbeddingProviderUnavailable
DimensionMismatch = DimensionMismatchError
InvalidVectorValues = InvalidVectorValuesError
CorpusStoreWriteFailure = CorpusStoreWriteError
