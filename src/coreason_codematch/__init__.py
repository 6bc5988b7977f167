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
coreason-codematch
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .build import CorpusBuilder
from .corpus import DuckDBCorpusStore
from .embedders import HttpEmbeddingClient, SentenceTransformerEmbedder
from .jobs import CorpusEmbeddingJob
from .normalizer import normalize, normalize_or_fallback
from .pipeline import Resolver, codematch_resolve, initialize, select_entity_text
from .retriever import HybridRetriever, QueryEmbedder
from .selector import CandidateSelector
from .verify import verify_embeddings

__all__ = [
    "CorpusBuilder",
    "DuckDBCorpusStore",
    "HttpEmbeddingClient",
    "SentenceTransformerEmbedder",
    "CorpusEmbeddingJob",
    "normalize",
    "normalize_or_fallback",
    "HybridRetriever",
    "QueryEmbedder",
    "CandidateSelector",
    "Resolver",
    "select_entity_text",
    "initialize",
    "codematch_resolve",
    "verify_embeddings",
]
