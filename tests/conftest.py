# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

import csv
import hashlib
from pathlib import Path
from typing import Generator, List, Optional, Sequence, Set, cast

import numpy as np
import pytest

from coreason_codematch.config import CodematchSettings
from coreason_codematch.corpus import TABLE, DuckDBCorpusStore
from coreason_codematch.normalizer import normalize_or_fallback
from coreason_codematch.schemas import JobFilter, JobStats

# --- Mocks ---


class MockEmbedder:
    """
    Deterministic embedder for testing.
    Hashes character trigrams into buckets, so strings that share spelling
    get similar vectors.
    Dimension: 256
    """

    def __init__(self, dim: int = 256, fail_on: Optional[Set[str]] = None):
        self.dim = dim
        self.model_name = "mock-trigram-v1"
        self.fail_on = fail_on or set()
        self.calls = 0

    def vector(self, text: str) -> List[float]:
        padded = f"  {text.lower()} "
        vec = np.zeros(self.dim)
        for i in range(len(padded) - 2):
            gram = padded[i : i + 3]
            bucket = int(hashlib.sha256(gram.encode("utf-8")).hexdigest(), 16) % self.dim
            vec[bucket] += 1.0
        return cast(List[float], (vec / np.linalg.norm(vec)).tolist())

    def embed(self, texts: Sequence[str], stats: Optional[JobStats] = None) -> List[Optional[List[float]]]:
        results: List[Optional[List[float]]] = []
        for text in texts:
            self.calls += 1
            if stats is not None:
                stats.api_calls += 1
            results.append(None if text in self.fail_on else self.vector(text))
        return results

    def embed_one(self, text: str) -> List[float]:
        self.calls += 1
        return self.vector(text)


# (code_system, code_value, country_code, display_name, search_text, entity_type, active)
SAMPLE_ENTRIES = [
    ("AMT", "1001", "AU", "Amoxicillin Capsule 500 mg (as trihydrate) (Amoxil)", "amoxil", "medication", True),
    ("AMT", "1002", "AU", "Cefalexin Capsule 500 mg (as monohydrate)", "keflex", "medication", True),
    ("AMT", "1003", "AU", "Metoprolol Tartrate Tablet 50 mg", None, "medication", True),
    ("AMT", "1004", "AU", "Metformin Hydrochloride Tablet 500 mg", "diabex", "medication", True),
    ("AMT", "1005", "AU", "Amoxicillin with Clavulanic Acid Tablet 875 mg-125 mg", "augmentin", "medication", True),
    ("AMT", "1006", "AU", "Ampicillin Injection 1 g", None, "medication", False),
    ("MBS", "23", "AU", "Professional attendance level B consultation", "gp consult", "procedure", True),
    ("SNOMED", "91936005", "NZ", "Allergy to penicillin", None, "allergy", True),
]


def insert_entries(store: DuckDBCorpusStore, entries: Sequence[tuple] = SAMPLE_ENTRIES) -> None:
    store.conn.executemany(
        f"INSERT INTO {TABLE} (code_system, code_value, country_code, display_name, search_text, entity_type, active) "
        "VALUES (?, ?, ?, ?, ?, ?, ?)",
        [list(e) for e in entries],
    )


def embed_all(store: DuckDBCorpusStore, embedder: MockEmbedder) -> None:
    for page in store.scan(JobFilter(), embedded=False):
        for entry in page:
            text = normalize_or_fallback(entry.display_name)
            store.update_embedding(entry, text, embedder.vector(text), embedder.model_name)


# --- Fixtures ---


@pytest.fixture
def mock_embedder() -> MockEmbedder:
    return MockEmbedder()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "corpus.duckdb"


@pytest.fixture
def store(db_path: Path) -> Generator[DuckDBCorpusStore, None, None]:
    """Writable store seeded with SAMPLE_ENTRIES, nothing normalized or embedded."""
    s = DuckDBCorpusStore.open(db_path)
    insert_entries(s)
    yield s
    s.close()


@pytest.fixture
def embedded_store(store: DuckDBCorpusStore, mock_embedder: MockEmbedder) -> DuckDBCorpusStore:
    embed_all(store, mock_embedder)
    return store


@pytest.fixture
def settings(db_path: Path) -> CodematchSettings:
    return CodematchSettings(
        db_path=str(db_path),
        embedding_url="http://embed.test/models/sapbert",
        embedding_dimension=256,
        request_delay=0.0,
        model_loading_delay=0.0,
        rate_limit_delay=0.0,
        transient_delay=0.0,
        _env_file=None,
    )


@pytest.fixture
def corpus_csv(tmp_path: Path) -> Path:
    path = tmp_path / "corpus.csv"
    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(
            ["code_system", "code_value", "country_code", "display_name", "search_text", "entity_type", "active"]
        )
        for row in SAMPLE_ENTRIES:
            writer.writerow(["" if v is None else v for v in row])
    return path
