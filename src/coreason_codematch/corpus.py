# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

import threading
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence, Tuple, Union

import duckdb
from loguru import logger

from coreason_codematch.exceptions import CorpusStoreWriteError
from coreason_codematch.interfaces import VectorIndex
from coreason_codematch.schemas import CODE_ENTRY_COLUMNS, CodeEntry, JobFilter

TABLE = "code_entries"
COLUMNS_SQL = ", ".join(CODE_ENTRY_COLUMNS)

# No PRIMARY KEY/index: DuckDB rewrites LIST columns on UPDATE, which trips
# index constraint checks. Uniqueness is enforced by CorpusBuilder on import.
SCHEMA_SQL = f"""
    CREATE TABLE IF NOT EXISTS {TABLE} (
        code_system VARCHAR NOT NULL,
        code_value VARCHAR NOT NULL,
        country_code VARCHAR NOT NULL,
        display_name VARCHAR NOT NULL,
        search_text VARCHAR,
        normalized_embedding_text VARCHAR,
        embedding FLOAT[],
        embedding_model VARCHAR,
        entity_type VARCHAR NOT NULL,
        active BOOLEAN NOT NULL DEFAULT TRUE
    )
"""

ORDER_SQL = "ORDER BY code_value ASC, code_system ASC, country_code ASC"
KEYSET_SQL = (
    "(code_value > ? OR (code_value = ? AND code_system > ?) "
    "OR (code_value = ? AND code_system = ? AND country_code > ?))"
)

Key = Tuple[str, str, str]


def _filter_clause(filters: JobFilter, active: Optional[bool] = None) -> Tuple[List[str], List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if filters.code_system:
        clauses.append("code_system = ?")
        params.append(filters.code_system)
    if filters.country_code:
        clauses.append("country_code = ?")
        params.append(filters.country_code)
    if filters.entity_type:
        clauses.append("entity_type = ?")
        params.append(filters.entity_type.value)
    if active is not None:
        clauses.append("active = ?")
        params.append(active)
    return clauses, params


def _keyset_params(after: Key) -> List[Any]:
    value, system, country = after
    return [value, value, system, value, system, country]


def _where(clauses: List[str]) -> str:
    return ("WHERE " + " AND ".join(clauses)) if clauses else ""


class DuckDBCorpusStore:
    """
    Code corpus backed by a DuckDB table.

    Reads open a fresh cursor per call so the lexical and vector passes can run
    on different threads. Writes are serialized; each row is its own statement,
    so one failed row never rolls back another.
    """

    def __init__(self, conn: duckdb.DuckDBPyConnection, vector_index: Optional[VectorIndex] = None):
        self.conn = conn
        self.vector_index = vector_index
        self._write_lock = threading.Lock()

    @classmethod
    def open(
        cls, db_path: Union[str, Path], read_only: bool = False, vector_index: Optional[VectorIndex] = None
    ) -> "DuckDBCorpusStore":
        path = Path(db_path)
        if read_only and not path.exists():
            raise FileNotFoundError(f"Corpus database not found at: {path}")
        if not read_only:
            path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Connecting to DuckDB at {path}")
        try:
            conn = duckdb.connect(str(path), read_only=read_only)
        except duckdb.Error as e:
            logger.error(f"Failed to connect to DuckDB: {e}")
            raise ValueError(f"Failed to initialize DuckDB connection: {e}") from e
        store = cls(conn, vector_index=vector_index)
        if not read_only:
            store.ensure_schema()
        return store

    def ensure_schema(self) -> None:
        self.conn.execute(SCHEMA_SQL)

    def close(self) -> None:
        self.conn.close()

    def _query(self, sql: str, params: Sequence[Any]) -> List[Tuple[Any, ...]]:
        with self.conn.cursor() as cur:
            return cur.execute(sql, list(params)).fetchall()

    # --- Reads ---

    def get(
        self, code_value: str, code_system: Optional[str] = None, country_code: Optional[str] = None
    ) -> Optional[CodeEntry]:
        """Point lookup by code_value, optionally narrowed by system and country."""
        clauses = ["code_value = ?"]
        params: List[Any] = [code_value]
        if code_system:
            clauses.append("code_system = ?")
            params.append(code_system)
        if country_code:
            clauses.append("country_code = ?")
            params.append(country_code)
        rows = self._query(f"SELECT {COLUMNS_SQL} FROM {TABLE} {_where(clauses)} {ORDER_SQL} LIMIT 1", params)
        return CodeEntry.from_row(rows[0]) if rows else None

    def count(
        self,
        filters: Optional[JobFilter] = None,
        embedded: Optional[bool] = None,
        normalized: Optional[bool] = None,
    ) -> int:
        clauses, params = _filter_clause(filters or JobFilter())
        if normalized is True:
            clauses.append("normalized_embedding_text IS NOT NULL")
        elif normalized is False:
            clauses.append("normalized_embedding_text IS NULL")
        if embedded is True:
            clauses.append("embedding IS NOT NULL")
        elif embedded is False:
            clauses.append("embedding IS NULL")
        rows = self._query(f"SELECT count(*) FROM {TABLE} {_where(clauses)}", params)
        return int(rows[0][0])

    def _page(
        self, clauses: List[str], params: List[Any], after: Optional[Key], limit: int
    ) -> List[CodeEntry]:
        clauses = list(clauses)
        params = list(params)
        if after is not None:
            clauses.append(KEYSET_SQL)
            params.extend(_keyset_params(after))
        params.append(limit)
        rows = self._query(f"SELECT {COLUMNS_SQL} FROM {TABLE} {_where(clauses)} {ORDER_SQL} LIMIT ?", params)
        return [CodeEntry.from_row(r) for r in rows]

    def scan(
        self,
        filters: JobFilter,
        active: Optional[bool] = None,
        page_size: int = 1000,
        embedded: Optional[bool] = None,
    ) -> Iterator[List[CodeEntry]]:
        """Yields fixed-size pages of rows matching the filter, in key order."""
        clauses, params = _filter_clause(filters, active)
        if embedded is True:
            clauses.append("embedding IS NOT NULL")
        elif embedded is False:
            clauses.append("embedding IS NULL")

        after: Optional[Key] = None
        while True:
            page = self._page(clauses, params, after, page_size)
            if not page:
                break
            yield page
            if len(page) < page_size:
                break
            after = page[-1].key

    def sample_embedded(self, filters: JobFilter, limit: int) -> List[CodeEntry]:
        """First `limit` embedded rows in key order, for quality checks."""
        clauses, params = _filter_clause(filters)
        clauses.append("embedding IS NOT NULL")
        return self._page(clauses, params, None, limit)

    def fetch_unnormalized_page(self, filters: JobFilter, after: Optional[Key], limit: int) -> List[CodeEntry]:
        clauses, params = _filter_clause(filters)
        clauses.append("normalized_embedding_text IS NULL")
        return self._page(clauses, params, after, limit)

    def fetch_unembedded_page(self, filters: JobFilter, after: Optional[Key], limit: int) -> List[CodeEntry]:
        clauses, params = _filter_clause(filters)
        clauses.append("embedding IS NULL")
        return self._page(clauses, params, after, limit)

    # --- Writes ---

    def _update(self, entry: CodeEntry, set_sql: str, params: List[Any]) -> None:
        sql = f"UPDATE {TABLE} SET {set_sql} WHERE code_system = ? AND code_value = ? AND country_code = ?"
        params = params + [entry.code_system, entry.code_value, entry.country_code]
        with self._write_lock:
            try:
                result = self.conn.execute(sql, params).fetchone()
            except duckdb.Error as e:
                raise CorpusStoreWriteError(entry.code_value, str(e)) from e
        if result is not None and result[0] == 0:
            raise CorpusStoreWriteError(entry.code_value, "row not found")

    def update_normalized_text(self, entry: CodeEntry, text: str) -> None:
        """Stores new normalized text. Any existing embedding is invalidated."""
        self._update(
            entry,
            "normalized_embedding_text = ?, embedding = NULL, embedding_model = NULL",
            [text],
        )

    def update_embedding(self, entry: CodeEntry, text: str, vector: List[float], model: str) -> None:
        """Stores the vector together with the exact text and model that produced it."""
        self._update(
            entry,
            "normalized_embedding_text = ?, embedding = CAST(? AS FLOAT[]), embedding_model = ?",
            [text, vector, model],
        )

    # --- Search ---

    def lexical_search(self, terms: Sequence[str], filters: JobFilter, limit: int) -> List[Tuple[CodeEntry, float]]:
        """
        Scores active rows by the fraction of query terms that occur as whole
        words in search_text or display_name.
        """
        if not terms:
            return []

        clauses, params = _filter_clause(filters, active=True)
        matches = " + ".join(["CAST(regexp_matches(haystack, ?) AS INTEGER)"] * len(terms))
        term_params = [rf"\b{t}\b" for t in terms]

        sql = f"""
            WITH filtered AS (
                SELECT {COLUMNS_SQL},
                       lower(coalesce(search_text, '') || ' ' || display_name) AS haystack
                FROM {TABLE}
                {_where(clauses)}
            ),
            scored AS (
                SELECT {COLUMNS_SQL}, CAST(({matches}) AS DOUBLE) / ? AS relevance
                FROM filtered
            )
            SELECT {COLUMNS_SQL}, relevance
            FROM scored
            WHERE relevance > 0
            ORDER BY relevance DESC, code_value ASC
            LIMIT ?
        """
        rows = self._query(sql, params + term_params + [float(len(terms)), limit])
        return [(CodeEntry.from_row(r[:-1]), float(r[-1])) for r in rows]

    def nearest(self, vector: List[float], filters: JobFilter, limit: int) -> List[Tuple[CodeEntry, float]]:
        """
        Top rows by cosine similarity. Uses the attached vector index when there is
        one, otherwise an exact scan.
        """
        if self.vector_index is not None:
            return self._nearest_indexed(self.vector_index, vector, filters, limit)

        clauses, params = _filter_clause(filters, active=True)
        clauses.append("embedding IS NOT NULL")
        sql = f"""
            SELECT {COLUMNS_SQL}, list_cosine_similarity(embedding, CAST(? AS FLOAT[])) AS similarity
            FROM {TABLE}
            {_where(clauses)}
            ORDER BY similarity DESC, code_value ASC
            LIMIT ?
        """
        rows = self._query(sql, [vector] + params + [limit])
        return [(CodeEntry.from_row(r[:-1]), float(r[-1])) for r in rows if r[-1] is not None]

    def _nearest_indexed(
        self, index: VectorIndex, vector: List[float], filters: JobFilter, limit: int
    ) -> List[Tuple[CodeEntry, float]]:
        hits = index.search(vector, filters, limit)
        if not hits:
            return []

        scores = {key: score for key, score in hits}
        key_sql = " OR ".join(["(code_value = ? AND code_system = ? AND country_code = ?)"] * len(scores))
        params: List[Any] = [part for key in scores for part in key]

        # Re-check active/filters against the store; the index may be older than the table.
        clauses, filter_params = _filter_clause(filters, active=True)
        clauses.append(f"({key_sql})")
        rows = self._query(f"SELECT {COLUMNS_SQL} FROM {TABLE} {_where(clauses)}", filter_params + params)

        results = [(entry, scores[entry.key]) for entry in (CodeEntry.from_row(r) for r in rows)]
        results.sort(key=lambda x: (-x[1], x[0].code_value))
        return results[:limit]
