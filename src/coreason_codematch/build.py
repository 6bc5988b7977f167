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
from typing import List, Union

import duckdb
from loguru import logger

from coreason_codematch.corpus import TABLE, DuckDBCorpusStore
from coreason_codematch.schemas import EntityType, ImportStats, JobFilter
from coreason_codematch.vector_index import LanceVectorIndex

STAGING = "staging_code_entries"
KEY_MATCH = "t.code_system = s.code_system AND t.code_value = s.code_value AND t.country_code = s.country_code"
TEXT_CHANGED = "(t.display_name IS DISTINCT FROM s.display_name OR t.search_text IS DISTINCT FROM s.search_text)"


class CorpusBuilder:
    """
    Offline utility to import code corpus CSVs into the DuckDB store and to
    snapshot stored embeddings into a LanceDB index.

    Imports never delete rows. A row whose display_name or search_text changed
    has its normalized text and embedding reset so the embedding job redoes it.
    """

    REQUIRED_COLUMNS = ["code_system", "code_value", "country_code", "display_name", "entity_type"]

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)

    def _verify_source(self, csv_path: Path) -> None:
        if not csv_path.exists():
            raise FileNotFoundError(f"Source file not found: {csv_path}")

    def import_csv(self, csv_path: Union[str, Path]) -> ImportStats:
        """
        Imports or refreshes corpus rows from a CSV with a header row.

        Required columns: code_system, code_value, country_code, display_name, entity_type.
        Optional columns: search_text, active.
        """
        csv_path = Path(csv_path)
        self._verify_source(csv_path)
        logger.info(f"Importing corpus from {csv_path} into {self.db_path}")

        store = DuckDBCorpusStore.open(self.db_path)
        con = store.conn
        try:
            source = str(csv_path).replace("'", "''")
            con.execute(
                f"CREATE OR REPLACE TEMP TABLE {STAGING}_raw AS "
                f"SELECT * FROM read_csv_auto('{source}', header=True, all_varchar=True)"
            )
            columns = [row[0] for row in con.execute(f"DESCRIBE {STAGING}_raw").fetchall()]
            self._check_columns(columns)
            self._stage(con, columns)
            stats = self._merge(con)
            logger.info(
                f"Import complete: {stats.inserted} inserted, {stats.updated} updated "
                f"({stats.reset} reset for re-embedding), {stats.unchanged} unchanged"
            )
            return stats
        except duckdb.Error as e:
            logger.error(f"Failed to import corpus: {e}")
            raise RuntimeError(f"Import failed: {e}") from e
        finally:
            store.close()

    def _check_columns(self, columns: List[str]) -> None:
        missing = [c for c in self.REQUIRED_COLUMNS if c not in columns]
        if missing:
            raise ValueError(f"Corpus CSV is missing required columns: {', '.join(missing)}")

    def _stage(self, con: duckdb.DuckDBPyConnection, columns: List[str]) -> None:
        search_text = "NULLIF(trim(search_text), '')" if "search_text" in columns else "NULL"
        active = "TRUE"
        if "active" in columns:
            active = "coalesce(lower(trim(active)) IN ('true', 't', '1', 'yes', 'y'), TRUE)"
        con.execute(f"""
            CREATE OR REPLACE TEMP TABLE {STAGING} AS
            SELECT DISTINCT ON (code_system, code_value, country_code)
                trim(code_system) AS code_system,
                trim(code_value) AS code_value,
                trim(country_code) AS country_code,
                trim(display_name) AS display_name,
                {search_text} AS search_text,
                lower(trim(entity_type)) AS entity_type,
                {active} AS active
            FROM {STAGING}_raw
            WHERE NULLIF(trim(code_system), '') IS NOT NULL AND NULLIF(trim(code_value), '') IS NOT NULL
              AND NULLIF(trim(country_code), '') IS NOT NULL AND NULLIF(trim(display_name), '') IS NOT NULL
              AND NULLIF(trim(entity_type), '') IS NOT NULL
        """)
        dropped = con.execute(
            f"SELECT (SELECT count(*) FROM {STAGING}_raw) - (SELECT count(*) FROM {STAGING})"
        ).fetchone()[0]
        if dropped:
            logger.warning(f"Dropped {dropped} duplicate or incomplete CSV rows")

        allowed = [e.value for e in EntityType]
        bad = con.execute(
            f"SELECT DISTINCT entity_type FROM {STAGING} WHERE entity_type NOT IN ({', '.join(['?'] * len(allowed))})",
            allowed,
        ).fetchall()
        if bad:
            raise ValueError(f"Unknown entity_type values: {', '.join(str(b[0]) for b in bad)}")

    def _merge(self, con: duckdb.DuckDBPyConnection) -> ImportStats:
        stats = ImportStats()

        stats.reset = con.execute(
            f"SELECT count(*) FROM {TABLE} t JOIN {STAGING} s ON {KEY_MATCH} WHERE {TEXT_CHANGED}"
        ).fetchone()[0]
        stats.updated = con.execute(
            f"""SELECT count(*) FROM {TABLE} t JOIN {STAGING} s ON {KEY_MATCH}
                WHERE {TEXT_CHANGED} OR t.entity_type <> s.entity_type OR t.active <> s.active"""
        ).fetchone()[0]
        existing = con.execute(f"SELECT count(*) FROM {TABLE} t JOIN {STAGING} s ON {KEY_MATCH}").fetchone()[0]
        stats.unchanged = existing - stats.updated

        # Text changed: the old normalization/embedding no longer describe the row.
        con.execute(f"""
            UPDATE {TABLE} AS t SET
                display_name = s.display_name,
                search_text = s.search_text,
                entity_type = s.entity_type,
                active = s.active,
                normalized_embedding_text = NULL,
                embedding = NULL,
                embedding_model = NULL
            FROM {STAGING} AS s
            WHERE {KEY_MATCH} AND {TEXT_CHANGED}
        """)
        con.execute(f"""
            UPDATE {TABLE} AS t SET
                entity_type = s.entity_type,
                active = s.active
            FROM {STAGING} AS s
            WHERE {KEY_MATCH} AND (t.entity_type <> s.entity_type OR t.active <> s.active)
        """)

        stats.inserted = con.execute(
            f"SELECT count(*) FROM {STAGING} s WHERE NOT EXISTS (SELECT 1 FROM {TABLE} t WHERE {KEY_MATCH})"
        ).fetchone()[0]
        con.execute(f"""
            INSERT INTO {TABLE} (code_system, code_value, country_code, display_name, search_text, entity_type, active)
            SELECT s.code_system, s.code_value, s.country_code, s.display_name, s.search_text, s.entity_type, s.active
            FROM {STAGING} s
            WHERE NOT EXISTS (SELECT 1 FROM {TABLE} t WHERE {KEY_MATCH})
        """)
        return stats

    def build_index(self, index_dir: Union[str, Path], page_size: int = 1000) -> int:
        """
        Builds the LanceDB vector index from every embedded row.

        Returns:
            Number of vectors indexed.
        """
        if not self.db_path.exists():
            raise FileNotFoundError(f"Corpus database not found at: {self.db_path}. Run import first.")

        logger.info(f"Building vector index in LanceDB at {index_dir}")
        store = DuckDBCorpusStore.open(self.db_path, read_only=True)
        try:
            index = LanceVectorIndex(index_dir)
            return index.build(store.scan(JobFilter(), page_size=page_size, embedded=True))
        except Exception as e:
            logger.error(f"Failed to build vector index: {e}")
            raise RuntimeError(f"Vector index build failed: {e}") from e
        finally:
            store.close()
