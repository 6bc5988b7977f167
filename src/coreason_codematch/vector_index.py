# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

import itertools
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Tuple, Union

import lancedb
from loguru import logger

from coreason_codematch.schemas import CodeEntry, JobFilter

Key = Tuple[str, str, str]


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def filter_expression(filters: JobFilter) -> str:
    """Builds a LanceDB SQL predicate for the active rows in scope."""
    parts = ["active = true"]
    if filters.code_system:
        parts.append(f"code_system = {_quote(filters.code_system)}")
    if filters.country_code:
        parts.append(f"country_code = {_quote(filters.country_code)}")
    if filters.entity_type:
        parts.append(f"entity_type = {_quote(filters.entity_type.value)}")
    return " AND ".join(parts)


class LanceVectorIndex:
    """
    Cosine nearest-neighbour index over corpus embeddings, stored in LanceDB.

    The index holds keys and filter columns only; callers hydrate full rows from
    the corpus store.
    """

    def __init__(self, index_dir: Union[str, Path], table_name: str = "code_vectors"):
        self.index_dir = Path(index_dir)
        self.table_name = table_name
        self.db = lancedb.connect(str(self.index_dir))
        self._table: Any = None

    @property
    def table(self) -> Any:
        if self._table is None:
            try:
                self._table = self.db.open_table(self.table_name)
            except Exception as e:
                logger.error(f"Failed to open LanceDB table '{self.table_name}': {e}")
                raise ValueError(f"LanceDB table '{self.table_name}' not found.") from e
        return self._table

    @staticmethod
    def _records(page: List[CodeEntry]) -> List[Dict[str, Any]]:
        return [
            {
                "vector": entry.embedding,
                "code_value": entry.code_value,
                "code_system": entry.code_system,
                "country_code": entry.country_code,
                "entity_type": entry.entity_type.value,
                "active": entry.active,
            }
            for entry in page
            if entry.embedding is not None
        ]

    def build(self, pages: Iterable[List[CodeEntry]]) -> int:
        """
        Overwrites the index with every embedded entry in `pages`.

        Pages are converted and handed to LanceDB one at a time, so only a
        single page of vectors is held in memory.

        Returns:
            Number of vectors written.
        """
        batches = (batch for batch in map(self._records, pages) if batch)
        first = next(batches, None)
        if first is None:
            logger.warning("No embedded rows to index")
            return 0

        written = 0

        def batch_generator() -> Iterator[List[Dict[str, Any]]]:
            nonlocal written
            for batch in itertools.chain([first], batches):
                written += len(batch)
                logger.info(f"Processed batch of {len(batch)} vectors")
                yield batch

        self._table = self.db.create_table(self.table_name, data=batch_generator(), mode="overwrite")
        logger.info(f"Vector table '{self.table_name}' built with {written} rows at {self.index_dir}")
        return written

    def search(self, vector: List[float], filters: JobFilter, limit: int) -> List[Tuple[Key, float]]:
        results = (
            self.table.search(vector)
            .distance_type("cosine")
            .where(filter_expression(filters), prefilter=True)
            .limit(limit)
            .to_list()
        )

        # Keep the best (first) score per key; cosine distance = 1 - similarity.
        hits: Dict[Key, float] = {}
        for r in results:
            key = (r["code_value"], r["code_system"], r["country_code"])
            if key not in hits:
                hits[key] = 1.0 - float(r["_distance"])
        return list(hits.items())
