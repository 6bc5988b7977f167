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
Offline corpus maintenance.

Two passes, both resumable:

1. `populate_text`: fills normalized_embedding_text for rows that lack it.
2. `run`: embeds rows that lack an embedding and stores vector + text + model.

Rows are visited in ascending (code_value, code_system, country_code) order with
keyset paging, and every row is written on its own. Re-running after a crash or
a stop only touches rows that are still incomplete, so nothing already embedded
is sent to the provider again.
"""

import threading
from typing import Callable, Iterator, List, Optional, Tuple

from loguru import logger

from coreason_codematch.exceptions import CorpusStoreWriteError, JobCancelledError
from coreason_codematch.interfaces import CorpusStore, Embedder
from coreason_codematch.normalizer import normalize_or_fallback
from coreason_codematch.schemas import CodeEntry, JobFilter, JobStats, NormalizationSample

PageFetcher = Callable[[JobFilter, Optional[Tuple[str, str, str]], int], List[CodeEntry]]


class CorpusEmbeddingJob:
    def __init__(
        self,
        store: CorpusStore,
        embedder: Optional[Embedder] = None,
        page_size: int = 1000,
        stop_event: Optional[threading.Event] = None,
        sample_limit: int = 20,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.page_size = page_size
        self.stop_event = stop_event or threading.Event()
        self.sample_limit = sample_limit

    def stop(self) -> None:
        """Requests a graceful stop. The current row write finishes; the next batch does not start."""
        self.stop_event.set()

    def _check_stop(self) -> None:
        if self.stop_event.is_set():
            raise JobCancelledError("Stop requested")

    def _batches(
        self, fetch_page: PageFetcher, filters: JobFilter, batch_size: int, limit: Optional[int]
    ) -> Iterator[List[CodeEntry]]:
        after: Optional[Tuple[str, str, str]] = None
        seen = 0
        while True:
            page_limit = self.page_size if limit is None else min(self.page_size, limit - seen)
            if page_limit <= 0:
                return
            page = fetch_page(filters, after, page_limit)
            if not page:
                return
            logger.debug(f"Fetched page of {len(page)} codes (total: {seen + len(page)})")
            for i in range(0, len(page), batch_size):
                yield page[i : i + batch_size]
            seen += len(page)
            after = page[-1].key
            if len(page) < page_limit:
                return

    def _sample(self, stats: JobStats, entry: CodeEntry, text: str, dry_run: bool) -> None:
        if dry_run and len(stats.samples) < self.sample_limit:
            stats.samples.append(NormalizationSample(code_value=entry.code_value, before=entry.display_name, after=text))

    # --- Pass A: normalized text ---

    def populate_text(
        self, filters: Optional[JobFilter] = None, batch_size: int = 100, dry_run_limit: Optional[int] = None
    ) -> JobStats:
        """
        Fills normalized_embedding_text for rows where it is NULL. No provider calls.
        """
        filters = filters or JobFilter()
        stats = JobStats()
        dry_run = dry_run_limit is not None

        pending = self.store.count(filters, normalized=False)
        stats.total = min(pending, dry_run_limit) if dry_run else pending
        logger.info(f"Populating normalized text for {stats.total} codes{' (DRY RUN)' if dry_run else ''}")
        if stats.total == 0:
            logger.info("All codes already have normalized text. Nothing to do.")
            return stats.finish()

        try:
            for batch_no, batch in enumerate(
                self._batches(self.store.fetch_unnormalized_page, filters, batch_size, dry_run_limit), start=1
            ):
                self._check_stop()
                for entry in batch:
                    text = normalize_or_fallback(entry.display_name, entry.entity_type.value)
                    if not text:
                        logger.warning(f"Empty display name for {entry.code_value}, skipping")
                        stats.skipped += 1
                        continue
                    self._sample(stats, entry, text, dry_run)
                    stats.processed += 1
                    try:
                        self.store.update_normalized_text(entry, text)
                        stats.succeeded += 1
                    except CorpusStoreWriteError as e:
                        logger.error(f"Error updating {entry.code_value}: {e}")
                        stats.failed += 1
                self._log_progress(batch_no, stats)
        except JobCancelledError:
            stats.cancelled = True
            logger.warning("Text population stopped; rows written so far are kept")

        stats.finish()
        self._log_summary("NORMALIZED TEXT POPULATION", stats)
        return stats

    # --- Pass B: embeddings ---

    def run(
        self, filters: Optional[JobFilter] = None, batch_size: int = 10, dry_run_limit: Optional[int] = None
    ) -> JobStats:
        """
        Embeds every row in scope whose embedding is NULL.

        Args:
            filters: Optional code_system / country_code / entity_type restriction.
            batch_size: Rows per embedding batch.
            dry_run_limit: Cap on the working set; also collects before/after samples.
        """
        embedder = self.embedder
        if embedder is None:
            raise ValueError("An embedder is required to run the embedding pass")

        filters = filters or JobFilter()
        stats = JobStats()
        dry_run = dry_run_limit is not None

        pending = self.store.count(filters, embedded=False)
        stats.total = min(pending, dry_run_limit) if dry_run else pending
        logger.info(
            f"Embedding {stats.total} codes with {embedder.model_name} "
            f"in batches of {batch_size}{' (DRY RUN)' if dry_run else ''}"
        )
        if stats.total == 0:
            logger.info("No codes need embeddings - all done!")
            return stats.finish()

        try:
            for batch_no, batch in enumerate(
                self._batches(self.store.fetch_unembedded_page, filters, batch_size, dry_run_limit), start=1
            ):
                self._check_stop()
                self._embed_batch(embedder, batch, stats, dry_run)
                self._log_progress(batch_no, stats)
                self._check_stop()
        except JobCancelledError:
            stats.cancelled = True
            logger.warning("Embedding job stopped; rows written so far are kept")

        stats.finish()
        self._log_summary("EMBEDDING GENERATION", stats)
        return stats

    def _embed_batch(self, embedder: Embedder, batch: List[CodeEntry], stats: JobStats, dry_run: bool) -> None:
        rows: List[CodeEntry] = []
        texts: List[str] = []

        for entry in batch:
            text = entry.normalized_embedding_text or normalize_or_fallback(
                entry.display_name, entry.entity_type.value
            )
            if not text.strip():
                logger.warning(f"No embeddable text for {entry.code_value}, skipping")
                stats.skipped += 1
                continue
            self._sample(stats, entry, text, dry_run)
            rows.append(entry)
            texts.append(text)

        if not rows:
            return

        vectors = embedder.embed(texts, stats)
        if len(vectors) < len(rows):
            logger.warning(f"Batch cut short after {len(vectors)} of {len(rows)} rows; the rest stay pending")
        batch_succeeded = 0
        batch_failed = 0
        for entry, text, vector in zip(rows, texts, vectors):
            if vector is None:
                logger.error(f"Failed to generate embedding for {entry.code_value}")
                batch_failed += 1
                continue
            try:
                self.store.update_embedding(entry, text, vector, embedder.model_name)
                batch_succeeded += 1
            except CorpusStoreWriteError as e:
                logger.error(f"Database update failed for {entry.code_value}: {e}")
                batch_failed += 1

        stats.processed += len(vectors)
        stats.succeeded += batch_succeeded
        stats.failed += batch_failed
        logger.info(f"Batch complete: {batch_succeeded} succeeded, {batch_failed} failed")

    # --- Reporting ---

    def _log_progress(self, batch_no: int, stats: JobStats) -> None:
        done = stats.processed + stats.skipped
        percent = (done / stats.total * 100) if stats.total else 100.0
        rate = stats.throughput
        remaining = (stats.total - done) / rate if rate > 0 else 0.0
        logger.info(
            f"Batch {batch_no}: {percent:.1f}% ({stats.succeeded} succeeded, {stats.failed} failed, "
            f"{stats.skipped} skipped) | {rate:.1f} codes/sec, ETA {int(remaining // 60)}m {int(remaining % 60)}s | "
            f"API calls: {stats.api_calls}, rate limits hit: {stats.rate_limit_hits}"
        )

    def _log_summary(self, title: str, stats: JobStats) -> None:
        logger.info(
            f"{title} {'STOPPED' if stats.cancelled else 'COMPLETE'}: total={stats.total} "
            f"processed={stats.processed} succeeded={stats.succeeded} failed={stats.failed} "
            f"skipped={stats.skipped} duration={stats.elapsed_seconds:.1f}s rate={stats.throughput:.1f}/s "
            f"api_calls={stats.api_calls} rate_limit_hits={stats.rate_limit_hits}"
        )
        if stats.failed > 0:
            logger.warning(f"{stats.failed} rows failed - re-run to retry them")
        for sample in stats.samples:
            logger.info(f"[sample] {sample.code_value}: {sample.before!r} -> {sample.after!r}")
