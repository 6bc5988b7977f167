# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Any, Iterator, Optional

import typer
from loguru import logger

from coreason_codematch import __version__
from coreason_codematch.build import CorpusBuilder
from coreason_codematch.config import CodematchSettings, get_settings
from coreason_codematch.corpus import DuckDBCorpusStore
from coreason_codematch.embedders import HttpEmbeddingClient, SentenceTransformerEmbedder
from coreason_codematch.interfaces import Embedder
from coreason_codematch.jobs import CorpusEmbeddingJob
from coreason_codematch.pipeline import CodematchContext, codematch_resolve, initialize
from coreason_codematch.schemas import EntityType, JobFilter, JobStats, ResolveStatus
from coreason_codematch.verify import verify_embeddings

app = typer.Typer(
    name="coreason-codematch",
    help="CLI for coreason-codematch: clinical entity to regional code matching.",
    add_completion=False,
)

DbOption = Annotated[Optional[Path], typer.Option("--db", help="Path to the corpus DuckDB file")]


def _settings(db: Optional[Path], index: Optional[Path] = None) -> CodematchSettings:
    settings = get_settings()
    update: dict[str, Any] = {}
    if db is not None:
        update["db_path"] = str(db)
    if index is not None:
        update["index_path"] = str(index)
    return settings.model_copy(update=update) if update else settings


def _report(stats: JobStats) -> None:
    typer.echo(stats.model_dump_json(indent=2, exclude={"samples"}))
    for sample in stats.samples:
        typer.echo(f"{sample.code_value}: {sample.before!r} -> {sample.after!r}")


@contextmanager
def _stop_on_sigint(job: CorpusEmbeddingJob) -> Iterator[None]:
    def handler(signum: int, frame: Any) -> None:
        logger.warning("Interrupt received, stopping after the current row")
        job.stop()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


@app.command("import")
def import_corpus(
    csv: Annotated[Path, typer.Option("--csv", "-c", help="Path to the corpus CSV", exists=True)],
    db: DbOption = None,
) -> None:
    """
    Import or refresh corpus rows from a CSV file.
    """
    settings = _settings(db)
    logger.info(f"Starting corpus import from {csv} to {settings.db_path}")
    try:
        stats = CorpusBuilder(settings.db_path).import_csv(csv)
        typer.echo(stats.model_dump_json(indent=2))
    except Exception:
        logger.exception("Corpus Import Failed")
        sys.exit(1)


@app.command("populate-text")
def populate_text(
    db: DbOption = None,
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Process a small sample and show before/after")] = False,
) -> None:
    """
    Fill normalized embedding text for rows that lack it.
    """
    settings = _settings(db)
    try:
        store = DuckDBCorpusStore.open(settings.db_path)
        try:
            job = CorpusEmbeddingJob(store, page_size=settings.page_size)
            with _stop_on_sigint(job):
                stats = job.populate_text(dry_run_limit=settings.dry_run_limit if dry_run else None)
        finally:
            store.close()
    except Exception:
        logger.exception("Normalized Text Population Failed")
        sys.exit(1)

    _report(stats)
    sys.exit(stats.exit_code)


@app.command()
def embed(
    db: DbOption = None,
    dry_run: Annotated[bool, typer.Option("--dry-run", help="Embed a small sample only")] = False,
    batch_size: Annotated[Optional[int], typer.Option("--batch-size", "-b", help="Rows per batch", min=1)] = None,
    code_system: Annotated[Optional[str], typer.Option("--code-system", help="Only this code system")] = None,
    country: Annotated[Optional[str], typer.Option("--country", help="Only this country code")] = None,
    entity_type: Annotated[Optional[EntityType], typer.Option("--entity-type", help="Only this entity type")] = None,
    local: Annotated[bool, typer.Option("--local", help="Use a local SentenceTransformer model")] = False,
    device: Annotated[str, typer.Option("--device", "-d", help="Device for local embedding (cpu/cuda)")] = "cpu",
) -> None:
    """
    Generate embeddings for rows that lack one. Exits 1 if any row failed.
    """
    settings = _settings(db)
    filters = JobFilter(code_system=code_system, country_code=country, entity_type=entity_type)

    try:
        embedder: Embedder
        if local:
            logger.info(f"Initializing local embedder on {device}...")
            embedder = SentenceTransformerEmbedder(settings.embedding_model, device=device)
        else:
            embedder = HttpEmbeddingClient.from_settings(settings)

        store = DuckDBCorpusStore.open(settings.db_path)
        try:
            job = CorpusEmbeddingJob(store, embedder, page_size=settings.page_size)
            if isinstance(embedder, HttpEmbeddingClient):
                embedder.stop_event = job.stop_event
            with _stop_on_sigint(job):
                stats = job.run(
                    filters,
                    batch_size=batch_size or settings.batch_size,
                    dry_run_limit=settings.dry_run_limit if dry_run else None,
                )
        finally:
            store.close()
            if isinstance(embedder, HttpEmbeddingClient):
                embedder.close()
    except Exception:
        logger.exception("Embedding Generation Failed")
        sys.exit(1)

    _report(stats)
    sys.exit(stats.exit_code)


@app.command()
def verify(
    db: DbOption = None,
    sample_size: Annotated[Optional[int], typer.Option("--sample-size", "-n", help="Rows to check", min=1)] = None,
    code_system: Annotated[Optional[str], typer.Option("--code-system", help="Only this code system")] = None,
    country: Annotated[Optional[str], typer.Option("--country", help="Only this country code")] = None,
) -> None:
    """
    Check a sample of stored embeddings for dimension, magnitude and NaN/Inf values.
    """
    settings = _settings(db)
    filters = JobFilter(code_system=code_system, country_code=country)
    try:
        store = DuckDBCorpusStore.open(settings.db_path, read_only=True)
        try:
            report = verify_embeddings(
                store, settings.embedding_dimension, filters, sample_size or settings.verify_sample_size
            )
        finally:
            store.close()
    except Exception:
        logger.exception("Embedding Verification Failed")
        sys.exit(1)

    typer.echo(report.model_dump_json(indent=2))
    sys.exit(report.exit_code)


@app.command("build-index")
def build_index(
    index: Annotated[Path, typer.Option("--index", "-i", help="Path to the LanceDB index directory")],
    db: DbOption = None,
) -> None:
    """
    Build the LanceDB vector index from stored embeddings.
    """
    settings = _settings(db, index)
    try:
        count = CorpusBuilder(settings.db_path).build_index(index, page_size=settings.page_size)
        typer.echo(f"Indexed {count} vectors")
    except Exception:
        logger.exception("Vector Index Build Failed")
        sys.exit(1)


@app.command()
def resolve(
    text: Annotated[str, typer.Argument(help="Entity text to resolve")],
    db: DbOption = None,
    index: Annotated[Optional[Path], typer.Option("--index", "-i", help="Optional LanceDB index")] = None,
    entity_type: Annotated[Optional[EntityType], typer.Option("--entity-type", "-t", help="Entity type")] = None,
    country: Annotated[Optional[str], typer.Option("--country", help="Country code")] = None,
) -> None:
    """
    Resolve entity text to ranked regional codes.
    """
    try:
        initialize(_settings(db, index))
        result = codematch_resolve(text, entity_type=entity_type, country=country)
        typer.echo(result.model_dump_json(indent=2))
    except Exception:
        logger.exception("Resolution Failed")
        sys.exit(1)
    finally:
        CodematchContext.reset()

    if result.status == ResolveStatus.RETRIEVAL_UNAVAILABLE:
        sys.exit(1)


@app.command()
def version() -> None:
    """Print the version of coreason-codematch."""
    typer.echo(f"coreason-codematch v{__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()  # pragma: no cover
