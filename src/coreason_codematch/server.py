# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional, cast

from fastapi import FastAPI
from loguru import logger
from pydantic import BaseModel, Field

from coreason_codematch.config import get_settings
from coreason_codematch.pipeline import CodematchContext, Resolver
from coreason_codematch.schemas import ResolveOptions, ResolveResult


# Pydantic Models for Requests
class ResolveRequest(BaseModel):
    entity_text: str
    # Values outside EntityType resolve to no_match rather than a 422.
    entity_type: Optional[str] = None
    country: Optional[str] = None
    max_candidates: Optional[int] = Field(default=None, ge=1)
    min_similarity: Optional[float] = Field(default=None, ge=0.0, le=1.0)


# Lifespan Management
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager to open the corpus on startup.
    """
    settings = get_settings()
    logger.info(f"Initializing Codematch Server with corpus: {settings.db_path}")

    try:
        CodematchContext.initialize(settings)
        app.state.resolver = CodematchContext.get_instance().resolver
        logger.info("Codematch Engine Loaded Successfully.")
    except Exception as e:
        logger.exception("Failed to initialize Codematch Engine.")
        raise RuntimeError(f"Server initialization failed: {e}") from e

    yield

    logger.info("Shutting down Codematch Server.")
    CodematchContext.reset()


app = FastAPI(title="Coreason Codematch API", lifespan=lifespan)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """
    Health check endpoint. Returns status ready if the corpus is open.
    """
    return {"status": "ready"}


@app.post("/resolve", response_model=ResolveResult)
def resolve(request: ResolveRequest) -> ResolveResult:
    """
    Resolve entity text to ranked regional codes.
    """
    resolver = cast(Resolver, app.state.resolver)
    options = ResolveOptions(max_candidates=request.max_candidates, min_similarity=request.min_similarity)
    return resolver.resolve(
        request.entity_text, entity_type=request.entity_type, country=request.country, options=options
    )
