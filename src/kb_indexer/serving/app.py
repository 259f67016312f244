"""FastAPI application exposing search and pipeline control."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from kb_indexer.config import get_settings
from kb_indexer.exceptions import DimensionMismatchError, ProviderError, RateLimitError
from kb_indexer.pipeline.manager import PipelineState
from kb_indexer.pipeline.scheduler import InMemoryScheduler
from kb_indexer.retrieval.models import RetrievalResult, SearchFilters
from kb_indexer.services import Services, build_services

logger = logging.getLogger(__name__)

app = FastAPI(
    title="KB Indexer API",
    version="0.1.0",
    description="Similarity search over the knowledge base and control of the indexing sweep.",
)

_services: Services | None = None


def get_services() -> Services:
    """Build the service graph on first use; overridden in tests."""
    global _services
    if _services is None:
        _services = build_services(get_settings())
    return _services


# ── Request / Response schemas ────────────────────────────────────────
class SearchRequest(BaseModel):
    """Query text or a pre-computed vector, plus optional filters."""

    query: str | None = None
    vector: list[float] | None = None
    top_k: int | None = Field(default=None, ge=1, le=100)
    filters: SearchFilters | None = None


class SearchResponse(BaseModel):
    results: list[RetrievalResult] = []


class StartRequest(BaseModel):
    force: bool = False
    content_types: list[str] | None = None


class StatusResponse(BaseModel):
    pipeline: PipelineState | None = None
    index: dict[str, Any] = {}


# ── Error mapping ─────────────────────────────────────────────────────
@app.exception_handler(RateLimitError)
async def _rate_limited(_request, exc: RateLimitError) -> JSONResponse:  # noqa: ANN001
    headers = {"Retry-After": str(int(exc.retry_after))} if exc.retry_after else None
    return JSONResponse(status_code=429, content={"detail": exc.message}, headers=headers)


@app.exception_handler(DimensionMismatchError)
async def _dimension_mismatch(_request, exc: DimensionMismatchError) -> JSONResponse:  # noqa: ANN001
    return JSONResponse(status_code=422, content={"detail": exc.message, **exc.details})


@app.exception_handler(ProviderError)
async def _provider_failed(_request, exc: ProviderError) -> JSONResponse:  # noqa: ANN001
    return JSONResponse(status_code=502, content={"detail": exc.message})


# ── Routes ────────────────────────────────────────────────────────────
@app.get("/health")
def health(services: Services = Depends(get_services)) -> JSONResponse:
    """Liveness probe; 503 when the vector store cannot be reached."""
    backend = services.vector_store.backend_name
    if not services.vector_store.health_check():
        return JSONResponse(status_code=503, content={"status": "degraded", "vector_store": backend})
    return JSONResponse(content={"status": "ok", "vector_store": backend})


@app.post("/search", response_model=SearchResponse)
def search(request: SearchRequest, services: Services = Depends(get_services)) -> SearchResponse:
    """Rank chunks by cosine similarity to the query text or vector."""
    if request.vector:
        results = services.search.search_by_embedding(
            request.vector, top_k=request.top_k, filters=request.filters
        )
    elif request.query and request.query.strip():
        if services.embedder is None:
            raise HTTPException(status_code=503, detail="Embedding provider is not configured")
        results = services.search.search(request.query, top_k=request.top_k, filters=request.filters)
    else:
        raise HTTPException(status_code=400, detail="Provide a non-empty 'query' or 'vector'")
    return SearchResponse(results=results)


@app.get("/status", response_model=StatusResponse)
def status(services: Services = Depends(get_services)) -> StatusResponse:
    """Pipeline status plus index counts."""
    pipeline = services.manager.status() if services.manager is not None else None
    return StatusResponse(pipeline=pipeline, index=services.search.stats())


@app.post("/pipeline/start", response_model=PipelineState)
def start_pipeline(
    request: StartRequest,
    background: BackgroundTasks,
    services: Services = Depends(get_services),
) -> PipelineState:
    """Kick off a sweep; an in-process scheduler is drained in the background."""
    manager = services.manager
    if manager is None:
        raise HTTPException(status_code=503, detail="Pipeline is not configured (no content source)")
    options = {"content_types": request.content_types} if request.content_types else None
    state = manager.start(force=request.force, options=options)

    scheduler = manager.ctx.scheduler
    if isinstance(scheduler, InMemoryScheduler):
        background.add_task(scheduler.run_until_idle, manager.dispatch)
    return state


@app.post("/pipeline/reset", response_model=PipelineState)
def reset_pipeline(services: Services = Depends(get_services)) -> PipelineState:
    """Clear stage cursors and pending jobs."""
    if services.manager is None:
        raise HTTPException(status_code=503, detail="Pipeline is not configured (no content source)")
    return services.manager.reset()
