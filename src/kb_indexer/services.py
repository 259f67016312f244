"""Assemble the runtime object graph from :class:`Settings`.

Entry points (CLI, HTTP API, KFP component) call :func:`build_services`
once; nothing else reads configuration on its own.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from kb_indexer.config import Settings
from kb_indexer.events import EventBus
from kb_indexer.exceptions import ConfigurationError
from kb_indexer.ingestion.source import ContentSource, JsonlContentSource
from kb_indexer.pipeline.manager import PipelineManager, build_pipeline
from kb_indexer.providers.embedding import EmbeddingClient
from kb_indexer.retrieval.base import VectorStoreBase
from kb_indexer.retrieval.factory import build_vector_store
from kb_indexer.retrieval.search import SimilaritySearch
from kb_indexer.storage.database import create_db_engine, create_session_factory, init_schema

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    vector_store: VectorStoreBase
    search: SimilaritySearch
    events: EventBus
    embedder: EmbeddingClient | None = None
    manager: PipelineManager | None = None


def build_services(
    settings: Settings,
    *,
    source: ContentSource | None = None,
    embedder: Any = None,
    events: EventBus | None = None,
    create_schema: bool = True,
    **pipeline_kwargs: Any,
) -> Services:
    """Build engine, stores, clients and (when a source is available) the pipeline.

    Parameters
    ----------
    settings:
        Indexer settings.
    source:
        Content source; defaults to a :class:`JsonlContentSource` on
        ``settings.source_path`` when that is set.
    embedder:
        Override for the embedding client (tests, offline runs).
    create_schema:
        Create missing tables on startup.
    """
    engine = create_db_engine(settings.database_url, echo=settings.echo_sql)
    if create_schema:
        init_schema(engine)
    session_factory = create_session_factory(engine)
    vector_store = build_vector_store(settings, session_factory)

    if embedder is None:
        try:
            embedder = EmbeddingClient(settings)
        except ConfigurationError as exc:
            logger.warning("Embedding client unavailable: %s", exc)

    if source is None and settings.source_path:
        source = JsonlContentSource(settings.source_path)

    events = events or EventBus()
    manager = None
    if source is not None and embedder is not None:
        manager = build_pipeline(
            settings,
            session_factory,
            source=source,
            embedder=embedder,
            vector_store=vector_store,
            events=events,
            **pipeline_kwargs,
        )

    search = SimilaritySearch(vector_store, embedder, session_factory, default_k=settings.top_k_default)
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        vector_store=vector_store,
        search=search,
        events=events,
        embedder=embedder,
        manager=manager,
    )
