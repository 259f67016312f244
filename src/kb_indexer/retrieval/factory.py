"""Select and build the configured vector-store backend."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from kb_indexer.config import Settings
from kb_indexer.exceptions import ConfigurationError
from kb_indexer.retrieval.base import VectorStoreBase
from kb_indexer.retrieval.models import SearchFilters
from kb_indexer.storage.repositories import ChunkRepository

logger = logging.getLogger(__name__)


def make_candidate_resolver(session_factory: sessionmaker[Session]):  # noqa: ANN201
    """Return ``resolver(filters, limit) -> chunk_ids`` backed by the chunk table."""

    def resolve(filters: SearchFilters, limit: int | None) -> list[int]:
        with session_factory() as session:
            return ChunkRepository(session).candidate_ids(filters, limit)

    return resolve


def build_vector_store(
    settings: Settings,
    session_factory: sessionmaker[Session],
    *,
    chroma_client: Any = None,
) -> VectorStoreBase:
    """Instantiate the backend named by ``settings.vector_backend``.

    Parameters
    ----------
    settings:
        Indexer settings.
    session_factory:
        Sessions on the indexer database (vectors for ``sql``; filter
        resolution for ``chroma``).
    chroma_client:
        Optional pre-built Chroma client.
    """
    backend = settings.vector_backend
    if backend == "sql":
        from kb_indexer.retrieval.sql_store import SqlVectorStore

        store: VectorStoreBase = SqlVectorStore(
            session_factory,
            max_scan=settings.max_scan_vectors,
            default_top_k=settings.top_k_default,
        )
    elif backend == "chroma":
        from kb_indexer.retrieval.chroma_store import ChromaVectorStore

        store = ChromaVectorStore(
            settings.chroma_collection,
            host=settings.chroma_host,
            port=settings.chroma_port,
            client=chroma_client,
            candidate_resolver=make_candidate_resolver(session_factory),
            max_scan=settings.max_scan_vectors,
            default_top_k=settings.top_k_default,
        )
    else:
        raise ConfigurationError(f"Unknown vector backend: {backend!r}")

    logger.info("Vector store backend: %s (scan cap %d)", store.backend_name, store.max_scan)
    return store
