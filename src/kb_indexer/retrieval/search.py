"""Similarity search — query-side entry point with result enrichment.

Usage::

    search = SimilaritySearch(store, embedder, session_factory)
    for r in search.search("How do refunds work?", top_k=5):
        print(r.citation.short_ref(), r.content[:80])
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any, Protocol

from sqlalchemy.orm import Session, sessionmaker

from kb_indexer.retrieval.base import VectorStoreBase
from kb_indexer.retrieval.models import Citation, RetrievalResult, SearchFilters, VectorHit
from kb_indexer.storage.repositories import ChunkRepository, DocumentRepository

logger = logging.getLogger(__name__)

SIMILAR_OVERFETCH = 5


class QueryEmbedder(Protocol):
    def embed_single(self, text: str) -> list[float]: ...


class SimilaritySearch:
    """High-level search over any :class:`VectorStoreBase`.

    Parameters
    ----------
    store:
        A concrete vector-store backend.
    embedder:
        Turns query text into a vector (normally an
        :class:`~kb_indexer.providers.EmbeddingClient`).  Only needed by
        :meth:`search`.
    session_factory:
        Sessions on the indexer database, used to attach chunk text and
        document details to hits.
    default_k:
        Default number of results.
    score_threshold:
        Minimum similarity score; hits below it are discarded.
    """

    def __init__(
        self,
        store: VectorStoreBase,
        embedder: QueryEmbedder | None,
        session_factory: sessionmaker[Session],
        *,
        default_k: int = 8,
        score_threshold: float | None = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._sessions = session_factory
        self.default_k = default_k
        self.score_threshold = score_threshold

    # -- public API -----------------------------------------------------------

    def search(
        self,
        query: str,
        *,
        top_k: int | None = None,
        filters: SearchFilters | None = None,
    ) -> list[RetrievalResult]:
        """Embed *query* and return enriched, ranked results.

        Parameters
        ----------
        query:
            Natural-language query string; must not be blank.
        top_k:
            Number of results (defaults to ``self.default_k``).
        filters:
            Optional metadata pre-filters.
        """
        if not query or not query.strip():
            raise ValueError("query must not be empty")
        if self._embedder is None:
            raise RuntimeError("SimilaritySearch was built without an embedder")
        vector = self._embedder.embed_single(query.strip())
        return self.search_by_embedding(vector, top_k=top_k, filters=filters)

    def search_by_embedding(
        self,
        embedding: Sequence[float],
        *,
        top_k: int | None = None,
        filters: SearchFilters | None = None,
    ) -> list[RetrievalResult]:
        """Same as :meth:`search` but accepts a pre-computed embedding."""
        hits = self._store.search(embedding, self.default_k if top_k is None else top_k, filters)
        return self.enrich(hits)

    def find_similar_to_document(self, doc_id: int, *, top_k: int | None = None) -> list[RetrievalResult]:
        """Chunks of *other* documents closest to *doc_id*'s first chunk."""
        k = self.default_k if top_k is None else top_k
        with self._sessions() as session:
            first = ChunkRepository(session).first_for_document(doc_id)
        if first is None:
            return []
        vector = self._store.get(first.id)
        if vector is None:
            return []

        hits = self._store.search(vector, k + SIMILAR_OVERFETCH)
        hits = [h for h in hits if h.metadata.get("doc_id") != doc_id]
        return self.enrich(hits[:k])

    def enrich(self, hits: list[VectorHit]) -> list[RetrievalResult]:
        """Attach chunk text and document details; drops hits whose chunk vanished."""
        if self.score_threshold is not None:
            hits = [h for h in hits if h.score >= self.score_threshold]
        if not hits:
            return []

        with self._sessions() as session:
            rows = ChunkRepository(session).get_with_documents([h.chunk_id for h in hits])

        results: list[RetrievalResult] = []
        for hit in hits:
            row = rows.get(hit.chunk_id)
            if row is None:
                logger.debug("Dropping hit for missing chunk %d", hit.chunk_id)
                continue
            chunk, doc = row
            citation = Citation(
                chunk_id=chunk.id,
                doc_id=doc.id,
                source_id=doc.source_id,
                title=doc.title,
                url=doc.url,
                chunk_index=chunk.chunk_index,
                score=hit.score,
            )
            results.append(RetrievalResult(content=chunk.chunk_text, citation=citation))
        return results

    def stats(self) -> dict[str, Any]:
        """Vector/document counts for status reporting."""
        with self._sessions() as session:
            docs = DocumentRepository(session)
            by_status = docs.count_by_status()
            total_docs = docs.count()
        return {
            "backend": self._store.backend_name,
            "total_vectors": self._store.count(),
            "total_documents": total_docs,
            "indexed_documents": by_status.get("indexed", 0),
            "max_scan_vectors": self._store.max_scan,
        }
