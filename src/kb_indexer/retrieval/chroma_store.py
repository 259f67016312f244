"""Chroma implementation of the vector-store abstraction.

Chroma is used as vector persistence only: candidates are pulled with
``collection.get`` and ranked in-process by the same cosine routine and
scan cap as every other backend, so scores are comparable across
backends.  Metadata filters that Chroma cannot evaluate (document status,
creation dates) are resolved against the relational store through a
candidate resolver.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Sequence
from typing import Any

from kb_indexer.retrieval.base import VectorStoreBase
from kb_indexer.retrieval.models import SearchFilters

logger = logging.getLogger(__name__)

CandidateResolver = Callable[[SearchFilters, "int | None"], list[int]]


def _build_chroma_where(filters: SearchFilters | None) -> dict[str, Any] | None:
    """Convert the filters Chroma stores as metadata to ``where`` syntax."""
    if filters is None:
        return None

    clauses: list[dict[str, Any]] = []
    if filters.doc_id is not None:
        clauses.append({"doc_id": {"$eq": filters.doc_id}})
    if filters.doc_type is not None:
        clauses.append({"doc_type": {"$eq": filters.doc_type}})
    if filters.source_id is not None:
        clauses.append({"source_id": {"$eq": filters.source_id}})

    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


class ChromaVectorStore(VectorStoreBase):
    """Chroma-backed vector store.

    Parameters
    ----------
    collection_name:
        Name of the Chroma collection.
    host / port:
        Chroma server location; ignored when *client* is given.
    client:
        Pre-built Chroma client (e.g. ``chromadb.EphemeralClient()``).
    candidate_resolver:
        ``resolver(filters, limit) -> chunk_ids``; used whenever filters are
        present so every filter field is honoured.
    max_scan / default_top_k:
        See :class:`VectorStoreBase`.
    """

    backend_name = "chroma"

    def __init__(
        self,
        collection_name: str = "kb_vectors",
        *,
        host: str = "localhost",
        port: int = 8000,
        client: Any = None,
        candidate_resolver: CandidateResolver | None = None,
        max_scan: int = 5000,
        default_top_k: int = 8,
    ) -> None:
        super().__init__(max_scan=max_scan, default_top_k=default_top_k)
        if client is None:
            import chromadb

            client = chromadb.HttpClient(host=host, port=port)
        self.collection_name = collection_name
        self._client = client
        self._collection = client.get_or_create_collection(
            collection_name, metadata={"hnsw:space": "cosine"}
        )
        self._resolve = candidate_resolver

    # -- VectorStoreBase overrides --------------------------------------------

    def store(self, chunk_id: int, vector: Sequence[float], metadata: dict[str, Any] | None = None) -> None:
        self.store_many([(chunk_id, vector, metadata or {})])

    def store_many(self, items: Iterable[tuple[int, Sequence[float], dict[str, Any]]]) -> int:
        ids: list[str] = []
        embeddings: list[list[float]] = []
        metadatas: list[dict[str, Any]] = []
        for chunk_id, vector, metadata in items:
            vector = self._validate_vector(vector)
            ids.append(str(chunk_id))
            embeddings.append(vector)
            metadatas.append(self._clean_metadata(chunk_id, len(vector), metadata or {}))
        if not ids:
            return 0
        self._collection.upsert(ids=ids, embeddings=embeddings, metadatas=metadatas)
        return len(ids)

    def delete(self, chunk_id: int) -> bool:
        found = self._collection.get(ids=[str(chunk_id)], include=[])
        if not found.get("ids"):
            return False
        self._collection.delete(ids=[str(chunk_id)])
        return True

    def delete_by_doc_id(self, doc_id: int) -> int:
        found = self._collection.get(where={"doc_id": {"$eq": doc_id}}, include=[])
        ids = found.get("ids") or []
        if ids:
            self._collection.delete(ids=ids)
        return len(ids)

    def count(self, filters: SearchFilters | None = None) -> int:
        if filters is None or filters.is_empty():
            return self._collection.count()
        if self._resolve is not None:
            candidates = self._resolve(filters, None)
            if not candidates:
                return 0
            found = self._collection.get(ids=[str(i) for i in candidates], include=[])
        else:
            found = self._collection.get(where=_build_chroma_where(filters), include=[])
        return len(found.get("ids") or [])

    def exists(self, chunk_id: int) -> bool:
        found = self._collection.get(ids=[str(chunk_id)], include=[])
        return bool(found.get("ids"))

    def missing(self, chunk_ids: Sequence[int]) -> set[int]:
        if not chunk_ids:
            return set()
        found = self._collection.get(ids=[str(i) for i in chunk_ids], include=[])
        return set(chunk_ids) - {int(i) for i in found.get("ids") or []}

    def get(self, chunk_id: int) -> list[float] | None:
        found = self._collection.get(ids=[str(chunk_id)], include=["embeddings"])
        embeddings = found.get("embeddings")
        if embeddings is None or len(embeddings) == 0:
            return None
        return [float(x) for x in embeddings[0]]

    def delete_orphans(self) -> int:
        """Drop vectors whose chunk id the resolver no longer knows."""
        if self._resolve is None:
            return 0
        stored = [int(i) for i in (self._collection.get(include=[]).get("ids") or [])]
        if not stored:
            return 0
        live = set(self._resolve(SearchFilters(), None))
        orphans = [str(i) for i in stored if i not in live]
        if orphans:
            self._collection.delete(ids=orphans)
        return len(orphans)

    def health_check(self) -> bool:
        try:
            self._client.heartbeat()
            return True
        except Exception:
            logger.warning("Chroma health-check failed", exc_info=True)
            return False

    def _load_candidates(
        self, filters: SearchFilters | None, limit: int
    ) -> Iterator[tuple[int, list[float], dict[str, Any]]]:
        include = ["embeddings", "metadatas"]
        if filters is None:
            found = self._collection.get(limit=limit, include=include)
        elif self._resolve is not None:
            candidate_ids = self._resolve(filters, limit)
            if not candidate_ids:
                return
            found = self._collection.get(ids=[str(i) for i in candidate_ids[:limit]], include=include)
        else:
            found = self._collection.get(where=_build_chroma_where(filters), limit=limit, include=include)

        ids = found.get("ids") or []
        embeddings = found.get("embeddings")
        metadatas = found.get("metadatas")
        if embeddings is None:
            embeddings = []
        if metadatas is None:
            metadatas = [{}] * len(ids)

        for raw_id, vector, meta in zip(ids, embeddings, metadatas):
            meta = meta or {}
            yield int(raw_id), [float(x) for x in vector], {
                "doc_id": meta.get("doc_id"),
                "model": meta.get("model", ""),
            }

    # -- internals ------------------------------------------------------------

    @staticmethod
    def _clean_metadata(chunk_id: int, dims: int, metadata: dict[str, Any]) -> dict[str, Any]:
        # Chroma accepts only scalar metadata values.
        clean: dict[str, Any] = {"chunk_id": chunk_id, "dims": dims}
        for key, value in metadata.items():
            if isinstance(value, (str, int, float, bool)):
                clean[key] = value
        return clean
