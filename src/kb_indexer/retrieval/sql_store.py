"""Relational implementation of the vector-store abstraction.

Vectors live in ``kb_vectors`` as packed float32 blobs next to the chunk
and document tables, so metadata filters become plain SQL joins.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Sequence
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from kb_indexer.retrieval.base import VectorStoreBase
from kb_indexer.retrieval.codec import pack_vector, unpack_vector
from kb_indexer.retrieval.models import SearchFilters
from kb_indexer.storage.models import ChunkModel, DocumentModel, VectorModel
from kb_indexer.storage.repositories import apply_search_filters

logger = logging.getLogger(__name__)

_BULK = {"synchronize_session": False}


class SqlVectorStore(VectorStoreBase):
    """SQLAlchemy-backed vector store (MySQL / PostgreSQL / SQLite).

    Parameters
    ----------
    session_factory:
        Factory for sessions on the indexer database; every call runs in
        its own short transaction.
    max_scan:
        Scan cap, see :class:`VectorStoreBase`.
    default_top_k:
        Default result count.
    """

    backend_name = "sql"

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        *,
        max_scan: int = 5000,
        default_top_k: int = 8,
    ) -> None:
        super().__init__(max_scan=max_scan, default_top_k=default_top_k)
        self._sessions = session_factory

    # -- VectorStoreBase overrides --------------------------------------------

    def store(self, chunk_id: int, vector: Sequence[float], metadata: dict[str, Any] | None = None) -> None:
        self.store_many([(chunk_id, vector, metadata or {})])

    def store_many(self, items: Iterable[tuple[int, Sequence[float], dict[str, Any]]]) -> int:
        prepared = [(cid, self._validate_vector(vec), meta or {}) for cid, vec, meta in items]
        if not prepared:
            return 0
        with self._sessions.begin() as session:
            existing = {
                row.chunk_id: row
                for row in session.scalars(
                    select(VectorModel).where(VectorModel.chunk_id.in_([p[0] for p in prepared]))
                )
            }
            for chunk_id, vector, metadata in prepared:
                row = existing.get(chunk_id)
                if row is None:
                    row = VectorModel(chunk_id=chunk_id)
                    session.add(row)
                row.vector_payload = pack_vector(vector)
                row.dims = len(vector)
                row.model = str(metadata.get("model", ""))
        logger.debug("Stored %d vectors", len(prepared))
        return len(prepared)

    def delete(self, chunk_id: int) -> bool:
        with self._sessions.begin() as session:
            stmt = delete(VectorModel).where(VectorModel.chunk_id == chunk_id)
            result = session.execute(stmt, execution_options=_BULK)
            return bool(result.rowcount)

    def delete_by_doc_id(self, doc_id: int) -> int:
        chunk_ids = select(ChunkModel.id).where(ChunkModel.doc_id == doc_id)
        with self._sessions.begin() as session:
            stmt = delete(VectorModel).where(VectorModel.chunk_id.in_(chunk_ids))
            result = session.execute(stmt, execution_options=_BULK)
            return result.rowcount or 0

    def count(self, filters: SearchFilters | None = None) -> int:
        stmt = select(func.count(VectorModel.id))
        if filters is not None and not filters.is_empty():
            stmt = apply_search_filters(self._joined(stmt), filters)
        with self._sessions() as session:
            return session.scalar(stmt) or 0

    def exists(self, chunk_id: int) -> bool:
        with self._sessions() as session:
            stmt = select(VectorModel.id).where(VectorModel.chunk_id == chunk_id)
            return session.scalar(stmt) is not None

    def missing(self, chunk_ids: Sequence[int]) -> set[int]:
        if not chunk_ids:
            return set()
        stmt = select(VectorModel.chunk_id).where(VectorModel.chunk_id.in_(chunk_ids))
        with self._sessions() as session:
            return set(chunk_ids) - set(session.scalars(stmt))

    def get(self, chunk_id: int) -> list[float] | None:
        with self._sessions() as session:
            row = session.scalars(select(VectorModel).where(VectorModel.chunk_id == chunk_id)).first()
            if row is None:
                return None
            return unpack_vector(row.vector_payload, row.dims)

    def delete_orphans(self) -> int:
        orphan = ~select(ChunkModel.id).where(ChunkModel.id == VectorModel.chunk_id).exists()
        with self._sessions.begin() as session:
            result = session.execute(delete(VectorModel).where(orphan), execution_options=_BULK)
            return result.rowcount or 0

    def health_check(self) -> bool:
        try:
            with self._sessions() as session:
                session.execute(select(1))
            return True
        except Exception:
            logger.warning("SQL vector store health-check failed", exc_info=True)
            return False

    def _load_candidates(
        self, filters: SearchFilters | None, limit: int
    ) -> Iterator[tuple[int, list[float], dict[str, Any]]]:
        stmt = select(VectorModel, ChunkModel.doc_id)
        stmt = self._joined(stmt)
        if filters is not None:
            stmt = apply_search_filters(stmt, filters)
        stmt = stmt.order_by(VectorModel.chunk_id).limit(limit)

        with self._sessions() as session:
            rows = session.execute(stmt).all()

        for row, doc_id in rows:
            vector = unpack_vector(row.vector_payload, row.dims)
            yield row.chunk_id, vector, {"doc_id": doc_id, "model": row.model}

    # -- internals ------------------------------------------------------------

    @staticmethod
    def _joined(stmt):  # noqa: ANN001, ANN205
        return stmt.join(ChunkModel, VectorModel.chunk_id == ChunkModel.id).join(
            DocumentModel, ChunkModel.doc_id == DocumentModel.id
        )
