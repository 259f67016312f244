"""Session-scoped data access for documents and chunks.

Repositories wrap a caller-owned :class:`~sqlalchemy.orm.Session`; they
flush but never commit, so a stage decides the transaction boundary.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import Select, delete, func, select, update
from sqlalchemy.orm import Session

from kb_indexer.ingestion.chunker import TextChunk
from kb_indexer.retrieval.models import SearchFilters
from kb_indexer.storage.models import ChunkModel, DocumentModel, DocumentStatus, utcnow

_BULK = {"synchronize_session": False}


def apply_search_filters(stmt: Select, filters: SearchFilters | None) -> Select:
    """Add ``WHERE`` clauses for *filters* to a statement joined on chunks + documents."""
    if filters is None:
        return stmt
    if filters.doc_type is not None:
        stmt = stmt.where(DocumentModel.source_type == filters.doc_type)
    if filters.doc_id is not None:
        stmt = stmt.where(ChunkModel.doc_id == filters.doc_id)
    if filters.source_id is not None:
        stmt = stmt.where(DocumentModel.source_id == filters.source_id)
    if filters.status is not None:
        stmt = stmt.where(DocumentModel.status == DocumentStatus(filters.status))
    if filters.date_after is not None:
        stmt = stmt.where(ChunkModel.created_at >= filters.date_after)
    if filters.date_before is not None:
        stmt = stmt.where(ChunkModel.created_at <= filters.date_before)
    return stmt


class DocumentRepository:
    """CRUD and paging over ``kb_documents``."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, doc_id: int) -> DocumentModel | None:
        return self.session.get(DocumentModel, doc_id)

    def get_by_source_id(self, source_id: int) -> DocumentModel | None:
        stmt = select(DocumentModel).where(DocumentModel.source_id == source_id)
        return self.session.scalars(stmt).first()

    def add(
        self,
        *,
        source_id: int,
        source_type: str,
        title: str,
        content: str,
        content_hash: str,
        url: str | None = None,
    ) -> DocumentModel:
        doc = DocumentModel(
            source_id=source_id,
            source_type=source_type,
            title=title,
            content=content,
            content_hash=content_hash,
            url=url,
            status=DocumentStatus.PENDING,
            chunk_count=0,
        )
        self.session.add(doc)
        self.session.flush()
        return doc

    def page_by_status(
        self, status: DocumentStatus, after_id: int, limit: int
    ) -> list[DocumentModel]:
        """Documents with *status* and ``id > after_id``, ascending."""
        stmt = (
            select(DocumentModel)
            .where(DocumentModel.status == status, DocumentModel.id > after_id)
            .order_by(DocumentModel.id)
            .limit(limit)
        )
        return list(self.session.scalars(stmt))

    def ids_with_status(self, status: DocumentStatus) -> list[int]:
        stmt = select(DocumentModel.id).where(DocumentModel.status == status).order_by(DocumentModel.id)
        return list(self.session.scalars(stmt))

    def source_id_pairs(self, after_id: int, limit: int) -> list[tuple[int, int]]:
        """``(doc_id, source_id)`` pairs beyond *after_id*, for cleanup sweeps."""
        stmt = (
            select(DocumentModel.id, DocumentModel.source_id)
            .where(DocumentModel.id > after_id)
            .order_by(DocumentModel.id)
            .limit(limit)
        )
        return [(row[0], row[1]) for row in self.session.execute(stmt)]

    def mark_indexed(self, doc: DocumentModel, when: datetime | None = None) -> None:
        doc.status = DocumentStatus.INDEXED
        doc.last_indexed_at = when or utcnow()
        doc.error_message = None

    def mark_error(self, doc: DocumentModel, message: str) -> None:
        doc.status = DocumentStatus.ERROR
        doc.error_message = message[:2048]

    def delete_many(self, doc_ids: Sequence[int]) -> int:
        if not doc_ids:
            return 0
        # Chunks go first so the delete does not rely on FK cascades being on.
        self.session.execute(delete(ChunkModel).where(ChunkModel.doc_id.in_(doc_ids)), execution_options=_BULK)
        stmt = delete(DocumentModel).where(DocumentModel.id.in_(doc_ids))
        result = self.session.execute(stmt, execution_options=_BULK)
        return result.rowcount or 0

    def count(self) -> int:
        return self.session.scalar(select(func.count(DocumentModel.id))) or 0

    def count_by_status(self) -> dict[str, int]:
        stmt = select(DocumentModel.status, func.count(DocumentModel.id)).group_by(DocumentModel.status)
        counts = {status.value: 0 for status in DocumentStatus}
        for status, n in self.session.execute(stmt):
            counts[DocumentStatus(status).value] = n
        return counts

    def last_indexed_at(self) -> datetime | None:
        return self.session.scalar(select(func.max(DocumentModel.last_indexed_at)))


class ChunkRepository:
    """CRUD, paging and candidate resolution over ``kb_chunks``."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def replace_for_document(self, doc: DocumentModel, chunks: Iterable[TextChunk]) -> int:
        """Delete *doc*'s chunks and insert *chunks*; return how many were inserted."""
        self.delete_for_document(doc.id)
        rows = [
            ChunkModel(
                doc_id=doc.id,
                chunk_index=chunk.index,
                chunk_text=chunk.text,
                token_count=chunk.token_count,
            )
            for chunk in chunks
        ]
        self.session.add_all(rows)
        self.session.flush()
        return len(rows)

    def delete_for_document(self, doc_id: int) -> int:
        result = self.session.execute(delete(ChunkModel).where(ChunkModel.doc_id == doc_id), execution_options=_BULK)
        return result.rowcount or 0

    def page_with_documents(self, after_id: int, limit: int) -> list[tuple[ChunkModel, DocumentModel]]:
        """Chunks beyond *after_id* with their documents, ascending by chunk id."""
        stmt = (
            select(ChunkModel, DocumentModel)
            .join(DocumentModel, ChunkModel.doc_id == DocumentModel.id)
            .where(ChunkModel.id > after_id)
            .order_by(ChunkModel.id)
            .limit(limit)
        )
        return [(chunk, doc) for chunk, doc in self.session.execute(stmt)]

    def mark_embedded(self, chunk_ids: Sequence[int], model: str) -> None:
        if chunk_ids:
            self.session.execute(
                update(ChunkModel).where(ChunkModel.id.in_(chunk_ids)).values(embedding_model=model),
                execution_options=_BULK,
            )

    def ids_for_document(self, doc_id: int) -> list[int]:
        stmt = select(ChunkModel.id).where(ChunkModel.doc_id == doc_id).order_by(ChunkModel.chunk_index)
        return list(self.session.scalars(stmt))

    def count_for_document(self, doc_id: int) -> int:
        stmt = select(func.count(ChunkModel.id)).where(ChunkModel.doc_id == doc_id)
        return self.session.scalar(stmt) or 0

    def first_for_document(self, doc_id: int) -> ChunkModel | None:
        stmt = (
            select(ChunkModel)
            .where(ChunkModel.doc_id == doc_id)
            .order_by(ChunkModel.chunk_index)
            .limit(1)
        )
        return self.session.scalars(stmt).first()

    def get_with_documents(self, chunk_ids: Sequence[int]) -> dict[int, tuple[ChunkModel, DocumentModel]]:
        if not chunk_ids:
            return {}
        stmt = (
            select(ChunkModel, DocumentModel)
            .join(DocumentModel, ChunkModel.doc_id == DocumentModel.id)
            .where(ChunkModel.id.in_(chunk_ids))
        )
        return {chunk.id: (chunk, doc) for chunk, doc in self.session.execute(stmt)}

    def candidate_ids(self, filters: SearchFilters | None, limit: int | None) -> list[int]:
        """Chunk ids matching *filters*, ascending, at most *limit* of them."""
        stmt = select(ChunkModel.id).join(DocumentModel, ChunkModel.doc_id == DocumentModel.id)
        stmt = apply_search_filters(stmt, filters).order_by(ChunkModel.id)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt))

    def delete_orphans(self) -> int:
        """Remove chunks whose document no longer exists."""
        orphan = ~select(DocumentModel.id).where(DocumentModel.id == ChunkModel.doc_id).exists()
        result = self.session.execute(delete(ChunkModel).where(orphan), execution_options=_BULK)
        return result.rowcount or 0

    def totals(self) -> dict[str, Any]:
        count, tokens = self.session.execute(
            select(func.count(ChunkModel.id), func.coalesce(func.sum(ChunkModel.token_count), 0))
        ).one()
        return {"total_chunks": int(count or 0), "total_tokens": int(tokens or 0)}

    def dominant_embedding_model(self) -> str | None:
        stmt = (
            select(ChunkModel.embedding_model, func.count(ChunkModel.id).label("n"))
            .where(ChunkModel.embedding_model.is_not(None))
            .group_by(ChunkModel.embedding_model)
            .order_by(func.count(ChunkModel.id).desc())
            .limit(1)
        )
        row = self.session.execute(stmt).first()
        return row[0] if row else None
