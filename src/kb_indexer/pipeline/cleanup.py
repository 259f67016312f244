"""End-of-sweep housekeeping and knowledge-base statistics."""

from __future__ import annotations

import logging
from datetime import datetime

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from kb_indexer.ingestion.source import ContentSource
from kb_indexer.retrieval.base import VectorStoreBase
from kb_indexer.storage.models import DocumentStatus
from kb_indexer.storage.repositories import ChunkRepository, DocumentRepository

logger = logging.getLogger(__name__)


class CleanupReport(BaseModel):
    excluded_removed: int = 0
    missing_source_removed: int = 0
    orphan_chunks_removed: int = 0
    orphan_vectors_removed: int = 0


class KBStats(BaseModel):
    """Snapshot of the knowledge base after a sweep."""

    total_documents: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    total_chunks: int = 0
    total_vectors: int = 0
    total_tokens: int = 0
    avg_chunks_per_document: float = 0.0
    coverage_percent: float = 0.0
    last_indexed_at: datetime | None = None
    embedding_model: str | None = None
    vector_backend: str = ""


class KnowledgeBaseCleanup:
    """Remove rows that no longer belong in the index and compute stats.

    Parameters
    ----------
    session_factory:
        Sessions on the indexer database.
    vector_store:
        Backend whose vectors are removed alongside their documents.
    source:
        Content source, asked which items still exist.
    page_size:
        Documents checked per source lookup.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        vector_store: VectorStoreBase,
        source: ContentSource,
        *,
        page_size: int = 500,
    ) -> None:
        self._sessions = session_factory
        self._store = vector_store
        self._source = source
        self._page_size = page_size

    def run(self) -> tuple[CleanupReport, KBStats]:
        report = CleanupReport(
            excluded_removed=self.remove_excluded(),
            missing_source_removed=self.remove_missing_sources(),
        )
        with self._sessions.begin() as session:
            report.orphan_chunks_removed = ChunkRepository(session).delete_orphans()
        report.orphan_vectors_removed = self._store.delete_orphans()

        stats = self.stats()
        logger.info("Cleanup %s", report.model_dump())
        return report, stats

    def remove_excluded(self) -> int:
        with self._sessions() as session:
            doc_ids = DocumentRepository(session).ids_with_status(DocumentStatus.EXCLUDED)
        return self._remove(doc_ids)

    def remove_missing_sources(self) -> int:
        removed = 0
        cursor = 0
        while True:
            with self._sessions() as session:
                pairs = DocumentRepository(session).source_id_pairs(cursor, self._page_size)
            if not pairs:
                break
            cursor = pairs[-1][0]
            alive = self._source.existing_ids([source_id for _, source_id in pairs])
            gone = [doc_id for doc_id, source_id in pairs if source_id not in alive]
            removed += self._remove(gone)
        return removed

    def stats(self) -> KBStats:
        with self._sessions() as session:
            docs = DocumentRepository(session)
            chunks = ChunkRepository(session)
            by_status = docs.count_by_status()
            total_docs = docs.count()
            totals = chunks.totals()
            last_indexed = docs.last_indexed_at()
            model = chunks.dominant_embedding_model()
        total_vectors = self._store.count()

        total_chunks = totals["total_chunks"]
        return KBStats(
            total_documents=total_docs,
            by_status=by_status,
            total_chunks=total_chunks,
            total_vectors=total_vectors,
            total_tokens=totals["total_tokens"],
            avg_chunks_per_document=round(total_chunks / total_docs, 2) if total_docs else 0.0,
            coverage_percent=round(min(total_vectors, total_chunks) / total_chunks * 100, 1) if total_chunks else 0.0,
            last_indexed_at=last_indexed,
            embedding_model=model,
            vector_backend=self._store.backend_name,
        )

    def _remove(self, doc_ids: list[int]) -> int:
        if not doc_ids:
            return 0
        for doc_id in doc_ids:
            self._store.delete_by_doc_id(doc_id)
        with self._sessions.begin() as session:
            return DocumentRepository(session).delete_many(doc_ids)
