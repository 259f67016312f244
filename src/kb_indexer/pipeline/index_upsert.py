"""Index Upsert — mark fully vectorised documents searchable; finish the sweep."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from kb_indexer.events import DocumentIndexed, PipelineCompleted, StageCompleted
from kb_indexer.pipeline.base import INDEX_UPSERT, PIPELINE_STAGES, PipelineContext, Stage
from kb_indexer.pipeline.cleanup import KnowledgeBaseCleanup
from kb_indexer.pipeline.state import BatchState, StageOutcome, StageStatus
from kb_indexer.retrieval.base import VectorStoreBase
from kb_indexer.retrieval.models import SearchFilters
from kb_indexer.storage.models import DocumentStatus
from kb_indexer.storage.repositories import ChunkRepository, DocumentRepository

logger = logging.getLogger(__name__)


class IndexUpsertStage(Stage):
    """Reconcile document status with chunk/vector state.

    A ``chunked`` document becomes ``indexed`` once every chunk has a
    vector, stays ``chunked`` while some are missing, and becomes ``error``
    when it has no chunks at all.  On exhaustion the cleanup runs, all
    stage state is cleared and :class:`PipelineCompleted` carries the stats.
    """

    name = INDEX_UPSERT
    next_stage = None

    def __init__(
        self,
        ctx: PipelineContext,
        vector_store: VectorStoreBase,
        cleanup: KnowledgeBaseCleanup | None = None,
    ) -> None:
        super().__init__(ctx)
        self.vector_store = vector_store
        self.cleanup = cleanup

    def run_batch(self, cursor: int, state: BatchState, payload: dict[str, Any]) -> StageOutcome:
        limit = int(payload.get("batch_size") or self.settings.upsert_batch_size)
        with self.sessions() as session:
            docs = DocumentRepository(session).page_by_status(DocumentStatus.CHUNKED, cursor, limit)
            chunks = ChunkRepository(session)
            page = [(doc.id, chunks.count_for_document(doc.id)) for doc in docs]
        if not page:
            return self._finish(state)

        vectorized = {
            doc_id: self.vector_store.count(SearchFilters(doc_id=doc_id)) if total else 0
            for doc_id, total in page
        }

        counts: Counter[str] = Counter()
        indexed: list[DocumentIndexed] = []
        with self.sessions.begin() as session:
            repo = DocumentRepository(session)
            for doc_id, total in page:
                doc = repo.get(doc_id)
                if doc is None:
                    continue
                have = vectorized[doc_id]
                if total == 0:
                    logger.error("Document %d is chunked but has no chunks", doc_id)
                    repo.mark_error(doc, "Document has no chunks")
                    counts["errors"] += 1
                elif have >= total:
                    repo.mark_indexed(doc, self.ctx.clock())
                    doc.chunk_count = total
                    counts["indexed"] += 1
                    indexed.append(
                        DocumentIndexed(stage=self.name, doc_id=doc.id, source_id=doc.source_id, chunk_count=total)
                    )
                else:
                    logger.warning("Document %d: %d of %d chunks vectorised", doc_id, have, total)
                    counts["incomplete"] += 1

        for event in indexed:
            self.events.publish(event)

        max_id = max(doc_id for doc_id, _ in page)
        return self.advance(state, max_id, dict(counts), payload)

    def _finish(self, state: BatchState) -> StageOutcome:
        stats: dict[str, Any] = {}
        if self.cleanup is not None:
            report, kb_stats = self.cleanup.run()
            stats = {**kb_stats.model_dump(mode="json"), "cleanup": report.model_dump()}

        self.ctx.state_store.clear_many(PIPELINE_STAGES)
        self.events.publish(StageCompleted(stage=self.name, counts=state.counts))
        self.events.publish(PipelineCompleted(stage=self.name, stats=stats))
        logger.info("Pipeline sweep complete %s", stats)
        return StageOutcome(
            stage=self.name,
            status=StageStatus.COMPLETE,
            cursor=state.last_id,
            counts=state.counts,
        )
