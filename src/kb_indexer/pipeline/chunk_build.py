"""Chunk Build — (re)split pending documents into chunks."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from kb_indexer.ingestion.chunker import DocumentChunker
from kb_indexer.pipeline.base import CHUNK_BUILD, EMBED_CHUNKS, PipelineContext, Stage
from kb_indexer.pipeline.state import BatchState, StageOutcome
from kb_indexer.retrieval.base import VectorStoreBase
from kb_indexer.storage.models import DocumentModel, DocumentStatus
from kb_indexer.storage.repositories import ChunkRepository, DocumentRepository

logger = logging.getLogger(__name__)


class ChunkBuildStage(Stage):
    """Replace every pending document's chunks (and drop their stale vectors)."""

    name = CHUNK_BUILD
    next_stage = EMBED_CHUNKS

    def __init__(
        self,
        ctx: PipelineContext,
        vector_store: VectorStoreBase,
        chunker: DocumentChunker | None = None,
    ) -> None:
        super().__init__(ctx)
        self.vector_store = vector_store
        self.chunker = chunker or DocumentChunker(
            chunk_size=self.settings.chunk_size,
            chunk_overlap=self.settings.chunk_overlap,
            min_chunk_chars=self.settings.min_chunk_chars,
        )

    def run_batch(self, cursor: int, state: BatchState, payload: dict[str, Any]) -> StageOutcome:
        limit = int(payload.get("batch_size") or self.settings.chunk_batch_size)
        with self.sessions() as session:
            page = [
                (doc.id, doc.title, doc.content)
                for doc in DocumentRepository(session).page_by_status(DocumentStatus.PENDING, cursor, limit)
            ]
        if not page:
            return self.complete(state)

        counts: Counter[str] = Counter()
        for doc_id, title, content in page:
            stale = self.vector_store.delete_by_doc_id(doc_id)
            chunks = self.chunker.split(content, title)

            with self.sessions.begin() as session:
                doc = session.get(DocumentModel, doc_id)
                if doc is None:
                    # Removed between the page read and now.
                    continue
                n = ChunkRepository(session).replace_for_document(doc, chunks)
                if n == 0:
                    DocumentRepository(session).mark_error(doc, "Content produced no chunks")
                    counts["errors"] += 1
                else:
                    doc.chunk_count = n
                    doc.status = DocumentStatus.CHUNKED
                    doc.error_message = None
                    counts["documents"] += 1
                    counts["chunks"] += n
            counts["stale_vectors"] += stale
            logger.debug("Document %d -> %d chunks (%d stale vectors dropped)", doc_id, n, stale)

        max_id = max(doc_id for doc_id, _, _ in page)
        return self.advance(state, max_id, dict(counts), payload)
