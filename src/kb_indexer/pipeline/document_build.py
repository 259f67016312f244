"""Document Build — materialise changed source items as Document rows."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from kb_indexer.ingestion.normalizer import ContentNormalizer, compute_hash
from kb_indexer.ingestion.source import ContentSource
from kb_indexer.pipeline.base import CHUNK_BUILD, DOCUMENT_BUILD, PipelineContext, Stage
from kb_indexer.pipeline.state import BatchState, StageOutcome
from kb_indexer.storage.models import DocumentStatus
from kb_indexer.storage.repositories import DocumentRepository

logger = logging.getLogger(__name__)


class DocumentBuildStage(Stage):
    """Normalise and hash source items; insert or refresh only what changed.

    Payload options: ``content_types`` (list) and ``batch_size`` override
    the settings for this sweep and are carried to later batches.
    """

    name = DOCUMENT_BUILD
    next_stage = CHUNK_BUILD

    def __init__(
        self,
        ctx: PipelineContext,
        source: ContentSource,
        normalizer: ContentNormalizer | None = None,
    ) -> None:
        super().__init__(ctx)
        self.source = source
        self.normalizer = normalizer or ContentNormalizer()

    def run_batch(self, cursor: int, state: BatchState, payload: dict[str, Any]) -> StageOutcome:
        content_types = payload.get("content_types") or self.settings.content_types
        limit = int(payload.get("batch_size") or self.settings.document_batch_size)

        items = self.source.fetch_page(cursor, limit, content_types)
        if not items:
            return self.complete(state)

        counts: Counter[str] = Counter()
        max_id = cursor
        with self.sessions.begin() as session:
            docs = DocumentRepository(session)
            for item in items:
                max_id = max(max_id, item.id)
                counts["processed"] += 1
                existing = docs.get_by_source_id(item.id)

                if self.source.is_excluded(item.id):
                    counts["excluded"] += 1
                    if existing is not None and existing.status != DocumentStatus.EXCLUDED:
                        existing.status = DocumentStatus.EXCLUDED
                    continue

                text = self.normalizer.normalize(item.title, item.body, item)
                if not text:
                    counts["empty"] += 1
                    continue
                digest = compute_hash(text)

                if existing is None:
                    docs.add(
                        source_id=item.id,
                        source_type=item.type,
                        title=item.title,
                        content=text,
                        content_hash=digest,
                        url=item.url,
                    )
                    counts["inserted"] += 1
                elif existing.content_hash == digest and existing.status != DocumentStatus.EXCLUDED:
                    counts["unchanged"] += 1
                else:
                    existing.title = item.title
                    existing.source_type = item.type
                    existing.url = item.url
                    existing.content = text
                    existing.content_hash = digest
                    existing.status = DocumentStatus.PENDING
                    existing.chunk_count = 0
                    existing.error_message = None
                    counts["updated"] += 1

        return self.advance(state, max_id, dict(counts), payload)
