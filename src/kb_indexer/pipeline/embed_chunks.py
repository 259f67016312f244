"""Embedding — vectorise chunks that have no current vector."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Protocol

from kb_indexer.config import EMBED_BATCH_HARD_CAP
from kb_indexer.events import StageBackoff, StageFailed
from kb_indexer.exceptions import DimensionMismatchError, EmbeddingCountMismatchError, RateLimitError
from kb_indexer.pipeline.base import EMBED_CHUNKS, INDEX_UPSERT, PipelineContext, Stage
from kb_indexer.pipeline.state import BatchState, StageOutcome, StageStatus
from kb_indexer.providers.embedding import EmbeddingResult
from kb_indexer.retrieval.base import VectorStoreBase
from kb_indexer.storage.repositories import ChunkRepository

logger = logging.getLogger(__name__)


class BatchEmbedder(Protocol):
    model: str

    def embed(self, texts: list[str]) -> EmbeddingResult: ...


class EmbedChunksStage(Stage):
    """Embed one batch of chunks per invocation with a single provider request.

    Provider rate limits are not failures: the same cursor is retried after
    the provider's ``Retry-After`` (or ``base * 2 ** (retries - 1)``) until
    ``embed_max_retries`` consecutive rate limits have been seen.
    """

    name = EMBED_CHUNKS
    next_stage = INDEX_UPSERT

    def __init__(self, ctx: PipelineContext, embedder: BatchEmbedder, vector_store: VectorStoreBase) -> None:
        super().__init__(ctx)
        self.embedder = embedder
        self.vector_store = vector_store

    @property
    def model(self) -> str:
        return getattr(self.embedder, "model", None) or self.settings.embedding_model

    def run_batch(self, cursor: int, state: BatchState, payload: dict[str, Any]) -> StageOutcome:
        limit = int(payload.get("batch_size") or self.settings.embed_batch_size)
        limit = max(1, min(limit, EMBED_BATCH_HARD_CAP))
        model = self.model

        batch, resume_at = self._select_batch(cursor, limit, model)
        if resume_at is None:
            return self.complete(state)
        if not batch:
            # Everything scanned already has a current vector.
            return self.advance(state, resume_at, {"embedded": 0}, payload)

        try:
            result = self.embedder.embed([text for _, text, _ in batch])
        except RateLimitError as exc:
            return self._back_off(state, cursor, exc, payload)

        self._validate(result, len(batch))

        items = [
            (chunk_id, vector, meta)
            for (chunk_id, _, meta), vector in zip(batch, result.embeddings)
        ]
        self.vector_store.store_many(items)
        with self.sessions.begin() as session:
            ChunkRepository(session).mark_embedded([chunk_id for chunk_id, _, _ in batch], model)

        return self.advance(state, resume_at, {"embedded": len(batch)}, payload)

    # -- internals ------------------------------------------------------------

    def _select_batch(
        self, cursor: int, limit: int, model: str
    ) -> tuple[list[tuple[int, str, dict[str, Any]]], int | None]:
        """Collect up to *limit* chunks beyond *cursor* that need a vector.

        A chunk needs one when the vector store has no vector for it or its
        marker names another model.  At most ``max_scan_vectors`` chunks are
        examined per call.

        Returns
        -------
        tuple
            ``(batch, resume_at)``; ``resume_at`` is the cursor for the next
            invocation, ``None`` once no chunk beyond *cursor* exists.
        """
        batch: list[tuple[int, str, dict[str, Any]]] = []
        scanned_to = cursor
        budget = max(self.settings.max_scan_vectors, limit)
        scanned = 0

        while len(batch) < limit and scanned < budget:
            with self.sessions() as session:
                page = [
                    (chunk.id, chunk.chunk_text, chunk.embedding_model, {
                        "doc_id": doc.id,
                        "source_id": doc.source_id,
                        "doc_type": doc.source_type,
                        "chunk_index": chunk.chunk_index,
                        "model": model,
                    })
                    for chunk, doc in ChunkRepository(session).page_with_documents(scanned_to, limit)
                ]
            if not page:
                break

            missing = self.vector_store.missing([chunk_id for chunk_id, _, _, _ in page])
            for chunk_id, text, marker, meta in page:
                scanned_to = chunk_id
                if chunk_id in missing or marker != model:
                    batch.append((chunk_id, text, meta))
                    if len(batch) == limit:
                        break
            scanned += len(page)

        if scanned_to == cursor:
            return batch, None
        return batch, scanned_to

    def _validate(self, result: EmbeddingResult, expected_count: int) -> None:
        """Reject the whole batch before any write."""
        if len(result.embeddings) != expected_count:
            raise EmbeddingCountMismatchError(
                "Embedding count does not match chunk count",
                {"expected": expected_count, "received": len(result.embeddings)},
            )
        expected_dims = self.settings.embedding_dimensions
        for position, vector in enumerate(result.embeddings):
            if len(vector) == 0 or (expected_dims and len(vector) != expected_dims):
                raise DimensionMismatchError(
                    "Embedding has unexpected dimensionality",
                    {"position": position, "dims": len(vector), "expected": expected_dims},
                )

    def _back_off(
        self,
        state: BatchState,
        cursor: int,
        exc: RateLimitError,
        payload: dict[str, Any],
    ) -> StageOutcome:
        state.retry_count += 1
        max_retries = self.settings.embed_max_retries

        if state.retry_count > max_retries:
            logger.error("%s: giving up after %d rate-limited attempts", self.name, max_retries)
            # A fresh invocation starts with a fresh retry budget.
            state.retry_count = 0
            self.ctx.state_store.save(self.name, state)
            error = f"Max retries exceeded ({max_retries}) after rate limiting"
            self.events.publish(
                StageFailed(stage=self.name, cursor=cursor, error=error, error_type=type(exc).__name__)
            )
            return StageOutcome(stage=self.name, status=StageStatus.FAILED, cursor=cursor, error=error)

        if exc.retry_after is not None:
            delay = float(exc.retry_after)
        else:
            delay = self.settings.embed_base_backoff * 2 ** (state.retry_count - 1)

        state.last_id = cursor
        self.ctx.state_store.save(self.name, state)
        run_at = self.ctx.clock() + timedelta(seconds=delay)
        self.ctx.scheduler.enqueue(self.name, {**payload, "last_id": cursor}, run_at)
        self.events.publish(
            StageBackoff(stage=self.name, cursor=cursor, retry_count=state.retry_count, delay_seconds=delay)
        )
        logger.warning(
            "%s: rate limited (%s), retry %d/%d in %.1fs",
            self.name, exc.limit_type, state.retry_count, max_retries, delay,
        )
        return StageOutcome(
            stage=self.name,
            status=StageStatus.BACKOFF,
            cursor=cursor,
            run_at=run_at,
            error=str(exc),
        )
