"""Pipeline manager — wiring, status tracking, start/reset and job dispatch.

The manager owns one instance of each stage, routes scheduled jobs to
them, and folds the events they publish into a persisted status record
(``idle | running | completed | failed`` plus current phase and error).
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from kb_indexer.config import Settings
from kb_indexer.events import (
    BatchProcessed,
    EventBus,
    PipelineCompleted,
    StageBackoff,
    StageCompleted,
    StageFailed,
)
from kb_indexer.ingestion.chunker import DocumentChunker
from kb_indexer.ingestion.normalizer import ContentNormalizer
from kb_indexer.ingestion.source import ContentSource
from kb_indexer.pipeline.base import DOCUMENT_BUILD, PIPELINE_STAGES, PipelineContext, Stage
from kb_indexer.pipeline.chunk_build import ChunkBuildStage
from kb_indexer.pipeline.cleanup import KnowledgeBaseCleanup
from kb_indexer.pipeline.document_build import DocumentBuildStage
from kb_indexer.pipeline.embed_chunks import BatchEmbedder, EmbedChunksStage
from kb_indexer.pipeline.index_upsert import IndexUpsertStage
from kb_indexer.pipeline.scheduler import InMemoryScheduler, JobScheduler, ScheduledJob
from kb_indexer.pipeline.state import BatchStateStore, SqlBatchStateStore, StageOutcome
from kb_indexer.retrieval.base import VectorStoreBase

logger = logging.getLogger(__name__)

STATUS_KEY = "pipeline:status"


class PipelineStatus(str, enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class PipelineState(BaseModel):
    """Externally visible pipeline status."""

    status: PipelineStatus = PipelineStatus.IDLE
    phase: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    updated_at: datetime | None = None
    stage_counts: dict[str, dict[str, int]] = Field(default_factory=dict)
    stats: dict[str, Any] = Field(default_factory=dict)


class PipelineManager:
    """Drive the four-stage sweep.

    Parameters
    ----------
    ctx:
        Shared stage context (settings, sessions, scheduler, state, events).
    stages:
        Stage instances keyed by name.
    """

    def __init__(self, ctx: PipelineContext, stages: list[Stage]) -> None:
        self.ctx = ctx
        self.stages: dict[str, Stage] = {stage.name: stage for stage in stages}
        missing = set(PIPELINE_STAGES) - set(self.stages)
        if missing:
            raise ValueError(f"Pipeline is missing stages: {sorted(missing)}")

        events = ctx.events
        events.subscribe(BatchProcessed, self._on_batch)
        events.subscribe(StageBackoff, self._on_backoff)
        events.subscribe(StageCompleted, self._on_stage_completed)
        events.subscribe(StageFailed, self._on_failed)
        events.subscribe(PipelineCompleted, self._on_pipeline_completed)

    # -- public API -----------------------------------------------------------

    def start(self, *, force: bool = False, options: dict[str, Any] | None = None) -> PipelineState:
        """Begin a full sweep at the Document Build stage.

        A sweep that is already running is left alone unless *force*.
        """
        current = self.status()
        if current.status == PipelineStatus.RUNNING and not force:
            logger.info("Pipeline already running (phase %s)", current.phase)
            return current

        self.ctx.scheduler.cancel()
        self.ctx.state_store.clear_many(PIPELINE_STAGES)
        now = self.ctx.clock()
        state = PipelineState(
            status=PipelineStatus.RUNNING,
            phase=DOCUMENT_BUILD,
            started_at=now,
            updated_at=now,
        )
        self._save(state)
        self.ctx.scheduler.enqueue(DOCUMENT_BUILD, {**(options or {}), "last_id": 0}, now)
        logger.info("Pipeline started")
        return state

    def reset(self) -> PipelineState:
        """Drop all stage cursors, pending jobs and status; back to ``idle``."""
        dropped = self.ctx.scheduler.cancel()
        self.ctx.state_store.clear_many(PIPELINE_STAGES)
        state = PipelineState(updated_at=self.ctx.clock())
        self._save(state)
        logger.info("Pipeline reset (%d pending jobs dropped)", dropped)
        return state

    def reset_stage(self, stage: str) -> None:
        """Clear one stage's cursor so its next invocation starts from zero."""
        if stage not in self.stages:
            raise KeyError(stage)
        self.ctx.state_store.clear(stage)

    def status(self) -> PipelineState:
        raw = self.ctx.state_store.read(STATUS_KEY)
        return PipelineState.model_validate(raw) if raw else PipelineState()

    def dispatch(self, job: ScheduledJob) -> StageOutcome:
        """Run the stage named by *job*."""
        stage = self.stages.get(job.stage)
        if stage is None:
            raise KeyError(f"Unknown stage {job.stage!r}")
        return stage.execute(job.payload)

    def run_sweep(self, *, max_jobs: int = 100_000, options: dict[str, Any] | None = None) -> PipelineState:
        """Start and drain a whole sweep in-process (in-memory scheduler only)."""
        scheduler = self.ctx.scheduler
        if not isinstance(scheduler, InMemoryScheduler):
            raise TypeError("run_sweep needs an InMemoryScheduler")
        self.start(force=True, options=options)
        jobs = scheduler.run_until_idle(self.dispatch, max_jobs=max_jobs)
        state = self.status()
        logger.info("Sweep finished after %d jobs: %s", jobs, state.status.value)
        return state

    # -- event handlers -------------------------------------------------------

    def _update(self, **changes: Any) -> None:
        state = self.status().model_copy(update={**changes, "updated_at": self.ctx.clock()})
        self._save(state)

    def _save(self, state: PipelineState) -> None:
        self.ctx.state_store.write(STATUS_KEY, state.model_dump(mode="json"))

    def _on_batch(self, event: BatchProcessed) -> None:
        counts = dict(self.status().stage_counts)
        merged = dict(counts.get(event.stage, {}))
        for key, value in event.counts.items():
            merged[key] = merged.get(key, 0) + value
        counts[event.stage] = merged
        self._update(status=PipelineStatus.RUNNING, phase=event.stage, stage_counts=counts, error=None)

    def _on_backoff(self, event: StageBackoff) -> None:
        self._update(phase=event.stage, error=f"rate limited, retry {event.retry_count} in {event.delay_seconds:.0f}s")

    def _on_stage_completed(self, event: StageCompleted) -> None:
        if event.next_stage is not None:
            self._update(status=PipelineStatus.RUNNING, phase=event.next_stage, error=None)

    def _on_failed(self, event: StageFailed) -> None:
        self._update(status=PipelineStatus.FAILED, phase=event.stage, error=event.error)

    def _on_pipeline_completed(self, event: PipelineCompleted) -> None:
        self._update(status=PipelineStatus.COMPLETED, phase=None, error=None, stats=event.stats)


def build_pipeline(
    settings: Settings,
    session_factory: sessionmaker[Session],
    *,
    source: ContentSource,
    embedder: BatchEmbedder,
    vector_store: VectorStoreBase,
    scheduler: JobScheduler | None = None,
    state_store: BatchStateStore | None = None,
    events: EventBus | None = None,
    normalizer: ContentNormalizer | None = None,
    chunker: DocumentChunker | None = None,
    **ctx_kwargs: Any,
) -> PipelineManager:
    """Wire the four stages and the cleanup into a :class:`PipelineManager`."""
    ctx = PipelineContext(
        settings=settings,
        session_factory=session_factory,
        scheduler=scheduler or InMemoryScheduler(),
        state_store=state_store or SqlBatchStateStore(session_factory),
        events=events or EventBus(),
        **ctx_kwargs,
    )
    cleanup = KnowledgeBaseCleanup(session_factory, vector_store, source)
    stages: list[Stage] = [
        DocumentBuildStage(ctx, source, normalizer),
        ChunkBuildStage(ctx, vector_store, chunker),
        EmbedChunksStage(ctx, embedder, vector_store),
        IndexUpsertStage(ctx, vector_store, cleanup),
    ]
    return PipelineManager(ctx, stages)
