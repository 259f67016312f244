"""Shared machinery for resumable, one-batch-per-invocation stages.

Every stage follows the same contract:

* read the persisted :class:`BatchState` (or the cursor in the payload);
* process one bounded batch of ids strictly above the cursor;
* persist the advanced cursor and enqueue itself, or, when the input is
  exhausted, clear its state and enqueue the next stage at cursor zero.

Any exception escaping the batch body is logged, published as
:class:`StageFailed` and leaves the cursor untouched, so the next
invocation retries the same batch.

A stage must not keep a database session open while it calls the vector
store or another component that opens its own session.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from kb_indexer.config import Settings
from kb_indexer.events import BatchProcessed, EventBus, StageCompleted, StageFailed
from kb_indexer.pipeline.scheduler import JobScheduler
from kb_indexer.pipeline.state import BatchState, BatchStateStore, StageOutcome, StageStatus
from kb_indexer.storage.models import utcnow

logger = logging.getLogger(__name__)

DOCUMENT_BUILD = "document_build"
CHUNK_BUILD = "chunk_build"
EMBED_CHUNKS = "embed_chunks"
INDEX_UPSERT = "index_upsert"
PIPELINE_STAGES = (DOCUMENT_BUILD, CHUNK_BUILD, EMBED_CHUNKS, INDEX_UPSERT)


@dataclass
class PipelineContext:
    """Collaborators every stage needs; built once per process."""

    settings: Settings
    session_factory: sessionmaker[Session]
    scheduler: JobScheduler
    state_store: BatchStateStore
    events: EventBus = field(default_factory=EventBus)
    clock: Callable[[], datetime] = utcnow


class Stage(ABC):
    """Base class for pipeline stages.

    Subclasses set :attr:`name` / :attr:`next_stage` and implement
    :meth:`run_batch`.
    """

    name: str = ""
    next_stage: str | None = None

    def __init__(self, ctx: PipelineContext) -> None:
        self.ctx = ctx
        self.settings = ctx.settings
        self.sessions = ctx.session_factory
        self.events = ctx.events
        self.status = StageStatus.IDLE

    # -- entry point ----------------------------------------------------------

    def execute(self, payload: dict[str, Any] | None = None) -> StageOutcome:
        """Run one batch.  Never raises; failures come back as ``failed``."""
        payload = dict(payload or {})
        state = self.ctx.state_store.load(self.name)
        cursor = int(payload.get("last_id", state.last_id) or 0)
        self.status = StageStatus.RUNNING
        logger.info("%s: batch after id %d", self.name, cursor)

        try:
            outcome = self.run_batch(cursor, state, payload)
        except Exception as exc:
            logger.exception("%s: batch after id %d failed", self.name, cursor)
            self.events.publish(
                StageFailed(stage=self.name, cursor=cursor, error=str(exc), error_type=type(exc).__name__)
            )
            outcome = StageOutcome(stage=self.name, status=StageStatus.FAILED, cursor=cursor, error=str(exc))

        self.status = outcome.status
        return outcome

    @abstractmethod
    def run_batch(self, cursor: int, state: BatchState, payload: dict[str, Any]) -> StageOutcome:
        """Process the batch after *cursor* and return via :meth:`advance` or :meth:`complete`."""
        ...

    # -- transitions ----------------------------------------------------------

    def advance(
        self,
        state: BatchState,
        new_cursor: int,
        counts: dict[str, int],
        payload: dict[str, Any],
    ) -> StageOutcome:
        """Persist the new cursor and enqueue the next batch of this stage."""
        state.last_id = new_cursor
        state.retry_count = 0
        state.add_counts(counts)
        self.ctx.state_store.save(self.name, state)

        self.events.publish(BatchProcessed(stage=self.name, cursor=new_cursor, counts=counts))
        run_at = self.ctx.clock() + timedelta(seconds=self.settings.reschedule_delay_seconds)
        self.ctx.scheduler.enqueue(self.name, {**payload, "last_id": new_cursor}, run_at)
        logger.info("%s: batch done, cursor -> %d %s", self.name, new_cursor, counts)
        return StageOutcome(
            stage=self.name,
            status=StageStatus.RESCHEDULED,
            cursor=new_cursor,
            counts=counts,
            run_at=run_at,
        )

    def complete(self, state: BatchState) -> StageOutcome:
        """Clear state, announce completion and hand over to :attr:`next_stage`."""
        self.ctx.state_store.clear(self.name)
        self.events.publish(StageCompleted(stage=self.name, counts=state.counts, next_stage=self.next_stage))

        run_at = None
        if self.next_stage is not None:
            run_at = self.ctx.clock()
            self.ctx.scheduler.enqueue(self.next_stage, {"last_id": 0}, run_at)
        logger.info("%s: complete %s -> %s", self.name, state.counts, self.next_stage or "done")
        return StageOutcome(
            stage=self.name,
            status=StageStatus.COMPLETE,
            cursor=state.last_id,
            counts=state.counts,
            next_stage=self.next_stage,
            run_at=run_at,
        )
