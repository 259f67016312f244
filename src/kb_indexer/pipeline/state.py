"""Per-stage batch state, stage outcomes and their persistence."""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import delete
from sqlalchemy.orm import Session, sessionmaker

from kb_indexer.storage.models import BatchStateModel

logger = logging.getLogger(__name__)

STAGE_KEY_PREFIX = "stage:"


class StageStatus(str, enum.Enum):
    """Where a stage invocation ended up.

    ``idle → running → {rescheduled | backoff | complete | failed}``
    """

    IDLE = "idle"
    RUNNING = "running"
    RESCHEDULED = "rescheduled"
    BACKOFF = "backoff"
    COMPLETE = "complete"
    FAILED = "failed"


class BatchState(BaseModel):
    """Cursor and cumulative counters carried between invocations of one stage."""

    last_id: int = 0
    counts: dict[str, int] = Field(default_factory=dict)
    retry_count: int = 0

    def add_counts(self, counts: dict[str, int]) -> None:
        for key, value in counts.items():
            self.counts[key] = self.counts.get(key, 0) + value


class StageOutcome(BaseModel):
    """Result of one :meth:`Stage.execute` call."""

    stage: str
    status: StageStatus
    cursor: int
    counts: dict[str, int] = Field(default_factory=dict)
    next_stage: str | None = None
    run_at: datetime | None = None
    error: str | None = None


class BatchStateStore(ABC):
    """Key/value persistence for stage cursors and the pipeline status record."""

    @abstractmethod
    def read(self, key: str) -> dict[str, Any] | None:
        ...

    @abstractmethod
    def write(self, key: str, payload: dict[str, Any]) -> None:
        ...

    @abstractmethod
    def delete(self, keys: Iterable[str]) -> None:
        ...

    # -- stage helpers --------------------------------------------------------

    def load(self, stage: str) -> BatchState:
        raw = self.read(STAGE_KEY_PREFIX + stage)
        return BatchState.model_validate(raw) if raw else BatchState()

    def save(self, stage: str, state: BatchState) -> None:
        self.write(STAGE_KEY_PREFIX + stage, state.model_dump(mode="json"))

    def clear(self, stage: str) -> None:
        self.delete([STAGE_KEY_PREFIX + stage])

    def clear_many(self, stages: Iterable[str]) -> None:
        self.delete([STAGE_KEY_PREFIX + s for s in stages])


class InMemoryBatchStateStore(BatchStateStore):
    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}

    def read(self, key: str) -> dict[str, Any] | None:
        value = self._data.get(key)
        return dict(value) if value is not None else None

    def write(self, key: str, payload: dict[str, Any]) -> None:
        self._data[key] = dict(payload)

    def delete(self, keys: Iterable[str]) -> None:
        for key in keys:
            self._data.pop(key, None)


class SqlBatchStateStore(BatchStateStore):
    """Batch state in ``kb_batch_state``; survives process restarts."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._sessions = session_factory

    def read(self, key: str) -> dict[str, Any] | None:
        with self._sessions() as session:
            row = session.get(BatchStateModel, key)
            return dict(row.payload) if row is not None else None

    def write(self, key: str, payload: dict[str, Any]) -> None:
        with self._sessions.begin() as session:
            row = session.get(BatchStateModel, key)
            if row is None:
                session.add(BatchStateModel(key=key, payload=dict(payload)))
            else:
                # Reassign so the JSON column is seen as modified.
                row.payload = dict(payload)

    def delete(self, keys: Iterable[str]) -> None:
        keys = list(keys)
        if not keys:
            return
        with self._sessions.begin() as session:
            session.execute(
                delete(BatchStateModel).where(BatchStateModel.key.in_(keys)),
                execution_options={"synchronize_session": False},
            )
