"""Job-scheduler contract and an in-process implementation.

Stages never loop: each invocation handles one batch and asks the
scheduler to run the next invocation at some time.  A production host
plugs its durable queue in behind :class:`JobScheduler`;
:class:`InMemoryScheduler` drains a whole sweep inside one process (CLI,
KFP component, tests).
"""

from __future__ import annotations

import heapq
import itertools
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ScheduledJob(BaseModel):
    """A stage invocation waiting to run."""

    stage: str
    payload: dict[str, Any] = Field(default_factory=dict)
    run_at: datetime


class JobScheduler(ABC):
    """At-least-once, eventually-executed invocation of ``(stage, payload)``."""

    @abstractmethod
    def enqueue(self, stage: str, payload: dict[str, Any], run_at: datetime) -> None:
        """Schedule *stage* to run with *payload* no earlier than *run_at*."""
        ...

    def cancel(self, stage: str | None = None) -> int:
        """Drop pending jobs (of *stage*, or all).  Optional; returns 0 by default."""
        return 0


class InMemoryScheduler(JobScheduler):
    """Priority queue of jobs ordered by ``run_at`` then insertion.

    Enqueuing a job identical to one already pending (same stage and
    payload) keeps only the earlier one, so a stage stays single-flight.

    Parameters
    ----------
    real_time:
        When ``True``, :meth:`run_until_idle` sleeps until each job is due.
        Otherwise time is virtual and jobs run back to back.
    sleep:
        Injectable sleep used in real-time mode.
    """

    def __init__(self, *, real_time: bool = False, sleep: Callable[[float], None] = time.sleep) -> None:
        self.real_time = real_time
        self._sleep = sleep
        self._heap: list[tuple[datetime, int, ScheduledJob]] = []
        self._seq = itertools.count()
        self.history: list[ScheduledJob] = []

    def enqueue(self, stage: str, payload: dict[str, Any], run_at: datetime) -> None:
        for _, _, job in self._heap:
            if job.stage == stage and job.payload == payload:
                logger.debug("Job %s %s already pending", stage, payload)
                return
        job = ScheduledJob(stage=stage, payload=dict(payload), run_at=run_at)
        heapq.heappush(self._heap, (run_at, next(self._seq), job))
        logger.debug("Enqueued %s at %s with %s", stage, run_at.isoformat(), payload)

    def cancel(self, stage: str | None = None) -> int:
        before = len(self._heap)
        self._heap = [entry for entry in self._heap if stage is not None and entry[2].stage != stage]
        heapq.heapify(self._heap)
        return before - len(self._heap)

    def pending(self) -> list[ScheduledJob]:
        return [job for _, _, job in sorted(self._heap)]

    def pop_next(self) -> ScheduledJob | None:
        if not self._heap:
            return None
        _, _, job = heapq.heappop(self._heap)
        return job

    def run_until_idle(
        self,
        dispatch: Callable[[ScheduledJob], Any],
        *,
        max_jobs: int = 100_000,
    ) -> int:
        """Pop and dispatch jobs until the queue is empty; return how many ran.

        Raises
        ------
        RuntimeError
            When *max_jobs* is reached with work still pending.
        """
        ran = 0
        while self._heap:
            if ran >= max_jobs:
                raise RuntimeError(f"Scheduler still busy after {max_jobs} jobs")
            job = self.pop_next()
            if self.real_time:
                wait = (job.run_at - datetime.now(timezone.utc)).total_seconds()
                if wait > 0:
                    self._sleep(wait)
            self.history.append(job)
            dispatch(job)
            ran += 1
        return ran
