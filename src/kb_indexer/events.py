"""Typed pipeline events and a small in-process event bus.

Components receive an :class:`EventBus` in their constructor and publish
events on it; consumers (the pipeline manager, the CLI, tests) subscribe
by event type.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class PipelineEvent(BaseModel):
    """Base event: every event names the stage that emitted it."""

    stage: str
    emitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BatchProcessed(PipelineEvent):
    """One bounded batch finished and the cursor advanced."""

    cursor: int
    counts: dict[str, int] = Field(default_factory=dict)


class StageCompleted(PipelineEvent):
    """A stage exhausted its input; ``next_stage`` was enqueued (if any)."""

    counts: dict[str, int] = Field(default_factory=dict)
    next_stage: str | None = None


class StageFailed(PipelineEvent):
    """A batch aborted; the cursor was left unchanged."""

    cursor: int
    error: str
    error_type: str = "Exception"


class StageBackoff(PipelineEvent):
    """A batch was deferred because of a provider rate limit."""

    cursor: int
    retry_count: int
    delay_seconds: float


class DocumentIndexed(PipelineEvent):
    """All chunks of a document carry vectors."""

    doc_id: int
    source_id: int
    chunk_count: int


class PipelineCompleted(PipelineEvent):
    """The terminal stage finished a full sweep."""

    stats: dict[str, Any] = Field(default_factory=dict)


E = TypeVar("E", bound=PipelineEvent)
Handler = Callable[[Any], None]


class EventBus:
    """Synchronous publish/subscribe dispatcher.

    Handlers subscribed to a base class receive every subclass event too.
    A failing handler is logged and does not stop delivery to the others,
    nor does it propagate into the publishing stage.
    """

    def __init__(self) -> None:
        self._handlers: dict[type[PipelineEvent], list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: type[E], handler: Callable[[E], None]) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: PipelineEvent) -> None:
        for event_type, handlers in list(self._handlers.items()):
            if not isinstance(event, event_type):
                continue
            for handler in list(handlers):
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "Event handler %r failed for %s", handler, type(event).__name__
                    )


class EventRecorder:
    """Subscriber that keeps every event it sees; handy for the CLI and tests."""

    def __init__(self, bus: EventBus | None = None) -> None:
        self.events: list[PipelineEvent] = []
        if bus is not None:
            bus.subscribe(PipelineEvent, self.events.append)

    def of_type(self, event_type: type[E]) -> list[E]:
        return [e for e in self.events if isinstance(e, event_type)]
