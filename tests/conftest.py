"""Shared pytest configuration and fixtures."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone

import pytest

from kb_indexer.config import Settings
from kb_indexer.events import EventBus, EventRecorder
from kb_indexer.ingestion.chunker import TextChunk, estimate_tokens
from kb_indexer.pipeline.base import PipelineContext
from kb_indexer.pipeline.scheduler import InMemoryScheduler
from kb_indexer.pipeline.state import SqlBatchStateStore
from kb_indexer.providers.embedding import EmbeddingResult
from kb_indexer.retrieval.sql_store import SqlVectorStore
from kb_indexer.storage.database import create_db_engine, create_session_factory, init_schema
from kb_indexer.storage.models import DocumentStatus
from kb_indexer.storage.repositories import ChunkRepository, DocumentRepository

FIXED_NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
TEST_DIMS = 8


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests requiring external services")


class HashingEmbedder:
    """Deterministic bag-of-words embedder: each token bumps one of ``dims`` buckets."""

    def __init__(self, dims: int = TEST_DIMS, model: str = "test-embed") -> None:
        self.dims = dims
        self.model = model
        self.calls: list[list[str]] = []

    def vector(self, text: str) -> list[float]:
        vec = [0.0] * self.dims
        for token in re.findall(r"\w+", text.lower()):
            vec[int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dims] += 1.0
        return vec

    def embed(self, texts: list[str]) -> EmbeddingResult:
        self.calls.append(list(texts))
        return EmbeddingResult(embeddings=[self.vector(t) for t in texts], model=self.model, dims=self.dims)

    def embed_single(self, text: str) -> list[float]:
        return self.vector(text)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        api_key="test-key",
        embedding_model="test-embed",
        embedding_dimensions=TEST_DIMS,
        chunk_size=200,
        chunk_overlap=40,
        min_chunk_chars=20,
        base_delay_seconds=0.01,
    )


@pytest.fixture()
def engine(settings: Settings):
    engine = create_db_engine(settings.database_url)
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture()
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture()
def vector_store(session_factory) -> SqlVectorStore:
    return SqlVectorStore(session_factory, max_scan=5000, default_top_k=8)


@pytest.fixture()
def events() -> EventBus:
    return EventBus()


@pytest.fixture()
def recorder(events: EventBus) -> EventRecorder:
    return EventRecorder(events)


@pytest.fixture()
def scheduler() -> InMemoryScheduler:
    return InMemoryScheduler()


@pytest.fixture()
def ctx(settings, session_factory, scheduler, events) -> PipelineContext:
    return PipelineContext(
        settings=settings,
        session_factory=session_factory,
        scheduler=scheduler,
        state_store=SqlBatchStateStore(session_factory),
        events=events,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture()
def seed(session_factory):
    """Factory inserting a document with chunks; returns ``(doc_id, chunk_ids)``."""

    def _seed(
        source_id: int,
        texts: list[str],
        *,
        source_type: str = "post",
        status: DocumentStatus = DocumentStatus.CHUNKED,
        title: str = "",
    ) -> tuple[int, list[int]]:
        with session_factory.begin() as session:
            doc = DocumentRepository(session).add(
                source_id=source_id,
                source_type=source_type,
                title=title or f"Doc {source_id}",
                content="\n\n".join(texts),
                content_hash=f"hash-{source_id}",
            )
            doc.status = status
            doc.chunk_count = len(texts)
            chunks = [TextChunk(index=i, text=t, token_count=estimate_tokens(t)) for i, t in enumerate(texts)]
            ChunkRepository(session).replace_for_document(doc, chunks)
            doc_id = doc.id
        with session_factory() as session:
            return doc_id, ChunkRepository(session).ids_for_document(doc_id)

    return _seed
