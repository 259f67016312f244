"""Indexer configuration loaded from environment / ``.env``.

A :class:`Settings` instance is built once by each entry point (CLI, API,
KFP component) and handed to every stage, client and store explicitly.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

EMBED_BATCH_HARD_CAP = 100


class Settings(BaseSettings):
    """Indexer settings, populated from ``KB_*`` env vars or a .env file."""

    # Persistence
    database_url: str = Field(
        default="sqlite:///kb_index.db",
        description="SQLAlchemy URL of the relational store (MySQL, PostgreSQL or SQLite)",
    )
    echo_sql: bool = False

    # Provider
    api_key: str = Field(default="", description="API key for the OpenAI-compatible provider")
    provider_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        description="Base URL of the chat-completions / embeddings API",
    )
    extraction_model: str = "openai/gpt-4o-mini"
    embedding_model: str = "openai/text-embedding-3-small"
    embedding_dimensions: int | None = Field(
        default=1536,
        description="Expected vector size; ``None`` accepts whatever the model returns",
    )
    request_timeout: float = 60.0
    embedding_timeout: float = 120.0
    max_tokens: int = 4096
    temperature: float = 0.1

    # Rate limiting / retry
    requests_per_minute: int = 60
    rate_window_seconds: float = 60.0
    max_retries: int = 3
    base_delay_seconds: float = 5.0
    backoff_multiplier: float = 2.0

    # Pipeline batches
    document_batch_size: int = 20
    chunk_batch_size: int = 10
    embed_batch_size: int = 20
    upsert_batch_size: int = 50
    embed_max_retries: int = 5
    embed_base_backoff: float = 5.0
    reschedule_delay_seconds: float = 1.0
    content_types: list[str] = Field(default_factory=lambda: ["post", "page"])
    source_path: str | None = Field(
        default=None,
        description="JSON-Lines export read by the built-in content source",
    )

    # Chunking
    chunk_size: int = 1000
    chunk_overlap: int = 200
    min_chunk_chars: int = 50

    # Vector store
    vector_backend: Literal["sql", "chroma"] = "sql"
    chroma_host: str = "localhost"
    chroma_port: int = 8000
    chroma_collection: str = "kb_vectors"
    max_scan_vectors: int = 5000
    top_k_default: int = 8

    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "env_prefix": "KB_"}

    @field_validator("embed_batch_size")
    @classmethod
    def _cap_embed_batch(cls, value: int) -> int:
        if value < 1:
            raise ValueError("embed_batch_size must be positive")
        return min(value, EMBED_BATCH_HARD_CAP)

    @field_validator("chunk_overlap")
    @classmethod
    def _overlap_below_size(cls, value: int, info) -> int:  # noqa: ANN001
        size = info.data.get("chunk_size")
        if size is not None and value >= size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return value


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings used by entry points."""
    return Settings()
