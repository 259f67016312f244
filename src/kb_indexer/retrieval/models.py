"""Domain models for vector search filters, hits and enriched results."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class SearchFilters(BaseModel):
    """Metadata pre-filters applied before similarity ranking.

    Attributes
    ----------
    doc_type:
        Source item type (``"post"``, ``"page"`` ...).
    doc_id:
        Restrict to one document.
    source_id:
        Restrict to one source item.
    status:
        Document status, e.g. ``"indexed"``.
    date_after / date_before:
        Bounds on the chunk creation time (inclusive).
    """

    doc_type: str | None = None
    doc_id: int | None = None
    source_id: int | None = None
    status: str | None = None
    date_after: datetime | None = None
    date_before: datetime | None = None

    def is_empty(self) -> bool:
        return all(value is None for value in self.model_dump().values())


class VectorHit(BaseModel):
    """One ranked vector-store match."""

    chunk_id: int
    score: float
    metadata: dict[str, Any] = Field(default_factory=dict)


class Citation(BaseModel):
    """Provenance record linking a retrieved chunk back to its source item.

    Attributes
    ----------
    citation_id:
        Unique identifier for this citation instance.
    chunk_id:
        Identifier of the matched chunk.
    doc_id:
        Owning document.
    source_id:
        Identifier of the host content item.
    title:
        Document title.
    url:
        Source URL when the host supplied one.
    chunk_index:
        Ordinal position of the chunk within the document.
    score:
        Cosine similarity returned by the vector store.
    retrieved_at:
        UTC timestamp of when the retrieval happened.
    """

    citation_id: str = Field(default_factory=lambda: uuid4().hex[:12])
    chunk_id: int
    doc_id: int | None = None
    source_id: int | None = None
    title: str = ""
    url: str | None = None
    chunk_index: int | None = None
    score: float | None = None
    retrieved_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def short_ref(self) -> str:
        """Return a compact ``[title§chunk]`` reference string."""
        chunk = self.chunk_index if self.chunk_index is not None else "?"
        return f"[{self.title or self.source_id}§{chunk}]"


class RetrievalResult(BaseModel):
    """A single retrieved passage together with its citation."""

    content: str
    citation: Citation

    def __str__(self) -> str:  # noqa: D105
        return f"{self.citation.short_ref()} {self.content[:120]}…"
