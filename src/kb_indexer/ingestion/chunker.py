"""Deterministic text chunking for document content."""

from __future__ import annotations

import math

from langchain_text_splitters import RecursiveCharacterTextSplitter
from pydantic import BaseModel

CHARS_PER_TOKEN = 4


class TextChunk(BaseModel):
    """One chunk ready for insertion; ``index`` is contiguous from zero."""

    index: int
    text: str
    token_count: int


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


class DocumentChunker:
    """Split normalised document text into overlapping chunks.

    Parameters
    ----------
    chunk_size:
        Maximum number of characters per chunk (before the title prefix).
    chunk_overlap:
        Number of overlapping characters between consecutive chunks.
    min_chunk_chars:
        Fragments shorter than this are dropped, unless the document
        yields nothing else.
    """

    def __init__(
        self,
        chunk_size: int = 1000,
        chunk_overlap: int = 200,
        min_chunk_chars: int = 50,
    ) -> None:
        self.min_chunk_chars = min_chunk_chars
        self._splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            length_function=len,
            separators=["\n\n", "\n", ". ", " ", ""],
        )

    def split(self, text: str, title: str = "") -> list[TextChunk]:
        """Return the chunks of *text*, each prefixed with ``[title]``.

        Parameters
        ----------
        text:
            Normalised document content.
        title:
            Document title; gives every chunk standalone context.

        Returns
        -------
        list[TextChunk]
            Empty when *text* is blank.
        """
        pieces = [p.strip() for p in self._splitter.split_text(text or "")]
        pieces = [p for p in pieces if p]
        if not pieces:
            return []

        kept = [p for p in pieces if len(p) >= self.min_chunk_chars]
        if not kept:
            # A short document still gets one chunk.
            kept = [" ".join(pieces)]

        prefix = f"[{title}]\n\n" if title else ""
        return [
            TextChunk(index=i, text=prefix + piece, token_count=estimate_tokens(prefix + piece))
            for i, piece in enumerate(kept)
        ]
