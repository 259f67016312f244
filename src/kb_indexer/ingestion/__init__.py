"""
Ingestion — content sources, normalisation, and chunking.

Turns raw host content (title + markup body) into canonical text, a
content hash for change detection, and deterministic chunks for embedding.
"""

from kb_indexer.ingestion.chunker import DocumentChunker, TextChunk, estimate_tokens
from kb_indexer.ingestion.normalizer import ContentNormalizer, compute_hash
from kb_indexer.ingestion.source import (
    ContentSource,
    InMemoryContentSource,
    JsonlContentSource,
    SourceItem,
)

__all__ = [
    "ContentNormalizer",
    "ContentSource",
    "DocumentChunker",
    "InMemoryContentSource",
    "JsonlContentSource",
    "SourceItem",
    "TextChunk",
    "compute_hash",
    "estimate_tokens",
]
