"""
Providers — rate-limited clients for the external AI provider.

Public surface
--------------
- :class:`RateLimitedClient` — shared limiter + retry loop.
- :class:`ExtractionClient` — chat-completions returning a JSON object.
- :class:`EmbeddingClient` — batch embeddings.
"""

from kb_indexer.providers.client import RateLimitedClient
from kb_indexer.providers.embedding import (
    MODEL_DIMENSIONS,
    EmbeddingClient,
    EmbeddingResult,
    model_dimensions,
)
from kb_indexer.providers.extraction import ExtractionClient, parse_completion

__all__ = [
    "MODEL_DIMENSIONS",
    "EmbeddingClient",
    "EmbeddingResult",
    "ExtractionClient",
    "RateLimitedClient",
    "model_dimensions",
    "parse_completion",
]
