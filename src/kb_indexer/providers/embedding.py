"""Batch text embedding through the ``/embeddings`` endpoint."""

from __future__ import annotations

import logging
from typing import Any

import requests
from pydantic import BaseModel, Field

from kb_indexer.config import Settings
from kb_indexer.exceptions import DimensionMismatchError, ResponseFormatError
from kb_indexer.providers.client import RateLimitedClient

logger = logging.getLogger(__name__)

MODEL_DIMENSIONS: dict[str, int] = {
    "openai/text-embedding-3-small": 1536,
    "openai/text-embedding-3-large": 3072,
    "openai/text-embedding-ada-002": 1536,
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}


def model_dimensions(model: str) -> int | None:
    """Known output size of *model*, or ``None`` when unknown."""
    return MODEL_DIMENSIONS.get(model)


class EmbeddingResult(BaseModel):
    """Vectors in input order plus provider bookkeeping."""

    embeddings: list[list[float]]
    model: str
    dims: int = 0
    usage: dict[str, Any] = Field(default_factory=dict)


def parse_embeddings(data: dict[str, Any], model: str) -> EmbeddingResult:
    """Validate an embeddings envelope and return vectors ordered by ``index``."""
    items = data.get("data")
    if not isinstance(items, list):
        raise ResponseFormatError("Invalid embedding response: missing 'data' list")

    indexed: list[tuple[int, list[float]]] = []
    for position, item in enumerate(items):
        if not isinstance(item, dict) or not isinstance(item.get("embedding"), list):
            raise ResponseFormatError(
                "Invalid embedding response: item has no 'embedding' array",
                {"position": position},
            )
        index = item.get("index", position)
        if not isinstance(index, int) or isinstance(index, bool):
            raise ResponseFormatError(
                "Invalid embedding response: 'index' must be an integer",
                {"position": position, "index": index},
            )
        indexed.append((index, [float(x) for x in item["embedding"]]))
    indexed.sort(key=lambda pair: pair[0])
    embeddings = [vector for _, vector in indexed]

    dims = len(embeddings[0]) if embeddings else 0
    if any(len(v) != dims for v in embeddings):
        raise DimensionMismatchError(
            "Provider returned vectors of mixed dimensionality",
            {"dims": sorted({len(v) for v in embeddings})},
        )

    usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
    return EmbeddingResult(
        embeddings=embeddings,
        model=data.get("model") or model,
        dims=dims,
        usage=usage,
    )


class EmbeddingClient(RateLimitedClient):
    """Embed batches of texts with one request per batch.

    An HTTP 429 is raised as :class:`RateLimitError` on the first attempt;
    the caller reschedules the batch. Network errors and 5xx are retried.

    Parameters
    ----------
    settings:
        Provider settings; ``embedding_model`` and ``embedding_timeout``
        apply.
    session:
        Optional pre-configured :class:`requests.Session`.
    """

    endpoint = "/embeddings"

    def __init__(
        self,
        settings: Settings,
        *,
        session: requests.Session | None = None,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("timeout", settings.embedding_timeout)
        kwargs.setdefault("retry_rate_limits", False)
        super().__init__(settings, session=session, **kwargs)
        self.model = settings.embedding_model

    def embed(self, texts: list[str]) -> EmbeddingResult:
        """Embed *texts*; ``result.embeddings[i]`` belongs to ``texts[i]``."""
        if not texts:
            return EmbeddingResult(embeddings=[], model=self.model)
        data = self._request({"model": self.model, "input": texts})
        result = parse_embeddings(data, self.model)
        logger.debug("Embedded %d texts (%d dims)", len(result.embeddings), result.dims)
        return result

    def embed_single(self, text: str) -> list[float]:
        result = self.embed([text])
        if not result.embeddings:
            raise ResponseFormatError("Provider returned no embedding for the query")
        return result.embeddings[0]
