"""Error taxonomy for the indexer.

Every error carries a human-readable ``message`` plus a ``details`` dict
with structured context (stage, cursor, status code ...) for logging and
for the pipeline status record.
"""

from __future__ import annotations

from typing import Any


class KBIndexError(Exception):
    """Base class for all indexer errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message


class ConfigurationError(KBIndexError):
    """Missing credential or invalid setting; raised before any network call."""


class ProviderError(KBIndexError):
    """Hard failure returned by the AI provider (non-retryable status)."""


class TransientProviderError(ProviderError):
    """Network failure or 5xx response; retried with backoff."""


class RateLimitError(KBIndexError):
    """Local or remote rate limit hit.

    Parameters
    ----------
    retry_after:
        Seconds the caller should wait, or ``None`` when the provider gave
        no hint.
    limit_type:
        ``"requests"`` or ``"tokens"``.
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after: float | None = None,
        limit_type: str = "requests",
    ) -> None:
        super().__init__(message, {"retry_after": retry_after, "limit_type": limit_type})
        self.retry_after = retry_after
        self.limit_type = limit_type

    @classmethod
    def from_headers(cls, headers: Any) -> RateLimitError:
        """Build from a 429 response's headers."""
        retry_after: float | None = None
        raw = headers.get("retry-after") if headers is not None else None
        if raw is not None:
            try:
                retry_after = float(raw)
            except (TypeError, ValueError):
                retry_after = None
        limit_type = "tokens" if headers is not None and headers.get("x-ratelimit-limit-tokens") else "requests"
        return cls(
            f"Provider rate limit reached ({limit_type})",
            retry_after=retry_after,
            limit_type=limit_type,
        )


class ResponseFormatError(KBIndexError):
    """Provider returned a structurally invalid envelope or JSON payload."""


class EmbeddingCountMismatchError(KBIndexError):
    """Provider returned a different number of embeddings than inputs."""


class DimensionMismatchError(KBIndexError, ValueError):
    """Two vectors of different dimensionality were compared or stored."""
