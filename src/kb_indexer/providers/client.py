"""Rate-limited, retrying HTTP client for an OpenAI-compatible provider.

Two layers of protection:

* a local fixed-window limiter that refuses to send more than
  ``requests_per_minute`` calls per window (no network call is made);
* a bounded retry loop with exponential backoff for transient failures
  (network errors, 5xx and, unless disabled, HTTP 429).

Hard failures (other 4xx, malformed envelopes) are raised immediately.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

import requests

from kb_indexer.config import Settings
from kb_indexer.exceptions import (
    ConfigurationError,
    ProviderError,
    RateLimitError,
    ResponseFormatError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)


class RateLimitedClient:
    """Base client; subclasses set :attr:`endpoint` and build payloads.

    Parameters
    ----------
    settings:
        Provider credentials, limits and retry policy.
    session:
        Optional pre-configured :class:`requests.Session`.
    timeout:
        Per-request timeout in seconds (defaults to ``settings.request_timeout``).
    retry_rate_limits:
        Retry HTTP 429 in-process like a transient failure. When false the
        first :class:`RateLimitError` reaches the caller, which owns the wait.
    clock / sleep:
        Injectable time sources.
    """

    endpoint = ""

    def __init__(
        self,
        settings: Settings,
        *,
        session: requests.Session | None = None,
        timeout: float | None = None,
        retry_rate_limits: bool = True,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not settings.api_key:
            raise ConfigurationError(
                "Provider API key is not configured",
                {"setting": "KB_API_KEY", "base_url": settings.provider_base_url},
            )

        self.base_url = settings.provider_base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else settings.request_timeout
        self.max_retries = max(1, settings.max_retries)
        self.base_delay = settings.base_delay_seconds
        self.backoff_multiplier = settings.backoff_multiplier
        self.retry_rate_limits = retry_rate_limits

        self.max_requests = settings.requests_per_minute
        self.window_seconds = settings.rate_window_seconds
        self._clock = clock
        self._sleep = sleep
        self._request_count = 0
        self._window_start = clock()

        self._session = session or requests.Session()
        self._session.headers.update(
            {
                "Authorization": f"Bearer {settings.api_key}",
                "Content-Type": "application/json",
            }
        )

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.endpoint}"

    # -- rate limiting --------------------------------------------------------

    def _check_rate_limit(self) -> None:
        """Count one request against the local window or raise."""
        now = self._clock()
        elapsed = now - self._window_start
        if elapsed >= self.window_seconds:
            self._request_count = 0
            self._window_start = now
            elapsed = 0.0

        if self._request_count >= self.max_requests:
            wait = max(1.0, self.window_seconds - elapsed)
            raise RateLimitError(
                f"Local rate limit of {self.max_requests} requests per "
                f"{self.window_seconds:.0f}s reached",
                retry_after=wait,
                limit_type="requests",
            )
        self._request_count += 1

    def remaining_requests(self) -> int:
        if self._clock() - self._window_start >= self.window_seconds:
            return self.max_requests
        return max(0, self.max_requests - self._request_count)

    # -- HTTP -----------------------------------------------------------------

    def _post_once(self, payload: dict[str, Any]) -> dict[str, Any]:
        self._check_rate_limit()
        try:
            resp = self._session.post(self.url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise TransientProviderError(
                f"Request to {self.endpoint} failed: {exc}", {"url": self.url}
            ) from exc

        if resp.status_code == 429:
            raise RateLimitError.from_headers(resp.headers)
        if resp.status_code >= 500:
            raise TransientProviderError(
                f"Provider returned HTTP {resp.status_code}",
                {"status_code": resp.status_code, "body": resp.text[:500]},
            )
        if resp.status_code != 200:
            raise ProviderError(
                f"Provider returned HTTP {resp.status_code}",
                {"status_code": resp.status_code, "body": resp.text[:500]},
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise ResponseFormatError("Provider response is not valid JSON") from exc
        if not isinstance(data, dict):
            raise ResponseFormatError("Provider response must be a JSON object")
        return data

    def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        """POST *payload* with retries; return the decoded JSON envelope."""
        last_exc: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return self._post_once(payload)
            except (RateLimitError, TransientProviderError) as exc:
                if isinstance(exc, RateLimitError) and not self.retry_rate_limits:
                    raise
                last_exc = exc
                if attempt >= self.max_retries:
                    break
                delay = self.base_delay * self.backoff_multiplier ** (attempt - 1)
                logger.warning(
                    "Retry %d/%d for %s (wait %.1fs): %s",
                    attempt, self.max_retries, self.endpoint, delay, exc,
                )
                self._sleep(delay)

        if isinstance(last_exc, RateLimitError):
            raise last_exc
        raise ProviderError(
            f"Request to {self.endpoint} failed after {self.max_retries} attempts",
            {"last_error": str(last_exc)},
        ) from last_exc

    def close(self) -> None:
        self._session.close()
