"""Structured extraction through the chat-completions endpoint."""

from __future__ import annotations

import json
import logging
from typing import Any

import requests

from kb_indexer.config import Settings
from kb_indexer.exceptions import ResponseFormatError
from kb_indexer.providers.client import RateLimitedClient

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = (
    "You extract named entities from content. Respond with a single JSON "
    'object of the form {"entities": [{"name": str, "type": str, '
    '"salience": float}]}. Use only these types: person, organization, '
    "location, product, event, concept."
)


def parse_completion(data: dict[str, Any]) -> dict[str, Any]:
    """Pull the JSON object out of a chat-completions envelope.

    Raises
    ------
    ResponseFormatError
        When ``choices[0].message.content`` is missing or is not a JSON
        object.
    """
    try:
        content = data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError) as exc:
        raise ResponseFormatError("Invalid response structure from provider") from exc
    if not isinstance(content, str):
        raise ResponseFormatError("Completion content is not a string")

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ResponseFormatError(
            f"Provider returned invalid JSON: {exc.msg}", {"content": content[:200]}
        ) from exc
    if not isinstance(parsed, dict):
        raise ResponseFormatError("Completion content must be a JSON object")
    return parsed


class ExtractionClient(RateLimitedClient):
    """Send content to a chat model and get a JSON object back.

    Parameters
    ----------
    settings:
        Provider settings; ``extraction_model``, ``max_tokens`` and
        ``temperature`` shape the request.
    session:
        Optional pre-configured :class:`requests.Session`.
    system_prompt:
        Instruction sent as the system message.
    """

    endpoint = "/chat/completions"

    def __init__(
        self,
        settings: Settings,
        *,
        session: requests.Session | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        **kwargs: Any,
    ) -> None:
        super().__init__(settings, session=session, **kwargs)
        self.model = settings.extraction_model
        self.max_tokens = settings.max_tokens
        self.temperature = settings.temperature
        self.system_prompt = system_prompt

    def build_payload(self, content: str, system_prompt: str | None = None) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt or self.system_prompt},
                {"role": "user", "content": content},
            ],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "response_format": {"type": "json_object"},
        }

    def extract(self, content: str, *, system_prompt: str | None = None) -> dict[str, Any]:
        """Run one extraction call and return the parsed JSON object."""
        data = self._request(self.build_payload(content, system_prompt))
        result = parse_completion(data)
        logger.debug("Extraction returned keys %s", sorted(result))
        return result
