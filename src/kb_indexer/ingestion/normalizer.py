"""Content normalisation — markup in, canonical plain text + hash out."""

from __future__ import annotations

import hashlib
import logging
import re
import unicodedata
from collections.abc import Callable
from typing import Any

from bs4 import BeautifulSoup, Comment

logger = logging.getLogger(__name__)

NormalizationHook = Callable[[str, Any], str]

_DROP_TAGS = ["script", "style", "noscript", "iframe", "template"]
_BOILERPLATE_TAGS = ["nav", "footer", "header", "aside"]
_BLOCK_TAGS = [
    "p", "div", "h1", "h2", "h3", "h4", "h5", "h6", "li", "tr",
    "blockquote", "section", "article", "pre", "table", "ul", "ol",
]

_EDITOR_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
# [gallery ids="1,2"], [/caption], [embed]...  but not "[1]" style footnotes
_SHORTCODE_RE = re.compile(r"\[/?[a-zA-Z][\w-]*(?:\s[^\]]*)?/?\]")
_CTRL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def _normalise_whitespace(text: str) -> str:
    """Unicode NFC, collapse whitespace, strip control chars."""
    text = unicodedata.normalize("NFC", text)
    text = _CTRL_RE.sub("", text)
    text = re.sub(r"[^\S\n]+", " ", text)       # collapse spaces (keep \n)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = re.sub(r"\n{3,}", "\n\n", text)       # max two consecutive newlines
    return text.strip()


def compute_hash(text: str) -> str:
    """Return the sha256 hex digest used as the content-change marker."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class ContentNormalizer:
    """Turn a raw title + markup body into canonical indexable text.

    Parameters
    ----------
    hooks:
        Callables ``hook(text, item) -> text`` applied in order after the
        built-in normalisation.  ``item`` is whatever the caller passed to
        :meth:`normalize` (usually the source item).
    strip_boilerplate:
        Also drop ``nav`` / ``footer`` / ``header`` / ``aside`` containers.
    """

    def __init__(
        self,
        hooks: list[NormalizationHook] | None = None,
        *,
        strip_boilerplate: bool = True,
    ) -> None:
        self._hooks: list[NormalizationHook] = list(hooks or [])
        self._strip_boilerplate = strip_boilerplate

    def add_hook(self, hook: NormalizationHook) -> None:
        self._hooks.append(hook)

    def clean_markup(self, body: str) -> str:
        """Strip markup from *body* and return whitespace-normalised text."""
        if not body:
            return ""

        body = _EDITOR_COMMENT_RE.sub("", body)
        body = _SHORTCODE_RE.sub("", body)

        soup = BeautifulSoup(body, "html.parser")
        drop = _DROP_TAGS + (_BOILERPLATE_TAGS if self._strip_boilerplate else [])
        for tag in soup(drop):
            tag.decompose()
        for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
            comment.extract()
        for br in soup.find_all("br"):
            br.replace_with("\n")
        for block in soup.find_all(_BLOCK_TAGS):
            block.insert_before("\n\n")
            block.insert_after("\n\n")

        return _normalise_whitespace(soup.get_text())

    def normalize(self, title: str, body: str, item: Any = None) -> str:
        """Return ``"{title}\\n\\n{text}"`` or ``""`` when the body is empty.

        Deterministic: identical input always yields identical output, and
        therefore an identical :func:`compute_hash`.
        """
        text = self.clean_markup(body)
        if not text:
            return ""

        title = _normalise_whitespace(title or "")
        if title:
            text = f"{title}\n\n{text}"

        for hook in self._hooks:
            text = hook(text, item)
        return text

    compute_hash = staticmethod(compute_hash)
