"""Content sources — where the Document Build stage reads raw items from.

A source hands out ascending pages of items beyond a cursor and answers
whether an item is excluded from the knowledge base.  The host system
(CMS, file export, API) implements :class:`ContentSource`; two adapters
ship here.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from pathlib import Path

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)


class SourceItem(BaseModel):
    """A raw content item as supplied by the host."""

    id: int
    title: str = ""
    body: str = ""
    type: str = "post"
    url: str | None = None
    excluded: bool = False


class ContentSource(ABC):
    """Backend-agnostic content-source interface."""

    @abstractmethod
    def fetch_page(
        self,
        after_id: int,
        limit: int,
        content_types: list[str] | None = None,
    ) -> list[SourceItem]:
        """Return up to *limit* items with ``id > after_id``, ascending by id.

        Parameters
        ----------
        after_id:
            Cursor; only items strictly beyond it are returned.
        limit:
            Page size.
        content_types:
            Optional allow-list of item types.
        """
        ...

    @abstractmethod
    def is_excluded(self, item_id: int) -> bool:
        """Return ``True`` when the item must not be indexed."""
        ...

    @abstractmethod
    def existing_ids(self, item_ids: Iterable[int]) -> set[int]:
        """Return the subset of *item_ids* still present in the source."""
        ...


class InMemoryContentSource(ContentSource):
    """Dict-backed source; also the base for file-loaded sources."""

    def __init__(self, items: Iterable[SourceItem] = (), excluded_ids: Iterable[int] = ()) -> None:
        self._items: dict[int, SourceItem] = {item.id: item for item in items}
        self._excluded: set[int] = set(excluded_ids)

    # -- mutation helpers -----------------------------------------------------

    def put(self, item: SourceItem) -> None:
        self._items[item.id] = item

    def remove(self, item_id: int) -> None:
        self._items.pop(item_id, None)

    def exclude(self, item_id: int) -> None:
        self._excluded.add(item_id)

    # -- ContentSource overrides ----------------------------------------------

    def fetch_page(
        self,
        after_id: int,
        limit: int,
        content_types: list[str] | None = None,
    ) -> list[SourceItem]:
        allowed = set(content_types) if content_types else None
        page = [
            item
            for item_id, item in sorted(self._items.items())
            if item_id > after_id and (allowed is None or item.type in allowed)
        ]
        return page[:limit]

    def is_excluded(self, item_id: int) -> bool:
        item = self._items.get(item_id)
        return item_id in self._excluded or (item is not None and item.excluded)

    def existing_ids(self, item_ids: Iterable[int]) -> set[int]:
        return {i for i in item_ids if i in self._items}


class JsonlContentSource(InMemoryContentSource):
    """Source loaded from a JSON-Lines export, one item per line.

    Each line needs at least ``id``; ``title``, ``body``, ``type``, ``url``
    and ``excluded`` are optional.  Malformed lines are logged and skipped.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        super().__init__(self._load(self.path))

    @staticmethod
    def _load(path: Path) -> list[SourceItem]:
        items: list[SourceItem] = []
        skipped = 0
        with open(path, encoding="utf-8") as fh:
            for lineno, line in enumerate(fh, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    items.append(SourceItem.model_validate(json.loads(line)))
                except (json.JSONDecodeError, ValidationError) as exc:
                    skipped += 1
                    logger.warning("Skipping malformed line %d in %s: %s", lineno, path, exc)
        logger.info("Loaded %d items from %s (%d skipped)", len(items), path, skipped)
        return items
