"""Abstract base class for vector-store backends.

Adding a new backend only requires subclassing :class:`VectorStoreBase`
and implementing the abstract methods.  Ranking is shared: every backend
loads at most ``max_scan`` candidate vectors and hands them to
:meth:`VectorStoreBase._rank`, so results do not depend on the backend.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from typing import Any

from kb_indexer.retrieval.codec import cosine_similarity
from kb_indexer.retrieval.models import SearchFilters, VectorHit


class VectorStoreBase(ABC):
    """Backend-agnostic vector-store interface.

    Parameters
    ----------
    max_scan:
        Maximum number of candidate vectors examined per search call.
        Candidates beyond the cap are dropped without error.
    default_top_k:
        Result count used when :meth:`search` gets no ``top_k``.
    """

    backend_name = "abstract"

    def __init__(self, *, max_scan: int = 5000, default_top_k: int = 8) -> None:
        self.max_scan = max_scan
        self.default_top_k = default_top_k

    # -- required overrides ---------------------------------------------------

    @abstractmethod
    def store(self, chunk_id: int, vector: Sequence[float], metadata: dict[str, Any] | None = None) -> None:
        """Insert or overwrite the vector for *chunk_id*.

        Parameters
        ----------
        chunk_id:
            Owning chunk.
        vector:
            Embedding; an empty vector raises :class:`ValueError`.
        metadata:
            At least ``doc_id`` and ``model``.
        """
        ...

    @abstractmethod
    def delete(self, chunk_id: int) -> bool:
        """Remove the vector for *chunk_id*; return whether one existed."""
        ...

    @abstractmethod
    def delete_by_doc_id(self, doc_id: int) -> int:
        """Remove the vectors of every chunk of *doc_id*; return the count."""
        ...

    @abstractmethod
    def count(self, filters: SearchFilters | None = None) -> int:
        """Number of stored vectors matching *filters* (uncapped)."""
        ...

    @abstractmethod
    def exists(self, chunk_id: int) -> bool:
        ...

    @abstractmethod
    def get(self, chunk_id: int) -> list[float] | None:
        ...

    @abstractmethod
    def missing(self, chunk_ids: Sequence[int]) -> set[int]:
        """Subset of *chunk_ids* that has no stored vector."""
        ...

    @abstractmethod
    def _load_candidates(
        self, filters: SearchFilters | None, limit: int
    ) -> Iterable[tuple[int, list[float], dict[str, Any]]]:
        """Yield up to *limit* ``(chunk_id, vector, metadata)`` triples.

        With non-empty *filters* only chunks matching them are yielded;
        zero matches must yield nothing (no full-corpus fallback).
        """
        ...

    # -- optional overrides ---------------------------------------------------

    def store_many(self, items: Iterable[tuple[int, Sequence[float], dict[str, Any]]]) -> int:
        """Store several vectors; backends may override for a single round-trip."""
        n = 0
        for chunk_id, vector, metadata in items:
            self.store(chunk_id, vector, metadata)
            n += 1
        return n

    def delete_orphans(self) -> int:
        """Drop vectors whose chunk is gone.  Backends without the notion return 0."""
        return 0

    def health_check(self) -> bool:
        return True

    # -- shared search --------------------------------------------------------

    def search(
        self,
        query_vector: Sequence[float],
        top_k: int | None = None,
        filters: SearchFilters | None = None,
    ) -> list[VectorHit]:
        """Return the *top_k* vectors most cosine-similar to *query_vector*.

        Parameters
        ----------
        query_vector:
            Dense query embedding; must not be empty.
        top_k:
            Number of hits (defaults to ``default_top_k``).
        filters:
            Optional metadata pre-filters.

        Returns
        -------
        list[VectorHit]
            Sorted by descending score.
        """
        if query_vector is None or len(query_vector) == 0:
            raise ValueError("query_vector must not be empty")
        if top_k is None:
            top_k = self.default_top_k
        if filters is not None and filters.is_empty():
            filters = None

        candidates = self._load_candidates(filters, self.max_scan)
        return self._rank(query_vector, candidates, top_k)

    @staticmethod
    def _rank(
        query_vector: Sequence[float],
        candidates: Iterable[tuple[int, list[float], dict[str, Any]]],
        top_k: int,
    ) -> list[VectorHit]:
        hits = [
            VectorHit(chunk_id=chunk_id, score=cosine_similarity(query_vector, vector), metadata=metadata)
            for chunk_id, vector, metadata in candidates
        ]
        hits.sort(key=lambda h: (-h.score, h.chunk_id))
        return hits[:top_k]

    @staticmethod
    def _validate_vector(vector: Sequence[float]) -> list[float]:
        if vector is None or len(vector) == 0:
            raise ValueError("Vector must not be empty")
        return [float(x) for x in vector]
