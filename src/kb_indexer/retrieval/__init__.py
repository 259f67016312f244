"""
Retrieval — vector persistence, brute-force similarity search, enrichment.

Public surface
--------------
- :class:`VectorStoreBase` — abstract backend (subclass for new stores).
- :class:`SqlVectorStore` — default relational backend.
- :class:`ChromaVectorStore` — Chroma backend.
- :func:`build_vector_store` — backend selection from settings.
- :class:`SimilaritySearch` — query entry point with enriched results.
- :func:`pack_vector`, :func:`unpack_vector`, :func:`cosine_similarity`.
- :class:`SearchFilters`, :class:`VectorHit`, :class:`Citation`,
  :class:`RetrievalResult` — data models.
"""

from kb_indexer.retrieval.base import VectorStoreBase
from kb_indexer.retrieval.codec import cosine_similarity, pack_vector, unpack_vector
from kb_indexer.retrieval.models import Citation, RetrievalResult, SearchFilters, VectorHit

__all__ = [
    "ChromaVectorStore",
    "Citation",
    "RetrievalResult",
    "SearchFilters",
    "SimilaritySearch",
    "SqlVectorStore",
    "VectorHit",
    "VectorStoreBase",
    "build_vector_store",
    "cosine_similarity",
    "pack_vector",
    "unpack_vector",
]

_LAZY = {
    "ChromaVectorStore": "kb_indexer.retrieval.chroma_store",
    "SqlVectorStore": "kb_indexer.retrieval.sql_store",
    "SimilaritySearch": "kb_indexer.retrieval.search",
    "build_vector_store": "kb_indexer.retrieval.factory",
}


def __getattr__(name: str):  # noqa: ANN001
    """Lazy-import backends so importing the models never pulls in storage or chromadb."""
    if name in _LAZY:
        import importlib

        return getattr(importlib.import_module(_LAZY[name]), name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
