"""Unit tests for the query-side search API and backend factory."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from kb_indexer.exceptions import ConfigurationError
from kb_indexer.retrieval.chroma_store import ChromaVectorStore
from kb_indexer.retrieval.factory import build_vector_store, make_candidate_resolver
from kb_indexer.retrieval.models import Citation, SearchFilters
from kb_indexer.retrieval.search import SimilaritySearch
from kb_indexer.retrieval.sql_store import SqlVectorStore
from kb_indexer.storage.models import DocumentStatus


@pytest.fixture()
def indexed(seed, vector_store):
    """Two documents whose chunks point along distinct axes."""
    doc_a, (a0, a1) = seed(10, ["refund policy", "refund timing"], title="Refunds", status=DocumentStatus.INDEXED)
    doc_b, (b0,) = seed(20, ["shipping zones"], title="Shipping", source_type="page")
    vector_store.store_many([
        (a0, [1.0, 0.0, 0.0], {}),
        (a1, [0.9, 0.1, 0.0], {}),
        (b0, [0.0, 1.0, 0.0], {}),
    ])
    return {"doc_a": doc_a, "doc_b": doc_b, "a0": a0, "a1": a1, "b0": b0}


class TestSimilaritySearch:
    def test_results_are_enriched(self, vector_store, session_factory, indexed) -> None:
        search = SimilaritySearch(vector_store, None, session_factory)
        (top, second) = search.search_by_embedding([1.0, 0.0, 0.0], top_k=2)

        assert top.content == "refund policy"
        assert top.citation.chunk_id == indexed["a0"]
        assert top.citation.doc_id == indexed["doc_a"]
        assert top.citation.source_id == 10
        assert top.citation.title == "Refunds"
        assert top.citation.chunk_index == 0
        assert top.citation.score == pytest.approx(1.0)
        assert second.citation.chunk_id == indexed["a1"]

    def test_query_is_embedded(self, vector_store, session_factory, indexed) -> None:
        embedder = MagicMock()
        embedder.embed_single.return_value = [0.0, 1.0, 0.0]
        search = SimilaritySearch(vector_store, embedder, session_factory, default_k=1)

        (result,) = search.search("  where do you ship?  ")

        embedder.embed_single.assert_called_once_with("where do you ship?")
        assert result.citation.source_id == 20

    def test_blank_query_rejected(self, vector_store, session_factory) -> None:
        search = SimilaritySearch(vector_store, MagicMock(), session_factory)
        with pytest.raises(ValueError):
            search.search("   ")

    def test_query_without_embedder(self, vector_store, session_factory) -> None:
        with pytest.raises(RuntimeError):
            SimilaritySearch(vector_store, None, session_factory).search("refunds")

    def test_filters(self, vector_store, session_factory, indexed) -> None:
        search = SimilaritySearch(vector_store, None, session_factory)
        pages = search.search_by_embedding([1.0, 0.0, 0.0], filters=SearchFilters(doc_type="page"))
        assert [r.citation.chunk_id for r in pages] == [indexed["b0"]]
        done = search.search_by_embedding([0.0, 1.0, 0.0], filters=SearchFilters(status="indexed"))
        assert {r.citation.doc_id for r in done} == {indexed["doc_a"]}
        assert search.search_by_embedding([1.0, 0.0, 0.0], filters=SearchFilters(source_id=999)) == []

    def test_score_threshold(self, vector_store, session_factory, indexed) -> None:
        search = SimilaritySearch(vector_store, None, session_factory, score_threshold=0.5)
        results = search.search_by_embedding([1.0, 0.0, 0.0], top_k=10)
        assert [r.citation.chunk_id for r in results] == [indexed["a0"], indexed["a1"]]

    def test_hits_for_vanished_chunks_are_dropped(self, vector_store, session_factory) -> None:
        store = MagicMock(wraps=vector_store)
        store.search.return_value = [MagicMock(chunk_id=424242, score=0.9, metadata={})]
        assert SimilaritySearch(store, None, session_factory).search_by_embedding([1.0]) == []

    def test_find_similar_to_document_excludes_itself(self, vector_store, session_factory, indexed) -> None:
        search = SimilaritySearch(vector_store, None, session_factory)
        results = search.find_similar_to_document(indexed["doc_a"], top_k=3)
        assert [r.citation.doc_id for r in results] == [indexed["doc_b"]]

    def test_find_similar_unknown_document(self, vector_store, session_factory) -> None:
        assert SimilaritySearch(vector_store, None, session_factory).find_similar_to_document(999) == []

    def test_stats(self, vector_store, session_factory, indexed) -> None:
        stats = SimilaritySearch(vector_store, None, session_factory).stats()
        assert stats == {
            "backend": "sql",
            "total_vectors": 3,
            "total_documents": 2,
            "indexed_documents": 1,
            "max_scan_vectors": 5000,
        }

    def test_citation_short_ref(self) -> None:
        assert Citation(chunk_id=1, title="Refunds", chunk_index=2).short_ref() == "[Refunds§2]"
        assert Citation(chunk_id=1, source_id=7).short_ref() == "[7§?]"


class TestFactory:
    def test_sql_backend(self, settings, session_factory) -> None:
        store = build_vector_store(settings, session_factory)
        assert isinstance(store, SqlVectorStore)
        assert store.max_scan == settings.max_scan_vectors

    def test_chroma_backend_with_injected_client(self, settings, session_factory) -> None:
        client = MagicMock()
        settings = settings.model_copy(update={"vector_backend": "chroma"})
        store = build_vector_store(settings, session_factory, chroma_client=client)
        assert isinstance(store, ChromaVectorStore)
        client.get_or_create_collection.assert_called_once()

    def test_unknown_backend(self, settings, session_factory) -> None:
        settings = settings.model_copy(update={"vector_backend": "faiss"})
        with pytest.raises(ConfigurationError):
            build_vector_store(settings, session_factory)

    def test_candidate_resolver(self, session_factory, seed) -> None:
        _, post_chunks = seed(1, ["a", "b"])
        _, page_chunks = seed(2, ["c"], source_type="page")
        resolve = make_candidate_resolver(session_factory)
        assert resolve(SearchFilters(doc_type="page"), None) == page_chunks
        assert resolve(SearchFilters(), 1) == post_chunks[:1]
