"""Unit tests for the vector-store backends."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from kb_indexer.retrieval.chroma_store import ChromaVectorStore, _build_chroma_where
from kb_indexer.retrieval.models import SearchFilters
from kb_indexer.retrieval.sql_store import SqlVectorStore
from kb_indexer.storage.models import ChunkModel, DocumentStatus

from tests.conftest import FIXED_NOW


# ── SqlVectorStore ──────────────────────────────────────────────────────


class TestSqlVectorStore:
    def test_store_get_roundtrip(self, vector_store, seed) -> None:
        _, (chunk_id,) = seed(1, ["alpha"])
        vector_store.store(chunk_id, [0.5, -0.25], {"doc_id": 1, "model": "m"})
        assert vector_store.exists(chunk_id)
        assert vector_store.get(chunk_id) == [0.5, -0.25]
        assert vector_store.count() == 1

    def test_store_overwrites_in_place(self, vector_store, seed) -> None:
        _, (chunk_id,) = seed(1, ["alpha"])
        vector_store.store(chunk_id, [1.0, 0.0], {"model": "old"})
        vector_store.store(chunk_id, [0.0, 1.0, 0.0], {"model": "new"})
        assert vector_store.count() == 1
        assert vector_store.get(chunk_id) == [0.0, 1.0, 0.0]

    def test_empty_vector_rejected(self, vector_store, seed) -> None:
        _, (chunk_id,) = seed(1, ["alpha"])
        with pytest.raises(ValueError):
            vector_store.store(chunk_id, [])
        assert not vector_store.exists(chunk_id)

    def test_get_missing_returns_none(self, vector_store) -> None:
        assert vector_store.get(12345) is None
        assert not vector_store.exists(12345)

    def test_delete(self, vector_store, seed) -> None:
        _, (chunk_id,) = seed(1, ["alpha"])
        vector_store.store(chunk_id, [1.0])
        assert vector_store.delete(chunk_id) is True
        assert vector_store.delete(chunk_id) is False

    def test_delete_by_doc_id(self, vector_store, seed) -> None:
        doc_a, chunks_a = seed(1, ["a1", "a2"])
        _, chunks_b = seed(2, ["b1"])
        vector_store.store_many([(cid, [1.0, 0.0], {}) for cid in chunks_a + chunks_b])
        assert vector_store.delete_by_doc_id(doc_a) == 2
        assert vector_store.count() == 1
        assert vector_store.exists(chunks_b[0])

    def test_search_ranks_by_cosine(self, vector_store, seed) -> None:
        _, (c1, c2, c3) = seed(1, ["x", "y", "z"])
        vector_store.store_many([(c1, [1.0, 0.0], {}), (c2, [0.0, 1.0], {}), (c3, [0.7, 0.7], {})])
        hits = vector_store.search([1.0, 0.0], top_k=3)
        assert [h.chunk_id for h in hits] == [c1, c3, c2]
        assert hits[0].score == pytest.approx(1.0)
        assert hits[2].score == pytest.approx(0.0)
        assert hits[0].metadata["doc_id"] == 1

    def test_search_top_k(self, vector_store, seed) -> None:
        _, chunk_ids = seed(1, ["a", "b", "c", "d"])
        vector_store.store_many([(cid, [1.0, float(i)], {}) for i, cid in enumerate(chunk_ids)])
        assert len(vector_store.search([1.0, 0.0], top_k=2)) == 2

    def test_explicit_zero_top_k_is_not_the_default(self, session_factory, seed) -> None:
        store = SqlVectorStore(session_factory, default_top_k=3)
        _, chunk_ids = seed(1, ["a", "b", "c", "d"])
        store.store_many([(cid, [1.0, float(i)], {}) for i, cid in enumerate(chunk_ids)])
        assert store.search([1.0, 0.0], top_k=0) == []
        assert len(store.search([1.0, 0.0])) == 3

    def test_search_rejects_empty_query(self, vector_store) -> None:
        with pytest.raises(ValueError):
            vector_store.search([])

    def test_filters_restrict_candidates(self, vector_store, seed) -> None:
        _, (post_chunk,) = seed(1, ["post"], source_type="post")
        _, (page_chunk,) = seed(2, ["page"], source_type="page", status=DocumentStatus.INDEXED)
        vector_store.store_many([(post_chunk, [1.0, 0.0], {}), (page_chunk, [0.9, 0.1], {})])

        by_type = vector_store.search([1.0, 0.0], 5, SearchFilters(doc_type="page"))
        assert [h.chunk_id for h in by_type] == [page_chunk]
        by_status = vector_store.search([1.0, 0.0], 5, SearchFilters(status="chunked"))
        assert [h.chunk_id for h in by_status] == [post_chunk]
        by_source = vector_store.search([1.0, 0.0], 5, SearchFilters(source_id=2))
        assert [h.chunk_id for h in by_source] == [page_chunk]

    def test_filter_with_no_matches_returns_nothing(self, vector_store, seed) -> None:
        _, (chunk_id,) = seed(1, ["post"])
        vector_store.store(chunk_id, [1.0, 0.0])
        assert vector_store.search([1.0, 0.0], 5, SearchFilters(doc_type="attachment")) == []

    def test_empty_filters_mean_no_filter(self, vector_store, seed) -> None:
        _, (chunk_id,) = seed(1, ["post"])
        vector_store.store(chunk_id, [1.0, 0.0])
        assert len(vector_store.search([1.0, 0.0], 5, SearchFilters())) == 1

    def test_scan_cap_truncates_candidates(self, session_factory, seed) -> None:
        store = SqlVectorStore(session_factory, max_scan=2)
        _, (c1, c2, c3) = seed(1, ["a", "b", "c"])
        # Best match has the highest chunk id and falls outside the cap.
        store.store_many([(c1, [0.0, 1.0], {}), (c2, [0.1, 1.0], {}), (c3, [1.0, 0.0], {})])
        hits = store.search([1.0, 0.0], top_k=5)
        assert [h.chunk_id for h in hits] == [c2, c1]
        assert store.count() == 3

    def test_filtered_search_respects_scan_cap(self, session_factory, seed) -> None:
        store = SqlVectorStore(session_factory, max_scan=2)
        _, (c1, c2, c3) = seed(1, ["a", "b", "c"], source_type="post")
        _, (other,) = seed(2, ["d"], source_type="page")
        store.store_many([
            (c1, [0.0, 1.0], {}), (c2, [0.1, 1.0], {}), (c3, [1.0, 0.0], {}), (other, [1.0, 0.0], {}),
        ])
        hits = store.search([1.0, 0.0], top_k=5, filters=SearchFilters(doc_type="post"))
        assert [h.chunk_id for h in hits] == [c2, c1]
        assert store.count(SearchFilters(doc_type="post")) == 3

    def test_date_window(self, vector_store, seed, session_factory) -> None:
        _, (old, mid, new) = seed(1, ["old", "mid", "new"])
        stamps = {
            old: FIXED_NOW - timedelta(days=30),
            mid: FIXED_NOW - timedelta(days=10),
            new: FIXED_NOW,
        }
        with session_factory.begin() as session:
            for chunk_id, stamp in stamps.items():
                session.get(ChunkModel, chunk_id).created_at = stamp
        vector_store.store_many([(cid, [1.0, 0.0], {}) for cid in stamps])

        def ids(**window) -> list[int]:  # noqa: ANN003
            return sorted(h.chunk_id for h in vector_store.search([1.0, 0.0], 10, SearchFilters(**window)))

        assert ids(date_after=FIXED_NOW - timedelta(days=15)) == [mid, new]
        assert ids(date_before=FIXED_NOW - timedelta(days=15)) == [old]
        assert ids(date_after=FIXED_NOW - timedelta(days=20), date_before=FIXED_NOW - timedelta(days=1)) == [mid]
        # Both bounds are inclusive.
        assert ids(date_after=stamps[mid], date_before=stamps[mid]) == [mid]
        assert ids(date_after=FIXED_NOW + timedelta(days=1)) == []
        assert vector_store.count(SearchFilters(date_before=FIXED_NOW - timedelta(days=15))) == 1

    def test_missing(self, vector_store, seed) -> None:
        _, (c1, c2) = seed(1, ["a", "b"])
        vector_store.store(c1, [1.0, 0.0])
        assert vector_store.missing([c1, c2]) == {c2}
        assert vector_store.missing([]) == set()

    def test_count_with_filters(self, vector_store, seed) -> None:
        doc_a, chunks_a = seed(1, ["a1", "a2"])
        _, chunks_b = seed(2, ["b1"])
        vector_store.store_many([(cid, [1.0], {}) for cid in chunks_a + chunks_b])
        assert vector_store.count(SearchFilters(doc_id=doc_a)) == 2
        assert vector_store.count(SearchFilters()) == 3

    def test_health_check(self, vector_store) -> None:
        assert vector_store.health_check() is True


# ── ChromaVectorStore ───────────────────────────────────────────────────


@pytest.fixture()
def chroma_client() -> MagicMock:
    client = MagicMock()
    client.get_or_create_collection.return_value = MagicMock()
    return client


class TestChromaVectorStore:
    def test_collection_uses_cosine_space(self, chroma_client) -> None:
        ChromaVectorStore("kb", client=chroma_client)
        chroma_client.get_or_create_collection.assert_called_once_with("kb", metadata={"hnsw:space": "cosine"})

    def test_store_many_upserts_scalar_metadata(self, chroma_client) -> None:
        store = ChromaVectorStore(client=chroma_client)
        n = store.store_many([(7, [1, 0], {"doc_id": 3, "model": "m", "tags": ["x"]})])
        assert n == 1
        collection = chroma_client.get_or_create_collection.return_value
        collection.upsert.assert_called_once_with(
            ids=["7"],
            embeddings=[[1.0, 0.0]],
            metadatas=[{"chunk_id": 7, "dims": 2, "doc_id": 3, "model": "m"}],
        )

    def test_store_many_empty_is_noop(self, chroma_client) -> None:
        store = ChromaVectorStore(client=chroma_client)
        assert store.store_many([]) == 0
        chroma_client.get_or_create_collection.return_value.upsert.assert_not_called()

    def test_search_ranks_in_process(self, chroma_client) -> None:
        collection = chroma_client.get_or_create_collection.return_value
        collection.get.return_value = {
            "ids": ["1", "2"],
            "embeddings": [[0.0, 1.0], [1.0, 0.0]],
            "metadatas": [{"doc_id": 10, "model": "m"}, {"doc_id": 11, "model": "m"}],
        }
        store = ChromaVectorStore(client=chroma_client, max_scan=50)
        hits = store.search([1.0, 0.0], top_k=2)
        assert [h.chunk_id for h in hits] == [2, 1]
        assert hits[0].metadata == {"doc_id": 11, "model": "m"}
        collection.get.assert_called_once_with(limit=50, include=["embeddings", "metadatas"])

    def test_filters_go_through_resolver(self, chroma_client) -> None:
        collection = chroma_client.get_or_create_collection.return_value
        collection.get.return_value = {"ids": ["4"], "embeddings": [[1.0]], "metadatas": [{}]}
        resolver = MagicMock(return_value=[4])
        store = ChromaVectorStore(client=chroma_client, candidate_resolver=resolver)

        hits = store.search([1.0], 3, SearchFilters(status="indexed"))
        assert [h.chunk_id for h in hits] == [4]
        resolver.assert_called_once_with(SearchFilters(status="indexed"), store.max_scan)
        collection.get.assert_called_once_with(ids=["4"], include=["embeddings", "metadatas"])

    def test_resolver_with_no_matches_returns_nothing(self, chroma_client) -> None:
        store = ChromaVectorStore(client=chroma_client, candidate_resolver=MagicMock(return_value=[]))
        assert store.search([1.0], 3, SearchFilters(doc_type="page")) == []
        chroma_client.get_or_create_collection.return_value.get.assert_not_called()

    def test_resolver_candidates_are_capped(self, chroma_client) -> None:
        collection = chroma_client.get_or_create_collection.return_value
        collection.get.return_value = {"ids": [], "embeddings": [], "metadatas": []}
        resolver = MagicMock(return_value=[1, 2, 3])
        store = ChromaVectorStore(client=chroma_client, candidate_resolver=resolver, max_scan=2)
        store.search([1.0], 3, SearchFilters(doc_type="post"))
        collection.get.assert_called_once_with(ids=["1", "2"], include=["embeddings", "metadatas"])

    def test_missing(self, chroma_client) -> None:
        collection = chroma_client.get_or_create_collection.return_value
        collection.get.return_value = {"ids": ["1", "3"]}
        store = ChromaVectorStore(client=chroma_client)
        assert store.missing([1, 2, 3]) == {2}
        collection.get.assert_called_once_with(ids=["1", "2", "3"], include=[])

    def test_delete_by_doc_id(self, chroma_client) -> None:
        collection = chroma_client.get_or_create_collection.return_value
        collection.get.return_value = {"ids": ["1", "2"]}
        store = ChromaVectorStore(client=chroma_client)
        assert store.delete_by_doc_id(5) == 2
        collection.get.assert_called_once_with(where={"doc_id": {"$eq": 5}}, include=[])
        collection.delete.assert_called_once_with(ids=["1", "2"])

    def test_delete_missing_returns_false(self, chroma_client) -> None:
        collection = chroma_client.get_or_create_collection.return_value
        collection.get.return_value = {"ids": []}
        assert ChromaVectorStore(client=chroma_client).delete(9) is False
        collection.delete.assert_not_called()

    def test_delete_orphans_uses_resolver(self, chroma_client) -> None:
        collection = chroma_client.get_or_create_collection.return_value
        collection.get.return_value = {"ids": ["1", "2", "3"]}
        store = ChromaVectorStore(client=chroma_client, candidate_resolver=MagicMock(return_value=[1, 3]))
        assert store.delete_orphans() == 1
        collection.delete.assert_called_once_with(ids=["2"])

    def test_health_check_failure(self, chroma_client) -> None:
        chroma_client.heartbeat.side_effect = ConnectionError("down")
        assert ChromaVectorStore(client=chroma_client).health_check() is False

    def test_build_where(self) -> None:
        assert _build_chroma_where(None) is None
        assert _build_chroma_where(SearchFilters(status="indexed")) is None
        assert _build_chroma_where(SearchFilters(doc_id=1)) == {"doc_id": {"$eq": 1}}
        assert _build_chroma_where(SearchFilters(doc_id=1, doc_type="post")) == {
            "$and": [{"doc_id": {"$eq": 1}}, {"doc_type": {"$eq": "post"}}]
        }
