"""
Similarity index tests: ordering, ties, empty index, self-similarity,
dimension mismatch and eviction.
"""

import threading

import numpy as np
import pytest
from langchain_core.embeddings import Embeddings

from feedback_analyzer.engine import SimilarityIndex, cosine_similarity


class FixedEmbeddings(Embeddings):
    """Returns preset vectors per text."""

    def __init__(self, vectors, query_vectors=None):
        self.vectors = vectors
        self.query_vectors = query_vectors or vectors

    def embed_documents(self, texts):
        return [self.vectors[text] for text in texts]

    def embed_query(self, text):
        return self.query_vectors[text]


# ============================================================================
# cosine_similarity
# ============================================================================

class TestCosineSimilarity:

    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_dimension_mismatch_scores_zero(self):
        assert cosine_similarity([1.0, 0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_zero_vector_scores_zero(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_empty_vector_scores_zero(self):
        assert cosine_similarity([], []) == 0.0


# ============================================================================
# SimilarityIndex
# ============================================================================

class TestSimilarityIndex:

    def test_query_on_empty_index_returns_nothing(self, index, embeddings):
        assert index.query("app crashes on login") == []
        assert embeddings.query_calls == 0

    def test_non_positive_top_k_returns_nothing(self, index):
        index.ingest("app crashes on login")
        assert index.query("app crashes on login", top_k=0) == []
        assert index.query("app crashes on login", top_k=-1) == []

    def test_results_sorted_by_score(self, index):
        index.ingest("dark mode request for settings screen", record_id="feature")
        index.ingest("app crashes on login with pixel 7", record_id="crash")
        index.ingest("app crashes sometimes", record_id="partial")

        hits = index.query("app crashes on login with pixel 7", top_k=3)

        assert [hit.record.id for hit in hits][0] == "crash"
        scores = [hit.score for hit in hits]
        assert scores == sorted(scores, reverse=True)

    def test_top_k_limits_results(self, index):
        for i in range(5):
            index.ingest(f"ticket number {i}")
        assert len(index.query("ticket number", top_k=2)) == 2
        assert len(index.query("ticket number", top_k=10)) == 5

    def test_record_is_most_similar_to_itself(self, index):
        text = "checkout button does nothing on the payment page"
        index.ingest("login fails after password reset", record_id="other")
        index.ingest(text, record_id="self")

        top = index.query(text, top_k=1)[0]

        assert top.record.id == "self"
        assert top.score == pytest.approx(1.0)

    def test_ties_keep_insertion_order(self):
        vectors = {"first": [1.0, 0.0], "second": [1.0, 0.0], "third": [1.0, 0.0], "q": [1.0, 0.0]}
        index = SimilarityIndex(FixedEmbeddings(vectors))
        for name in ("first", "second", "third"):
            index.ingest(name, record_id=name)

        hits = index.query("q", top_k=3)

        assert [hit.record.id for hit in hits] == ["first", "second", "third"]

    def test_dimension_mismatch_scores_zero(self):
        vectors = {"short": [1.0, 0.0], "long": [1.0, 0.0, 0.0], "q": [1.0, 0.0, 0.0]}
        index = SimilarityIndex(FixedEmbeddings(vectors))
        index.ingest("short", record_id="short")
        index.ingest("long", record_id="long")

        hits = {hit.record.id: hit.score for hit in index.query("q", top_k=2)}

        assert hits["long"] == pytest.approx(1.0)
        assert hits["short"] == 0.0

    def test_duplicate_id_rejected(self, index):
        index.ingest("first", record_id="TICKET-1")
        with pytest.raises(ValueError):
            index.ingest("second", record_id="TICKET-1")
        assert index.get("TICKET-1").text == "first"

    def test_generated_ids_are_unique(self, index):
        ids = {index.ingest("same text") for _ in range(3)}
        assert len(ids) == 3

    def test_metadata_round_trip_and_read_only(self, index):
        index.ingest("ticket", metadata={"phoneModel": "Pixel 7", "rating": 2}, record_id="t")
        record = index.get("t")

        assert record.metadata["phoneModel"] == "Pixel 7"
        with pytest.raises(TypeError):
            record.metadata["phoneModel"] = "iPhone"

    def test_vector_is_read_only(self, index):
        index.ingest("ticket", record_id="t")
        with pytest.raises(ValueError):
            index.get("t").vector[0] = 42.0

    def test_delete(self, index):
        index.ingest("ticket", record_id="t")

        assert "t" in index
        assert index.delete("t") is True
        assert "t" not in index
        assert index.delete("t") is False
        assert index.query("ticket") == []

    def test_concurrent_ingest(self, index):
        def worker(offset):
            for i in range(20):
                index.ingest(f"ticket {offset} {i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(index) == 80
        assert len(index.query("ticket", top_k=100)) == 80

    def test_stored_vector_matches_embedding(self, index, embeddings):
        index.ingest("app crashes", record_id="t")
        np.testing.assert_array_equal(index.get("t").vector, embeddings.embed_query("app crashes"))
