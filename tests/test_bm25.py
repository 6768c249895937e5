"""Tests for BM25 ranking and the local JSONL store backend."""

import json

import pytest

from turnkernel.service.bm25 import BM25_B, BM25_K1, BM25Index, compute_bm25_scores, tokenize_text
from turnkernel.service.errors import NotFoundError
from turnkernel.service.retrieval import LocalStoreBackend, coerce_rank, parse_timestamp


class TestTokenizeText:
    def test_lowercases_and_splits(self):
        assert tokenize_text("Hello, World! HELLO") == ["hello", "world", "hello"]

    def test_numbers_and_underscores(self):
        assert tokenize_text("CI-1 my_var 2024") == ["ci", "1", "my_var", "2024"]

    def test_empty_and_symbols(self):
        assert tokenize_text("") == []
        assert tokenize_text("!@#$%") == []


class TestComputeBM25Scores:
    def test_empty_inputs(self):
        assert compute_bm25_scores([], [["a"], ["b"]]) == [0.0, 0.0]
        assert compute_bm25_scores(["a"], []) == []

    def test_non_matching_document_scores_zero(self):
        assert compute_bm25_scores(["hello"], [["foo", "bar"]]) == [0.0]

    def test_term_frequency_increases_score(self):
        single = compute_bm25_scores(["hello"], [["hello"]])
        repeated = compute_bm25_scores(["hello"], [["hello", "hello", "hello"]])
        assert repeated[0] > single[0]

    def test_shorter_document_ranks_higher(self):
        scores = compute_bm25_scores(["hello"], [["hello"], ["hello", "a", "b", "c", "d"]])
        assert scores[0] > scores[1]

    def test_rare_term_only_scores_its_document(self):
        documents = [["common", "rare"], ["common", "foo"], ["common", "bar"]]
        scores = compute_bm25_scores(["rare"], documents)
        assert scores[0] > 0
        assert scores[1:] == [0.0, 0.0]

    def test_repeated_query_terms_count_once(self):
        documents = [["hello", "world"], ["world"]]
        assert compute_bm25_scores(["hello", "hello"], documents) == compute_bm25_scores(
            ["hello"], documents
        )

    def test_both_terms_beat_one(self):
        documents = [["hello", "world"], ["hello", "foo"], ["world", "bar"]]
        scores = compute_bm25_scores(["hello", "world"], documents)
        assert scores[0] > scores[1]
        assert scores[0] > scores[2]

    def test_length_normalization_parameter(self):
        docs = [["hello"], ["hello", "foo", "bar", "baz", "qux"]]
        flat = compute_bm25_scores(["hello"], docs, b=0.0)
        full = compute_bm25_scores(["hello"], docs, b=1.0)
        assert abs(full[0] - full[1]) > abs(flat[0] - flat[1])

    def test_default_parameters(self):
        assert (BM25_K1, BM25_B) == (1.5, 0.75)


class TestBM25Index:
    def test_rank_orders_and_limits(self):
        index = BM25Index([["anchor"], ["noise"], ["anchor", "anchor", "anchor"]])
        ranked = index.rank(["anchor"], 5)
        assert [idx for idx, _ in ranked] == [2, 0]
        assert index.rank(["anchor"], 1)[0][0] == 2
        assert index.rank(["anchor"], 0) == []

    def test_rank_ties_keep_corpus_order(self):
        index = BM25Index([["x", "y"], ["y", "x"], ["z"]])
        assert [idx for idx, _ in index.rank(["x"], 3)] == [0, 1]

    def test_index_reused_across_queries(self):
        index = BM25Index([["hello", "world"], ["goodbye"]])
        assert index.scores(["hello"])[1] == 0.0
        assert index.scores(["goodbye"])[0] == 0.0
        assert index.scores(["missing"]) == [0.0, 0.0]


def write_store(root, store_id, records):
    root.mkdir(parents=True, exist_ok=True)
    lines = [json.dumps(r) if isinstance(r, dict) else r for r in records]
    (root / f"{store_id}.jsonl").write_text("\n".join(lines) + "\n", encoding="utf-8")


class TestLocalStoreBackend:
    async def test_search_ranks_and_caps(self, tmp_path):
        write_store(
            tmp_path,
            "vs_canon",
            [
                {"source_id": "A", "text": "the mission anchor is stated here", "authority_rank": 3},
                {"source_id": "B", "text": "unrelated gardening notes"},
                {"source_id": "C", "text": "anchor anchor anchor", "updated_at": "2024-01-01T00:00:00Z"},
                "{not json",
                {"text": "record without an id"},
            ],
        )
        backend = LocalStoreBackend(tmp_path)
        results = await backend.search("vs_canon", "anchor", 5)

        assert [r.source_id for r in results] == ["C", "A"]
        assert all(r.store_id == "vs_canon" for r in results)
        assert results[1].authority_rank == 3
        assert results[0].timestamp == parse_timestamp("2024-01-01T00:00:00Z")

        capped = await backend.search("vs_canon", "anchor", 1)
        assert [r.source_id for r in capped] == ["C"]

    async def test_non_finite_rank_and_timestamp_fall_back(self, tmp_path):
        write_store(
            tmp_path,
            "vs_canon",
            [
                {"source_id": "A", "text": "anchor", "authority_rank": float("nan")},
                {"source_id": "B", "text": "anchor text", "authority_rank": float("inf"), "timestamp": float("nan")},
            ],
        )
        results = await LocalStoreBackend(tmp_path).search("vs_canon", "anchor", 5)

        assert {r.source_id: r.authority_rank for r in results} == {"A": 0, "B": 0}
        assert [r.timestamp for r in results] == [0.0, 0.0]

    async def test_missing_store(self, tmp_path):
        with pytest.raises(NotFoundError):
            await LocalStoreBackend(tmp_path).search("vs_missing", "q", 3)

    async def test_store_id_cannot_escape_root(self, tmp_path):
        from turnkernel.service.fs import PathTraversalError

        with pytest.raises(PathTraversalError):
            await LocalStoreBackend(tmp_path / "stores").search("../secrets", "q", 3)

    async def test_inventory_groups_chunks_and_pages(self, tmp_path):
        write_store(
            tmp_path,
            "vs_threads",
            [
                {"source_id": "t1", "text": "ab", "filename": "t1.md"},
                {"source_id": "t1", "text": "cd"},
                {"source_id": "t2", "text": "x"},
                {"source_id": "t3", "text": "y"},
            ],
        )
        backend = LocalStoreBackend(tmp_path)
        page = await backend.list_documents("vs_threads", limit=2)
        assert [d["id"] for d in page.data] == ["t1", "t2"]
        assert page.data[0] == {"id": "t1", "filename": "t1.md", "chunks": 2, "bytes": 4}
        assert page.has_more is True
        assert page.after == "t2"

        rest = await backend.list_documents("vs_threads", after=page.after, limit=2)
        assert [d["id"] for d in rest.data] == ["t3"]
        assert rest.has_more is False
        assert rest.after is None


def test_parse_timestamp():
    assert parse_timestamp(None) == 0.0
    assert parse_timestamp(12) == 12.0
    assert parse_timestamp("garbage") == 0.0
    assert parse_timestamp("1970-01-01T00:00:10Z") == 10.0
    assert parse_timestamp(float("nan")) == 0.0


def test_coerce_rank():
    assert coerce_rank(3) == 3
    assert coerce_rank(2.9) == 2
    assert coerce_rank(float("nan")) is None
    assert coerce_rank(float("-inf")) is None
    assert coerce_rank(True) is None
    assert coerce_rank("5") is None
