"""Tests for retrieval mode routing."""

import pytest

from conftest import FakeBackend

from turnkernel.service.errors import ConfigurationError, ModeConflict, NotFoundError
from turnkernel.service.ingress import ToolsState, TurnMessage, TurnRequest
from turnkernel.service.router import (
    RetrievalMode,
    RetrievalRouter,
    StoreKind,
    TruthPolicy,
    resolve_truth_policy,
    signals_from_headers,
    strip_inline_directives,
)


def make_router(canon="vs_canon", threads="vs_threads", manifest=None, legacy=None, max_stores=2):
    return RetrievalRouter(
        stores={
            StoreKind.CANON: canon,
            StoreKind.THREADS: threads,
            StoreKind.MANIFEST: manifest,
            StoreKind.LEGACY: legacy,
        },
        caps={StoreKind.CANON: 4, StoreKind.THREADS: 6, StoreKind.MANIFEST: 3, StoreKind.LEGACY: 4},
        max_stores=max_stores,
    )


def make_request(text, signals=()):
    return TurnRequest(
        conversation_id="c1",
        messages=(TurnMessage(role="user", content=text),),
        tools_state=ToolsState(),
        header_signals=tuple(signals),
    )


class TestModeConflicts:
    """Contradictory signals are rejected, never resolved by precedence."""

    def test_both_headers(self):
        with pytest.raises(ModeConflict) as exc_info:
            make_router().plan(make_request("hello", ["canon_only", "threads_only"]))
        assert exc_info.value.status_code == 400
        assert exc_info.value.error_code == "mode_conflict"

    def test_header_and_inline_directive(self):
        with pytest.raises(ModeConflict):
            make_router().plan(make_request("[threads only] hello", ["canon_only"]))

    def test_gold_hunt_counts_as_threads(self):
        with pytest.raises(ModeConflict):
            make_router().plan(make_request("[gold-hunt] [canon-only] find it"))

    def test_conflict_wins_over_missing_store(self):
        router = make_router(canon=None, threads=None)
        with pytest.raises(ModeConflict):
            router.plan(make_request("x", ["canon_only", "threads_only"]))


class TestForcedModes:
    def test_canon_only(self):
        plan = make_router().plan(make_request("hello", ["canon_only"]))
        assert plan.mode == RetrievalMode.CANON
        assert plan.store_ids == ("vs_canon",)
        assert plan.caps == {"vs_canon": 4}
        assert plan.search_first is True

    def test_inline_threads_only(self):
        plan = make_router().plan(make_request("[threads-only] what did we say"))
        assert plan.mode == RetrievalMode.THREADS
        assert plan.store_ids == ("vs_threads",)
        assert plan.signals == ("threads_only",)

    def test_gold_hunt_routes_to_threads(self):
        plan = make_router().plan(make_request("anything", ["gold_hunt"]))
        assert plan.mode == RetrievalMode.THREADS

    def test_forced_mode_without_store_fails(self):
        with pytest.raises(ConfigurationError) as exc_info:
            make_router(canon=None).plan(make_request("hello", ["canon_only"]))
        assert exc_info.value.detail == {"store_kind": "canon"}

    def test_anchor_question_forces_canon(self):
        plan = make_router().plan(make_request("What is the mission anchor?"))
        assert plan.mode == RetrievalMode.CANON
        assert plan.policy == TruthPolicy.ANCHOR_CANON_ONLY

    def test_sticky_mode_from_state_pack(self):
        plan = make_router().plan(make_request("hello"), {"mode": "CANON_ONLY"})
        assert plan.mode == RetrievalMode.CANON

    def test_explicit_signal_overrides_sticky_mode(self):
        plan = make_router().plan(make_request("hello", ["threads_only"]), {"mode": "CANON_ONLY"})
        assert plan.mode == RetrievalMode.THREADS


class TestCombinedMode:
    def test_default_order_canon_first(self):
        plan = make_router().plan(make_request("hello there"))
        assert plan.mode == RetrievalMode.COMBINED
        assert plan.store_ids == ("vs_canon", "vs_threads")
        assert plan.search_first is False

    def test_thread_lookup_puts_threads_first(self):
        plan = make_router().plan(make_request("where did i say that"))
        assert plan.store_ids == ("vs_threads", "vs_canon")
        assert plan.policy == TruthPolicy.THREAD_ARCHAEOLOGY_THREADS_FIRST

    def test_manifest_question_uses_manifest_first(self):
        plan = make_router(manifest="vs_manifest").plan(make_request("show the manifest"))
        assert plan.store_ids == ("vs_manifest", "vs_canon")
        assert plan.caps == {"vs_manifest": 3, "vs_canon": 4}

    def test_store_count_is_capped(self):
        plan = make_router(manifest="vs_manifest", max_stores=1).plan(make_request("hello"))
        assert plan.store_ids == ("vs_canon",)

    def test_no_stores_configured(self):
        plan = make_router(canon=None, threads=None).plan(make_request("hello"))
        assert plan.store_ids == ()
        assert plan.response_headers()["X-Retrieval-Stores"] == "none"

    def test_legacy_store_used_alone(self):
        plan = make_router(canon=None, threads=None, legacy="vs_legacy").plan(make_request("hello"))
        assert plan.store_ids == ("vs_legacy",)


def test_signals_from_headers():
    headers = {"x-canon-only": "1", "x-gold-hunt": "false", "x-threads-only": "yes"}
    assert signals_from_headers(headers) == ("canon_only", "threads_only")


def test_strip_inline_directives():
    assert strip_inline_directives("[Canon Only] what is CI-1?") == "what is CI-1?"
    assert strip_inline_directives("[gold_hunt]find it") == "find it"


def test_truth_policy_resolution():
    assert resolve_truth_policy("Which tombstone applies?") == TruthPolicy.CANON_OPS_MANIFEST_FIRST
    assert resolve_truth_policy("hi") == TruthPolicy.DEFAULT


def test_response_headers():
    plan = make_router().plan(make_request("hello", ["canon_only"]))
    assert plan.response_headers() == {
        "X-Retrieval-Mode": "CANON",
        "X-Retrieval-Stores": "vs_canon",
        "X-Truth-Policy": "DEFAULT",
        "X-Search-First": "1",
    }


class _MissingStoreBackend(FakeBackend):
    async def list_documents(self, store_id, *, after=None, limit=20):
        if store_id == "vs_threads":
            raise NotFoundError("retrieval store not found")
        return await super().list_documents(store_id, after=after, limit=limit)


async def test_validate_stores_reports_each_store():
    status = await make_router().validate_stores(_MissingStoreBackend())
    assert status == {"vs_canon": "ok", "vs_threads": "not_found"}
