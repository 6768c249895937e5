"""Tests for the turn pipeline: prepare, tool loop, streaming and finalization."""

import asyncio
import json

import pytest

from conftest import ADMIN_TOKEN, FakeBackend, LoopingModel, ScriptedModel, result

from turnkernel.service.errors import (
    AuthError,
    ModeConflict,
    ServerError,
    ToolLoopExceeded,
    TurnCancelled,
    UpstreamProviderError,
)
from turnkernel.service.model_backend import ModelReply, ToolCall
from turnkernel.service.responder import (
    COMPLETED_EVENT,
    DELTA_EVENT,
    DONE_EVENT,
    ERROR_EVENT,
    race_cancel,
)
from turnkernel.service.writeback import WB_END, WB_START

USER_ONLY = {"conversationId": "conv-1", "messages": [{"role": "user", "content": "hello there"}]}
WITH_FUNCTIONS = {**USER_ONLY, "toolsState": {"functionsEnabled": True}}


class StallingModel(ScriptedModel):
    async def stream_text(self, messages):
        self.stream_calls += 1
        yield "first "
        await asyncio.Event().wait()


class FailingStreamModel(ScriptedModel):
    async def stream_text(self, messages):
        self.stream_calls += 1
        yield "partial "
        raise UpstreamProviderError("model stream interrupted")


def stages(runtime, conversation_id="conv-1"):
    return [(e["stage"], e["outcome"]) for e in runtime.repository.events(conversation_id)]


async def prepare(runtime, payload, *, credential=None, signals=(), cancel_event=None):
    request = runtime.ingress.validate(payload, header_signals=signals)
    responder = runtime.responder()
    ctx = responder.new_context(request, cancel_event)
    prepared = await responder.prepare(ctx, credential=credential, client_host="10.0.0.5")
    return responder, prepared


async def run_turn(runtime, payload, **kwargs):
    responder, prepared = await prepare(runtime, payload, **kwargs)
    events = [event async for event in responder.stream(prepared)]
    return prepared.context, events


class TestDirectStream:
    async def test_event_sequence(self, runtime, fake_model):
        ctx, events = await run_turn(runtime, USER_ONLY)

        assert [e["event"] for e in events] == [DELTA_EVENT] * 3 + [DONE_EVENT, COMPLETED_EVENT]
        assert events[3]["data"]["text"] == "Hello, world."
        completed = events[-1]["data"]
        assert completed["turn_id"] == ctx.turn_id
        assert completed["mode"] == "COMBINED"
        assert completed["tool_calls"] == []
        assert completed["degraded"] is False
        assert ctx.history == [
            "INIT", "GATED", "ROUTED", "ENFORCED", "STREAMING", "FINALIZED", "DONE"
        ]
        assert stages(runtime) == [("completed", "ok")]
        assert fake_model.stream_calls == 1
        assert fake_model.complete_calls == 0

    async def test_first_turn_persists_default_pack(self, runtime, fake_model):
        await run_turn(runtime, USER_ONLY)
        pack = runtime.repository.get("conv-1")
        assert pack["meta"]["session_id"] == "conv-1"
        assert runtime.repository.put_count == 1

    async def test_state_pack_reaches_the_prompt(self, runtime, fake_model):
        await run_turn(runtime, USER_ONLY)
        developer = [m["content"] for m in fake_model.messages[0] if m["role"] == "developer"]
        assert any(part.startswith("STATE_PACK (bounded view)") for part in developer)
        assert fake_model.messages[0][-1] == {"role": "user", "content": "hello there"}

    async def test_writeback_stripped_and_applied(self, runtime):
        payload = json.dumps({"writeback": {"events": [{"type": "note"}], "notes": "kept"}})
        runtime.model = ScriptedModel(
            chunks=["Answer. BEGIN_WRITE", "BACK_JSON " + payload[:10], payload[10:] + " END_WRITEBACK_JSON"]
        )
        _, events = await run_turn(runtime, USER_ONLY)

        deltas = "".join(e["data"]["delta"] for e in events if e["event"] == DELTA_EVENT)
        assert deltas == "Answer. "
        assert WB_START not in json.dumps(events)
        assert events[-2]["data"]["text"] == "Answer. "
        pack = runtime.repository.get("conv-1")
        assert pack["events"] == [{"type": "note"}]
        assert pack["notes"] == "kept"
        assert stages(runtime) == [("writeback", "applied"), ("completed", "ok")]

    async def test_malformed_writeback_does_not_fail_turn(self, runtime):
        runtime.model = ScriptedModel(chunks=["Done.", f"{WB_START} {{nope {WB_END}"])
        _, events = await run_turn(runtime, USER_ONLY)

        assert events[-1]["event"] == COMPLETED_EVENT
        assert stages(runtime) == [("writeback", "malformed"), ("completed", "ok")]
        # Nothing applied, but the first turn still stores the default pack
        assert runtime.repository.get("conv-1")["events"] == []

    async def test_upstream_failure_mid_stream(self, runtime):
        runtime.model = FailingStreamModel()
        ctx, events = await run_turn(runtime, USER_ONLY)

        assert [e["event"] for e in events] == [DELTA_EVENT, ERROR_EVENT]
        assert events[-1]["data"]["code"] == "upstream_error"
        assert stages(runtime) == [("failed", "upstream_error")]
        assert runtime.repository.put_count == 0
        assert ctx.history[-1] == "FAILED"


class TestRetrieval:
    async def test_forced_canon_retrieval_is_enforced(self, runtime, fake_model):
        backend = FakeBackend({"vs_canon": [result("OLD"), result("NEW", text="new charter text")]})
        runtime.backend = backend
        runtime.repository.canon_ops = {"tombstones": [{"artifact_id": "OLD"}]}

        payload = {
            "conversationId": "conv-1",
            "messages": [{"role": "user", "content": "[canon-only] what does the charter say"}],
        }
        ctx, events = await run_turn(runtime, payload)

        assert backend.search_calls == [
            {"store_id": "vs_canon", "query": "what does the charter say", "max_results": 8}
        ]
        sent = fake_model.messages[0]
        evidence = next(m["content"] for m in sent if m["content"].startswith("RETRIEVAL RESULTS"))
        assert "mode=CANON" in evidence
        assert "NEW @ vs_canon" in evidence
        assert "OLD @" not in evidence
        assert sent[-1]["content"] == "what does the charter say"
        assert events[-1]["data"]["stores"] == ["vs_canon"]

        trace = runtime.telemetry.retrieval_trace(turn_id=ctx.turn_id)
        assert [(r["result_count"], r["enforced_count"]) for r in trace] == [(2, 1)]

    async def test_mode_conflict_before_any_work(self, runtime, fake_model, fake_backend):
        with pytest.raises(ModeConflict):
            await prepare(runtime, USER_ONLY, signals=("canon_only", "threads_only"))
        assert fake_model.calls == 0
        assert fake_backend.search_calls == []
        assert runtime.telemetry.retrieval_trace() == []
        assert stages(runtime) == [("failed", "mode_conflict")]

    async def test_unexpected_backend_error_is_recorded(self, runtime, fake_model):
        class ExplodingBackend(FakeBackend):
            async def search(self, store_id, query, max_results):
                raise ValueError("cannot convert float NaN to integer")

        runtime.backend = ExplodingBackend()
        payload = {
            "conversationId": "conv-1",
            "messages": [{"role": "user", "content": "[canon-only] what does the charter say"}],
        }
        with pytest.raises(ServerError) as exc_info:
            await prepare(runtime, payload)

        assert exc_info.value.message == "turn preparation failed"
        assert isinstance(exc_info.value.__cause__, ValueError)
        assert stages(runtime) == [("failed", "server_error")]
        assert fake_model.calls == 0


class TestToolLoop:
    async def test_requires_authorization(self, runtime, fake_model):
        with pytest.raises(AuthError):
            await prepare(runtime, WITH_FUNCTIONS, credential=None)
        assert fake_model.calls == 0
        assert stages(runtime) == [("failed", "unauthorized")]

    async def test_converges_and_replays(self, runtime):
        envelope = f'{WB_START}{{"writeback": {{"parked": ["later"]}}}}{WB_END}'
        model = ScriptedModel(
            replies=[
                ModelReply(text="", tool_calls=[ToolCall("call_1", "state_pack_read", {})]),
                ModelReply(text="All set. " + envelope),
            ]
        )
        runtime.model = model
        ctx, events = await run_turn(runtime, WITH_FUNCTIONS, credential=ADMIN_TOKEN)

        offered = [t["function"]["name"] for t in model.tools_offered[0]]
        assert "state_pack_read" in offered
        second_round = model.messages[1]
        assert second_round[-2]["tool_calls"][0]["function"]["name"] == "state_pack_read"
        assert second_round[-1]["role"] == "tool"
        assert second_round[-1]["tool_call_id"] == "call_1"

        assert model.stream_calls == 0
        assert events[-2]["data"]["text"] == "All set. "
        assert events[-1]["data"]["tool_calls"] == ["state_pack_read"]
        assert "TOOL_LOOP" in ctx.history
        assert runtime.repository.get("conv-1")["queue"]["parked"] == ["later"]

    async def test_cap_exhaustion_fails_once(self, runtime):
        model = LoopingModel()
        runtime.model = model
        with pytest.raises(ToolLoopExceeded) as exc_info:
            await prepare(runtime, WITH_FUNCTIONS, credential=ADMIN_TOKEN)

        max_rounds = runtime.settings.tool_loop_max_rounds
        assert model.complete_calls == max_rounds
        assert exc_info.value.detail == {"max_rounds": max_rounds, "tool_calls": max_rounds}
        assert stages(runtime) == [("failed", "tool_loop_exceeded")]

    async def test_unauthorized_tool_call_fails_turn(self, runtime, fake_backend):
        model = ScriptedModel(
            replies=[
                ModelReply(
                    text="",
                    tool_calls=[
                        ToolCall("call_1", "state_pack_read", {}),
                        ToolCall("call_2", "file_search", {"query": "x"}),
                    ],
                )
            ]
        )
        runtime.model = model
        with pytest.raises(AuthError) as exc_info:
            await prepare(runtime, WITH_FUNCTIONS, credential=ADMIN_TOKEN)

        assert exc_info.value.detail["tool"] == "file_search"
        assert fake_backend.search_calls == []
        assert model.complete_calls == 1
        assert stages(runtime) == [("failed", "unauthorized")]


class TestCancellation:
    async def test_cancelled_before_prepare(self, runtime, fake_model):
        cancel_event = asyncio.Event()
        cancel_event.set()
        with pytest.raises(TurnCancelled):
            await prepare(runtime, USER_ONLY, cancel_event=cancel_event)
        assert fake_model.calls == 0
        assert stages(runtime) == [("cancelled", "aborted")]

    async def test_cancelled_mid_stream(self, runtime):
        runtime.model = StallingModel()
        responder, prepared = await prepare(runtime, USER_ONLY)
        stream = responder.stream(prepared)

        first = await stream.__anext__()
        assert first == {"event": DELTA_EVENT, "data": {"delta": "first "}}
        prepared.context.cancel_event.set()
        rest = [event async for event in stream]

        assert rest == []
        assert stages(runtime) == [("cancelled", "aborted")]
        assert runtime.repository.put_count == 0


async def test_race_cancel():
    event = asyncio.Event()
    assert await race_cancel(asyncio.sleep(0, result=5), event) == 5
    event.set()
    with pytest.raises(TurnCancelled):
        await race_cancel(asyncio.sleep(10), event)
