"""Turn execution: gate, route, enforce, respond, finalize.

A turn is split in two phases. ``prepare`` runs everything that can still
fail with an HTTP status (authorization, routing, retrieval and the whole
tool loop). ``stream`` then owns the client-visible event sequence: a
producer task reads model output into a bounded channel and a consumer
relays it. Writeback and the closing telemetry run only after the terminal
event has been handed to the client.
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, TypeVar
from uuid import uuid4

from turnkernel.config import Settings
from turnkernel.logging import get_logger
from turnkernel.service.canon_ops import CanonEnforcer, CanonOverlay
from turnkernel.service.errors import ServerError, ServiceError, ToolLoopExceeded, TurnCancelled
from turnkernel.service.fs import DirectoryLister
from turnkernel.service.gatekeeper import GateDecision, ToolGatekeeper
from turnkernel.service.ingress import TurnRequest, ensure_not_cancelled
from turnkernel.service.model_backend import ModelClient
from turnkernel.service.retrieval import RetrievalBackend, RetrievalResult
from turnkernel.service.router import (
    TRUTH_POLICY_NOTES,
    RetrievalPlan,
    RetrievalRouter,
    strip_inline_directives,
)
from turnkernel.service.telemetry import TelemetryRecorder, TurnTelemetry
from turnkernel.service.tools import ToolContext, ToolExecutor, tool_definitions
from turnkernel.service.writeback import WB_END, WB_START, WritebackService, WritebackStripper
from turnkernel.storage.models import default_state_pack, normalize_state_pack, prompt_state_pack
from turnkernel.storage.repository import StateRepository

logger = get_logger(__name__)

T = TypeVar("T")

DELTA_EVENT = "response.output_text.delta"
DONE_EVENT = "response.output_text.done"
COMPLETED_EVENT = "response.completed"
ERROR_EVENT = "error"

EVIDENCE_TEXT_CHARS = 1200
REPLAY_CHUNK_CHARS = 64

BASE_INSTRUCTIONS = "\n".join(
    [
        "You are the assistant for a governed knowledge workspace.",
        "Ground factual claims in the retrieval results supplied below and cite source ids.",
        "To record durable state, end your reply with one block:",
        f"{WB_START}",
        '{"writeback": {"events": [], "state_patch": {}, "parked": [], "notes": ""}}',
        f"{WB_END}",
        "The block is removed before the user sees your reply.",
    ]
)


class TurnState(str, Enum):
    INIT = "INIT"
    GATED = "GATED"
    ROUTED = "ROUTED"
    ENFORCED = "ENFORCED"
    STREAMING = "STREAMING"
    TOOL_LOOP = "TOOL_LOOP"
    FINALIZED = "FINALIZED"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class TurnContext:
    turn_id: str
    request: TurnRequest
    telemetry: TurnTelemetry
    cancel_event: asyncio.Event
    state: TurnState = TurnState.INIT
    history: List[str] = field(default_factory=lambda: [TurnState.INIT.value])
    decision: Optional[GateDecision] = None
    plan: Optional[RetrievalPlan] = None
    state_pack: Dict[str, Any] = field(default_factory=dict)
    pack_exists: bool = False
    evidence: List[RetrievalResult] = field(default_factory=list)
    collisions: List[Dict[str, Any]] = field(default_factory=list)
    tool_calls: List[str] = field(default_factory=list)
    # Set once the terminal event-log entry is written or owned by finalize
    closed: bool = False

    @property
    def conversation_id(self) -> str:
        return self.request.conversation_id

    def advance(self, state: TurnState) -> None:
        self.state = state
        self.history.append(state.value)
        self.telemetry.stream("state", state=state.value)


@dataclass
class PreparedTurn:
    context: TurnContext
    messages: List[Dict[str, Any]]
    final_text: Optional[str] = None

    def response_headers(self) -> Dict[str, str]:
        headers = {"X-Turn-Id": self.context.turn_id}
        if self.context.plan is not None:
            headers.update(self.context.plan.response_headers())
        return headers


@dataclass
class StreamItem:
    kind: str  # delta | end | error
    text: str = ""
    error: Optional[ServiceError] = None


class StreamChannel:
    """Bounded single-producer, single-consumer hand-off."""

    def __init__(self, maxsize: int) -> None:
        self._queue: asyncio.Queue[StreamItem] = asyncio.Queue(maxsize=maxsize)

    async def put(self, item: StreamItem) -> None:
        await self._queue.put(item)

    async def get(self) -> StreamItem:
        return await self._queue.get()


def _event(event_type: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"event": event_type, "data": data}


def _error_event(exc: ServiceError) -> Dict[str, Any]:
    return _event(
        ERROR_EVENT,
        {"code": exc.error_code, "message": exc.message, "details": exc.detail},
    )


async def _replay(text: str) -> AsyncIterator[str]:
    for start in range(0, len(text), REPLAY_CHUNK_CHARS):
        yield text[start : start + REPLAY_CHUNK_CHARS]


async def race_cancel(awaitable: Awaitable[T], cancel_event: asyncio.Event) -> T:
    """Await ``awaitable`` unless ``cancel_event`` fires first."""
    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
    if task not in done:
        raise TurnCancelled()
    return task.result()


class Responder:
    """Runs one turn through the pipeline."""

    def __init__(
        self,
        *,
        settings: Settings,
        gatekeeper: ToolGatekeeper,
        router: RetrievalRouter,
        backend: RetrievalBackend,
        repository: StateRepository,
        telemetry: TelemetryRecorder,
        model: ModelClient,
        lister: DirectoryLister,
    ) -> None:
        self.settings = settings
        self.gatekeeper = gatekeeper
        self.router = router
        self.backend = backend
        self.repository = repository
        self.telemetry = telemetry
        self.model = model
        self.lister = lister
        self.writeback = WritebackService(repository)

    def new_context(
        self, request: TurnRequest, cancel_event: Optional[asyncio.Event] = None, turn_id: Optional[str] = None
    ) -> TurnContext:
        turn_id = turn_id or f"turn_{uuid4().hex}"
        return TurnContext(
            turn_id=turn_id,
            request=request,
            telemetry=self.telemetry.for_turn(turn_id, request.conversation_id),
            cancel_event=cancel_event or asyncio.Event(),
        )

    # Phase one

    async def prepare(
        self,
        ctx: TurnContext,
        *,
        credential: Optional[str],
        client_host: Optional[str],
    ) -> PreparedTurn:
        try:
            return await self._prepare(ctx, credential=credential, client_host=client_host)
        except TurnCancelled:
            self._record_cancelled(ctx)
            raise
        except ServiceError as exc:
            self._record_failure(ctx, exc)
            raise
        except Exception as exc:
            logger.error("turn_prepare_failed", error_type=type(exc).__name__, error=str(exc))
            failure = ServerError("turn preparation failed")
            self._record_failure(ctx, failure)
            raise failure from exc

    def abandon(self, ctx: TurnContext) -> None:
        """Close out a turn whose client went away before its stream ran."""
        ctx.cancel_event.set()
        self._record_cancelled(ctx)

    async def _prepare(
        self, ctx: TurnContext, *, credential: Optional[str], client_host: Optional[str]
    ) -> PreparedTurn:
        request = ctx.request
        ensure_not_cancelled(ctx.cancel_event)

        ctx.decision = self.gatekeeper.gate(
            request.tools_state, credential=credential, client_host=client_host
        )
        ctx.advance(TurnState.GATED)

        stored = self.repository.get(ctx.conversation_id)
        ctx.pack_exists = stored is not None
        ctx.state_pack = (
            normalize_state_pack(stored) if stored is not None else default_state_pack(ctx.conversation_id)
        )
        ctx.plan = self.router.plan(request, ctx.state_pack)
        ctx.advance(TurnState.ROUTED)

        overlay = CanonOverlay.from_document(self.repository.load_canon_ops())
        enforcer = CanonEnforcer(overlay)
        effective = ctx.decision.effective
        if ctx.plan.store_ids and (ctx.plan.search_first or effective.file_search):
            await self._retrieve(ctx, enforcer)
        ctx.advance(TurnState.ENFORCED)

        messages = self.build_messages(ctx, overlay)
        if not ctx.decision.functions_authorized:
            return PreparedTurn(context=ctx, messages=messages)

        ctx.advance(TurnState.TOOL_LOOP)
        executor = ToolExecutor(
            ToolContext(
                conversation_id=ctx.conversation_id,
                plan=ctx.plan,
                backend=self.backend,
                enforcer=enforcer,
                lister=self.lister,
                repository=self.repository,
                telemetry=ctx.telemetry,
                stores=dict(self.router.stores),
            ),
            workers=self.settings.tool_workers,
            timeout_seconds=self.settings.tool_timeout_seconds,
        )
        final_text = await self._tool_loop(ctx, messages, executor)
        return PreparedTurn(context=ctx, messages=messages, final_text=final_text)

    async def _retrieve(self, ctx: TurnContext, enforcer: CanonEnforcer) -> None:
        plan = ctx.plan
        query = strip_inline_directives(ctx.request.last_user_text)
        for store_id in plan.store_ids:
            cap = plan.caps.get(store_id, 1)
            try:
                raw = await race_cancel(self.backend.search(store_id, query, cap), ctx.cancel_event)
            except ServiceError as exc:
                ctx.telemetry.retrieval(
                    store_id=store_id,
                    query=query,
                    result_count=0,
                    enforced_count=0,
                    collisions=[],
                    mode=plan.mode.value,
                    error=exc.error_code,
                )
                raise
            enforced = enforcer.enforce(raw[:cap])
            ctx.telemetry.retrieval(
                store_id=store_id,
                query=query,
                result_count=len(raw),
                enforced_count=len(enforced.results),
                collisions=enforced.collisions,
                mode=plan.mode.value,
            )
            ctx.evidence.extend(enforced.results)
            ctx.collisions.extend(enforced.collisions)
        logger.info(
            "retrieval_complete",
            stores=list(plan.store_ids),
            evidence=len(ctx.evidence),
            collisions=len(ctx.collisions),
        )

    def build_messages(self, ctx: TurnContext, overlay: CanonOverlay) -> List[Dict[str, Any]]:
        plan = ctx.plan
        developer = [BASE_INSTRUCTIONS, TRUTH_POLICY_NOTES[plan.policy]]
        if overlay.artifact_count or overlay.tombstones or overlay.successors:
            developer.append(overlay.developer_note())
        developer.append(
            "STATE_PACK (bounded view)\n"
            + json.dumps(prompt_state_pack(ctx.state_pack), ensure_ascii=False, default=str)
        )
        if plan.search_first or ctx.evidence:
            lines = [
                f"RETRIEVAL RESULTS (mode={plan.mode.value}, stores={','.join(plan.store_ids) or 'none'})"
            ]
            if not ctx.evidence:
                lines.append("(no results)")
            for index, result in enumerate(ctx.evidence, start=1):
                label = result.source_id
                if result.superseded_by:
                    label += f" (superseded by {result.superseded_by})"
                lines.append(f"[{index}] {label} @ {result.store_id}\n{result.text[:EVIDENCE_TEXT_CHARS]}")
            developer.append("\n\n".join(lines))

        messages: List[Dict[str, Any]] = [{"role": "developer", "content": part} for part in developer]
        for message in ctx.request.messages:
            content = message.content
            if message.role == "user":
                content = strip_inline_directives(content)
            messages.append({"role": message.role, "content": content})
        return messages

    async def _tool_loop(
        self, ctx: TurnContext, messages: List[Dict[str, Any]], executor: ToolExecutor
    ) -> str:
        effective = ctx.decision.effective
        tools = tool_definitions(effective)
        conversation = list(messages)
        max_rounds = self.settings.tool_loop_max_rounds
        for round_no in range(1, max_rounds + 1):
            ensure_not_cancelled(ctx.cancel_event)
            reply = await race_cancel(self.model.complete(conversation, tools=tools), ctx.cancel_event)
            if not reply.tool_calls:
                logger.info("tool_loop_converged", rounds=round_no, tool_calls=len(ctx.tool_calls))
                return reply.text
            outcomes = await race_cancel(
                executor.run_iteration(reply.tool_calls, effective), ctx.cancel_event
            )
            ctx.tool_calls.extend(outcome.tool for outcome in outcomes)
            conversation.append(
                {
                    "role": "assistant",
                    "content": reply.text or None,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.name,
                                "arguments": call.raw_arguments or json.dumps(call.arguments),
                            },
                        }
                        for call in reply.tool_calls
                    ],
                }
            )
            conversation.extend(
                {"role": "tool", "tool_call_id": outcome.call_id, "content": outcome.content()}
                for outcome in outcomes
            )
            logger.info("tool_loop_round", round=round_no, calls=[o.tool for o in outcomes])
        raise ToolLoopExceeded(
            "tool loop did not converge",
            detail={"max_rounds": max_rounds, "tool_calls": len(ctx.tool_calls)},
        )

    # Phase two

    async def stream(self, prepared: PreparedTurn) -> AsyncIterator[Dict[str, Any]]:
        ctx = prepared.context
        if prepared.final_text is None:
            ctx.advance(TurnState.STREAMING)
            source = self.model.stream_text(prepared.messages)
        else:
            source = _replay(prepared.final_text)
        raw_parts: List[str] = []
        channel = StreamChannel(self.settings.stream_queue_size)
        ctx.telemetry.stream("start", path="tool_loop" if prepared.final_text is not None else "direct")
        producer = asyncio.create_task(self._produce(source, channel, raw_parts))
        cancel_wait = asyncio.create_task(ctx.cancel_event.wait())
        visible: List[str] = []
        failure: Optional[ServiceError] = None
        try:
            while True:
                getter = asyncio.create_task(channel.get())
                done, _ = await asyncio.wait(
                    {getter, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                if getter not in done:
                    getter.cancel()
                    raise TurnCancelled()
                item = getter.result()
                if item.kind == "delta":
                    visible.append(item.text)
                    yield _event(DELTA_EVENT, {"delta": item.text})
                elif item.kind == "error":
                    failure = item.error
                    yield _error_event(failure)
                    break
                else:
                    text = "".join(visible)
                    yield _event(DONE_EVENT, {"text": text})
                    yield _event(COMPLETED_EVENT, self._completion_metadata(ctx))
                    break
        except TurnCancelled:
            producer.cancel()
            self._record_cancelled(ctx, chunks=len(visible))
            return
        except (asyncio.CancelledError, GeneratorExit):
            producer.cancel()
            self._record_cancelled(ctx, chunks=len(visible))
            raise
        finally:
            producer.cancel()
            cancel_wait.cancel()

        ctx.closed = True
        await asyncio.shield(self._finalize(ctx, "".join(raw_parts), len(visible), failure))

    async def _produce(
        self, source: AsyncIterator[str], channel: StreamChannel, raw_parts: List[str]
    ) -> None:
        stripper = WritebackStripper()
        try:
            async for delta in source:
                raw_parts.append(delta)
                visible = stripper.feed(delta)
                if visible:
                    await channel.put(StreamItem("delta", visible))
            tail = stripper.flush()
            if tail:
                await channel.put(StreamItem("delta", tail))
            await channel.put(StreamItem("end"))
        except ServiceError as exc:
            await channel.put(StreamItem("error", error=exc))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("stream_producer_failed", error_type=type(exc).__name__, error=str(exc))
            await channel.put(StreamItem("error", error=ServerError("stream failed")))

    def _completion_metadata(self, ctx: TurnContext) -> Dict[str, Any]:
        plan = ctx.plan
        return {
            "turn_id": ctx.turn_id,
            "conversation_id": ctx.conversation_id,
            "mode": plan.mode.value if plan else None,
            "stores": list(plan.store_ids) if plan else [],
            "tool_calls": list(ctx.tool_calls),
            "collisions": len(ctx.collisions),
            "degraded": ctx.telemetry.degraded,
        }

    async def _finalize(
        self, ctx: TurnContext, full_text: str, chunks: int, failure: Optional[ServiceError]
    ) -> None:
        ctx.advance(TurnState.FINALIZED)
        if failure is not None:
            ctx.telemetry.stream("error", chunks=chunks, error_code=failure.error_code)
            self._record_failure(ctx, failure)
            return

        ctx.telemetry.stream("end", chunks=chunks, chars=len(full_text))
        try:
            outcome = await self.writeback.persist(
                ctx.conversation_id, full_text, base_pack=ctx.state_pack
            )
            if outcome.status != "applied" and not ctx.pack_exists:
                await self._persist_initial_pack(ctx)
        except Exception as exc:
            logger.error("writeback_persist_failed", error_type=type(exc).__name__, error=str(exc))
            ctx.telemetry.degraded = True
            ctx.telemetry.failed_writes.append("state_pack")
        else:
            if outcome.status == "applied":
                ctx.telemetry.event("writeback", "applied", **outcome.summary)
            elif outcome.status == "malformed":
                ctx.telemetry.event("writeback", "malformed", error=outcome.error)

        ctx.advance(TurnState.DONE)
        ctx.telemetry.event(
            "completed",
            "degraded" if ctx.telemetry.degraded else "ok",
            mode=ctx.plan.mode.value if ctx.plan else None,
            stores=list(ctx.plan.store_ids) if ctx.plan else [],
            tool_calls=list(ctx.tool_calls),
            chunks=chunks,
            failed_writes=list(ctx.telemetry.failed_writes),
        )
        logger.info(
            "turn_completed",
            turn_id=ctx.turn_id,
            chunks=chunks,
            degraded=ctx.telemetry.degraded,
        )

    async def _persist_initial_pack(self, ctx: TurnContext) -> None:
        async with self.repository.lock(ctx.conversation_id):
            if self.repository.get(ctx.conversation_id) is None:
                self.repository.put(ctx.conversation_id, ctx.state_pack)

    def _record_failure(self, ctx: TurnContext, exc: ServiceError) -> None:
        ctx.closed = True
        ctx.state = TurnState.FAILED
        ctx.history.append(TurnState.FAILED.value)
        ctx.telemetry.stream("state", state=TurnState.FAILED.value, error_code=exc.error_code)
        ctx.telemetry.event("failed", exc.error_code, message=exc.message)
        logger.warning("turn_failed", turn_id=ctx.turn_id, error_code=exc.error_code)

    def _record_cancelled(self, ctx: TurnContext, chunks: int = 0) -> None:
        if ctx.closed:
            return
        ctx.closed = True
        ctx.telemetry.stream("cancelled", chunks=chunks)
        ctx.telemetry.event("cancelled", "aborted", state=ctx.state.value)
        logger.info("turn_cancelled", turn_id=ctx.turn_id, state=ctx.state.value)
