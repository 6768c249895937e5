from __future__ import annotations

import asyncio
import json
import re
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, Request, Response
from fastapi.responses import StreamingResponse

from turnkernel.api.schemas import (
    DirectoryListResponse,
    Envelope,
    InventoryResponse,
    PunctuateRequest,
    PunctuateResponse,
    RetrievalTraceResponse,
    StatePackSummaryResponse,
    TurnCancelRequest,
    TurnCancelResponse,
)
from turnkernel.logging import bind_turn_context, clear_turn_context, get_logger
from turnkernel.service.canon_ops import CanonOverlay
from turnkernel.service.errors import ConfigurationError, TurnCancelled, ValidationError
from turnkernel.service.gatekeeper import bearer_token
from turnkernel.service.ingress import CONVERSATION_ID_RE
from turnkernel.service.responder import Responder, TurnContext
from turnkernel.service.router import StoreKind, signals_from_headers
from turnkernel.service.runtime import get_runtime
from turnkernel.storage.models import summarize_state_pack

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

RECENT_EVENTS_LIMIT = 20

TURN_ID_RE = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")

# Maps turn_id to the cancel event of a running turn
_active_turns: Dict[str, asyncio.Event] = {}
_active_turns_lock = asyncio.Lock()


async def _register_cancel_event(turn_id: str, cancel_event: asyncio.Event) -> bool:
    async with _active_turns_lock:
        if turn_id in _active_turns:
            return False
        _active_turns[turn_id] = cancel_event
        return True


async def _unregister_cancel_event(turn_id: str) -> None:
    async with _active_turns_lock:
        _active_turns.pop(turn_id, None)


async def _cancel_turn(turn_id: str) -> bool:
    """Signal a running turn. Returns True if it was still running."""
    async with _active_turns_lock:
        cancel_event = _active_turns.get(turn_id)
        if cancel_event and not cancel_event.is_set():
            cancel_event.set()
            return True
        return False


async def _watch_disconnect(request: Request, cancel_event: asyncio.Event) -> None:
    """Set ``cancel_event`` when the client drops the connection.

    The body has already been read, so the next ASGI message can only be
    ``http.disconnect``.
    """
    try:
        message = await request.receive()
    except Exception as exc:
        logger.warning("disconnect_watch_failed", error_type=type(exc).__name__)
        return
    if message.get("type") == "http.disconnect":
        logger.info("client_disconnected", path=request.url.path)
        cancel_event.set()


async def _close_turn(responder: Responder, ctx: TurnContext) -> None:
    """Release the turn's cancel slot; a turn nobody closed out is logged as aborted."""
    await _unregister_cancel_event(ctx.turn_id)
    if not ctx.closed:
        responder.abandon(ctx)
    clear_turn_context()


def sse_frame(event: Dict[str, Any]) -> str:
    return "data: " + json.dumps(event, ensure_ascii=False, default=str) + "\n\n"


async def require_admin(authorization: Optional[str] = Header(None)) -> None:
    get_runtime().gatekeeper.authorize_admin(bearer_token(authorization))


@router.post("/turn")
async def create_turn(request: Request, authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    payload = runtime.ingress.parse_body(await request.body())
    turn_request = runtime.ingress.validate(
        payload, header_signals=signals_from_headers(request.headers)
    )

    client_turn_id = request.headers.get("X-Turn-Id")
    if client_turn_id is not None and not TURN_ID_RE.match(client_turn_id):
        raise ValidationError("invalid X-Turn-Id header", detail={"header": "X-Turn-Id"})

    responder = runtime.responder()
    cancel_event = asyncio.Event()
    ctx = responder.new_context(turn_request, cancel_event, turn_id=client_turn_id)
    if not await _register_cancel_event(ctx.turn_id, cancel_event):
        raise ValidationError("turn id already in use", detail={"turn_id": ctx.turn_id})
    bind_turn_context(ctx.turn_id, ctx.conversation_id)

    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        prepared = await responder.prepare(
            ctx,
            credential=bearer_token(authorization),
            client_host=request.client.host if request.client else None,
        )
    except TurnCancelled:
        await _close_turn(responder, ctx)
        return Response(status_code=204, headers={"X-Turn-Id": ctx.turn_id})
    except BaseException:
        await _close_turn(responder, ctx)
        raise
    finally:
        watcher.cancel()

    async def event_source() -> AsyncIterator[str]:
        try:
            async for event in responder.stream(prepared):
                yield sse_frame(event)
        finally:
            await _close_turn(responder, ctx)

    # Runs even when the client leaves before the first frame is pulled
    cleanup = BackgroundTasks()
    cleanup.add_task(_close_turn, responder, ctx)
    headers = {
        "Cache-Control": "no-cache",
        "X-Accel-Buffering": "no",
        **prepared.response_headers(),
    }
    return StreamingResponse(
        event_source(), media_type="text/event-stream", headers=headers, background=cleanup
    )


@router.post("/turn/cancel", response_model=Envelope)
async def cancel_turn(body: TurnCancelRequest):
    cancelled = await _cancel_turn(body.turn_id)
    logger.info("turn_cancel_requested", turn_id=body.turn_id, cancelled=cancelled)
    message = "cancellation signalled" if cancelled else "turn not running"
    return Envelope(
        status="ok",
        data=TurnCancelResponse(turn_id=body.turn_id, cancelled=cancelled, message=message).model_dump(),
    )


@router.get("/state_pack", response_model=Envelope, dependencies=[Depends(require_admin)])
async def read_state_pack(conversation_id: str = Query("default", max_length=128)):
    if not CONVERSATION_ID_RE.match(conversation_id):
        raise ValidationError("invalid conversation_id", detail={"conversation_id": conversation_id})
    repository = get_runtime().repository
    summary = summarize_state_pack(repository.get(conversation_id))
    events = repository.events(conversation_id, limit=RECENT_EVENTS_LIMIT)
    return Envelope(
        status="ok",
        data=StatePackSummaryResponse(
            conversation_id=conversation_id, summary=summary, recent_events=events
        ).model_dump(),
    )


@router.get("/retrieval_trace", response_model=Envelope, dependencies=[Depends(require_admin)])
async def retrieval_trace(
    turn_id: Optional[str] = Query(None, max_length=128),
    limit: int = Query(50, ge=1, le=500),
):
    records = get_runtime().telemetry.retrieval_trace(turn_id=turn_id, limit=limit)
    return Envelope(
        status="ok", data=RetrievalTraceResponse(records=records, count=len(records)).model_dump()
    )


@router.get("/canon_ops", response_model=Envelope, dependencies=[Depends(require_admin)])
async def canon_ops_summary():
    overlay = CanonOverlay.from_document(get_runtime().repository.load_canon_ops())
    return Envelope(status="ok", data=overlay.summary())


@router.get("/canon_ops/collisions", response_model=Envelope, dependencies=[Depends(require_admin)])
async def canon_ops_collisions():
    overlay = CanonOverlay.from_document(get_runtime().repository.load_canon_ops())
    return Envelope(
        status="ok",
        data={"count": len(overlay.collisions), "collisions": overlay.collisions},
    )


@router.get("/fs/list", response_model=Envelope, dependencies=[Depends(require_admin)])
async def fs_list(root: str = Query(..., max_length=64), path: str = Query(".", max_length=1024)):
    entries = get_runtime().lister.list(root, path)
    return Envelope(
        status="ok",
        data=DirectoryListResponse(
            root=root, path=path, entries=[entry.to_dict() for entry in entries]
        ).model_dump(),
    )


@router.get("/vs_inventory", response_model=Envelope, dependencies=[Depends(require_admin)])
async def vs_inventory(
    store: str = Query(..., max_length=128),
    after: Optional[str] = Query(None, max_length=128),
    limit: int = Query(20, ge=1, le=100),
):
    runtime = get_runtime()
    try:
        kind: Optional[StoreKind] = StoreKind(store.lower())
    except ValueError:
        kind = None
    if kind is not None:
        store_id = runtime.router.stores.get(kind)
        if not store_id:
            raise ConfigurationError(
                f"the {kind.value} store is not configured", detail={"store_kind": kind.value}
            )
    elif store in runtime.router.configured_store_ids():
        store_id = store
    else:
        raise ValidationError("unknown store", detail={"store": store})
    page = await runtime.backend.list_documents(store_id, after=after, limit=limit)
    return Envelope(
        status="ok",
        data=InventoryResponse(store_id=store_id, **page.to_dict()).model_dump(),
    )


@router.post("/punctuate", response_model=Envelope)
async def punctuate(body: PunctuateRequest):
    normalizer = get_runtime().normalizer
    text = await normalizer.punctuate(body.text)
    return Envelope(
        status="ok",
        data=PunctuateResponse(
            text=text,
            chars_in=len(body.text),
            clipped=len(body.text) > normalizer.max_chars,
        ).model_dump(),
    )
