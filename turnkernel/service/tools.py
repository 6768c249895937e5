"""Locally executed tools for the bounded tool loop.

Tool names form a closed enumeration. Whatever spelling the model emits is
resolved through an alias table built once at import; a name that does not
resolve, or resolves to a capability the turn is not authorized for, fails
the turn instead of being skipped.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from jsonschema import Draft202012Validator

from turnkernel.logging import get_logger
from turnkernel.service.canon_ops import CanonEnforcer
from turnkernel.service.errors import AuthError, AuthReason, ServiceError, ValidationError
from turnkernel.service.fs import DirectoryLister, PathTraversalError
from turnkernel.service.ingress import ToolsState
from turnkernel.service.model_backend import ToolCall
from turnkernel.service.retrieval import RetrievalBackend
from turnkernel.service.router import RetrievalPlan, StoreKind
from turnkernel.service.telemetry import TurnTelemetry
from turnkernel.storage.models import default_state_pack, prompt_state_pack
from turnkernel.storage.repository import StateRepository

logger = get_logger(__name__)

MAX_TOOL_OUTPUT_CHARS = 12000


class ToolName(str, Enum):
    FILE_SEARCH = "file_search"
    FS_LIST = "fs_list"
    VS_INVENTORY = "vs_inventory"
    STATE_PACK_READ = "state_pack_read"


# ToolsState wire key that authorizes each tool
TOOL_CAPABILITY: Dict[ToolName, str] = {
    ToolName.FILE_SEARCH: "fileSearchEnabled",
    ToolName.FS_LIST: "functionsEnabled",
    ToolName.VS_INVENTORY: "functionsEnabled",
    ToolName.STATE_PACK_READ: "functionsEnabled",
}

TOOL_ALIASES: Dict[str, ToolName] = {
    "fs.list": ToolName.FS_LIST,
    "fs-list": ToolName.FS_LIST,
    "list_dir": ToolName.FS_LIST,
    "list_directory": ToolName.FS_LIST,
    "vs.inventory": ToolName.VS_INVENTORY,
    "vs-inventory": ToolName.VS_INVENTORY,
    "store_inventory": ToolName.VS_INVENTORY,
    "file.search": ToolName.FILE_SEARCH,
    "file-search": ToolName.FILE_SEARCH,
    "search": ToolName.FILE_SEARCH,
    "state.read": ToolName.STATE_PACK_READ,
    "state_pack": ToolName.STATE_PACK_READ,
    "state-pack-read": ToolName.STATE_PACK_READ,
}

_NAME_CLEAN_RE = re.compile(r"\s+")


def _build_lookup() -> Dict[str, ToolName]:
    lookup = {tool.value: tool for tool in ToolName}
    for alias, tool in TOOL_ALIASES.items():
        lookup[alias.lower()] = tool
    return lookup


_LOOKUP = _build_lookup()


def resolve_tool_name(raw: str) -> Optional[ToolName]:
    return _LOOKUP.get(_NAME_CLEAN_RE.sub("", raw or "").lower())


TOOL_SCHEMAS: Dict[ToolName, Dict[str, Any]] = {
    ToolName.FILE_SEARCH: {
        "type": "object",
        "properties": {
            "query": {"type": "string", "minLength": 1},
            "max_results": {"type": "integer", "minimum": 1, "maximum": 50},
        },
        "required": ["query"],
        "additionalProperties": False,
    },
    ToolName.FS_LIST: {
        "type": "object",
        "properties": {
            "root": {"type": "string"},
            "path": {"type": "string"},
        },
        "required": ["root"],
        "additionalProperties": False,
    },
    ToolName.VS_INVENTORY: {
        "type": "object",
        "properties": {
            "store": {"type": "string"},
            "after": {"type": "string"},
            "limit": {"type": "integer", "minimum": 1, "maximum": 100},
        },
        "required": ["store"],
        "additionalProperties": False,
    },
    ToolName.STATE_PACK_READ: {
        "type": "object",
        "properties": {},
        "additionalProperties": False,
    },
}

TOOL_DESCRIPTIONS: Dict[ToolName, str] = {
    ToolName.FILE_SEARCH: "Search the retrieval stores selected for this turn.",
    ToolName.FS_LIST: "List a directory under an allow-listed root (repo, turnkernel, tests, docs, state, stores).",
    ToolName.VS_INVENTORY: "List indexed documents of a store. store is canon, threads, manifest or a store id.",
    ToolName.STATE_PACK_READ: "Read the bounded view of this conversation's state pack.",
}

_VALIDATORS = {tool: Draft202012Validator(schema) for tool, schema in TOOL_SCHEMAS.items()}


def tool_definitions(effective: ToolsState) -> List[Dict[str, Any]]:
    """Function declarations for every tool the effective state authorizes."""
    return [
        {
            "type": "function",
            "function": {
                "name": tool.value,
                "description": TOOL_DESCRIPTIONS[tool],
                "parameters": TOOL_SCHEMAS[tool],
            },
        }
        for tool in ToolName
        if effective.enabled(TOOL_CAPABILITY[tool])
    ]


def authorize_calls(calls: Sequence[ToolCall], effective: ToolsState) -> List[ToolName]:
    """Resolve every call or fail the turn; nothing runs if any call is refused."""
    resolved: List[ToolName] = []
    for call in calls:
        tool = resolve_tool_name(call.name)
        if tool is None:
            logger.warning("tool_call_unknown", tool=call.name)
            raise AuthError(
                f"tool '{call.name}' is not a known capability",
                reason=AuthReason.INVALID,
                detail={"tool": call.name},
            )
        capability = TOOL_CAPABILITY[tool]
        if not effective.enabled(capability):
            logger.warning("tool_call_unauthorized", tool=tool.value, capability=capability)
            raise AuthError(
                f"tool '{tool.value}' is not authorized for this turn",
                reason=AuthReason.INVALID,
                detail={"tool": tool.value, "capability": capability},
            )
        resolved.append(tool)
    return resolved


def validate_arguments(tool: ToolName, arguments: Any) -> Optional[List[str]]:
    errors = sorted(_VALIDATORS[tool].iter_errors(arguments), key=lambda e: list(e.path))
    if errors:
        return [e.message for e in errors]
    return None


@dataclass
class ToolContext:
    """Everything a tool may touch during one turn."""

    conversation_id: str
    plan: RetrievalPlan
    backend: RetrievalBackend
    enforcer: CanonEnforcer
    lister: DirectoryLister
    repository: StateRepository
    telemetry: TurnTelemetry
    stores: Dict[StoreKind, Optional[str]] = field(default_factory=dict)


@dataclass
class ToolOutcome:
    call_id: str
    tool: str
    ok: bool
    output: Dict[str, Any]

    def content(self) -> str:
        text = json.dumps(self.output, ensure_ascii=False, default=str)
        if len(text) > MAX_TOOL_OUTPUT_CHARS:
            text = text[:MAX_TOOL_OUTPUT_CHARS] + "...(truncated)"
        return text


class ToolExecutor:
    """Runs one iteration's tool calls concurrently with a bounded worker count."""

    def __init__(self, context: ToolContext, *, workers: int, timeout_seconds: float) -> None:
        self.context = context
        self.timeout_seconds = timeout_seconds
        self._semaphore = asyncio.Semaphore(max(1, workers))
        self._handlers: Dict[ToolName, Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]] = {
            ToolName.FILE_SEARCH: self._file_search,
            ToolName.FS_LIST: self._fs_list,
            ToolName.VS_INVENTORY: self._vs_inventory,
            ToolName.STATE_PACK_READ: self._state_pack_read,
        }
        self.executed: List[str] = []

    async def run_iteration(
        self, calls: Sequence[ToolCall], effective: ToolsState
    ) -> List[ToolOutcome]:
        tools = authorize_calls(calls, effective)
        tasks = [asyncio.ensure_future(self._run_one(call, tool)) for call, tool in zip(calls, tools)]
        # Barrier: every call finishes before anything is resubmitted
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _run_one(self, call: ToolCall, tool: ToolName) -> ToolOutcome:
        errors = validate_arguments(tool, call.arguments)
        if errors:
            logger.info("tool_arguments_invalid", tool=tool.value, errors=errors)
            return ToolOutcome(call.id, tool.value, False, {"error": "invalid_arguments", "details": errors})
        async with self._semaphore:
            self.executed.append(tool.value)
            try:
                output = await asyncio.wait_for(
                    self._handlers[tool](dict(call.arguments)), timeout=self.timeout_seconds
                )
            except asyncio.TimeoutError:
                logger.warning("tool_timeout", tool=tool.value, timeout=self.timeout_seconds)
                return ToolOutcome(call.id, tool.value, False, {"error": "timeout"})
            except PathTraversalError as exc:
                return ToolOutcome(call.id, tool.value, False, {"error": "path_traversal", "message": str(exc)})
            except ServiceError as exc:
                logger.info("tool_failed", tool=tool.value, error_code=exc.error_code)
                return ToolOutcome(
                    call.id, tool.value, False, {"error": exc.error_code, "message": exc.message}
                )
        logger.info("tool_executed", tool=tool.value)
        return ToolOutcome(call.id, tool.value, True, output)

    async def _file_search(self, args: Dict[str, Any]) -> Dict[str, Any]:
        ctx = self.context
        query = args["query"]
        hits = []
        for store_id in ctx.plan.store_ids:
            cap = ctx.plan.caps.get(store_id, 1)
            limit = min(cap, args.get("max_results", cap))
            raw = await ctx.backend.search(store_id, query, limit)
            enforced = ctx.enforcer.enforce(raw)
            ctx.telemetry.retrieval(
                store_id=store_id,
                query=query,
                result_count=len(raw),
                enforced_count=len(enforced.results),
                collisions=enforced.collisions,
                mode=ctx.plan.mode.value,
            )
            hits.extend(r.to_dict() for r in enforced.results)
        return {"mode": ctx.plan.mode.value, "results": hits}

    async def _fs_list(self, args: Dict[str, Any]) -> Dict[str, Any]:
        entries = self.context.lister.list(args["root"], args.get("path", "."))
        return {"root": args["root"], "path": args.get("path", "."), "entries": [e.to_dict() for e in entries]}

    async def _vs_inventory(self, args: Dict[str, Any]) -> Dict[str, Any]:
        store = args["store"]
        try:
            store_id = self.context.stores.get(StoreKind(store.lower()))
        except ValueError:
            store_id = store
        if not store_id or store_id not in self.context.stores.values():
            raise ValidationError("store is not configured", detail={"store": store})
        page = await self.context.backend.list_documents(
            store_id, after=args.get("after"), limit=args.get("limit", 20)
        )
        return {"store_id": store_id, **page.to_dict()}

    async def _state_pack_read(self, args: Dict[str, Any]) -> Dict[str, Any]:
        ctx = self.context
        pack = ctx.repository.get(ctx.conversation_id) or default_state_pack(ctx.conversation_id)
        return {"state_pack": prompt_state_pack(pack)}
