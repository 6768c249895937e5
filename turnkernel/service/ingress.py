"""Ingress validation for turn requests.

Everything here runs before any model or retrieval call. A request that
fails validation costs nothing downstream.
"""

from __future__ import annotations

import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from turnkernel.logging import get_logger
from turnkernel.service.errors import PayloadTooLarge, TurnCancelled, ValidationError

logger = get_logger(__name__)

# Wire name -> attribute name
TOOLS_STATE_KEYS: Dict[str, str] = {
    "fileSearchEnabled": "file_search",
    "webSearchEnabled": "web_search",
    "functionsEnabled": "functions",
    "googleIntegrationEnabled": "google_integration",
    "mcpEnabled": "mcp",
    "codeInterpreterEnabled": "code_interpreter",
}

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off", ""}

CONVERSATION_ID_RE = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")
DEFAULT_CONVERSATION_ID = "default"


def coerce_flag(value: Any) -> bool:
    """Coerce a client-supplied flag to a real boolean.

    Accepts booleans, 0/1 and the usual string spellings. Anything else is
    rejected rather than guessed.
    """
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    raise ValueError(f"cannot interpret {value!r} as a boolean")


@dataclass(frozen=True)
class ToolsState:
    file_search: bool = False
    web_search: bool = False
    functions: bool = False
    google_integration: bool = False
    mcp: bool = False
    code_interpreter: bool = False

    @classmethod
    def from_mapping(cls, raw: Optional[Dict[str, Any]]) -> "ToolsState":
        if raw is None:
            return cls()
        if not isinstance(raw, dict):
            raise ValueError("toolsState must be an object")
        unknown = sorted(set(raw) - set(TOOLS_STATE_KEYS))
        if unknown:
            raise ValueError(f"unknown toolsState keys: {', '.join(unknown)}")
        values = {TOOLS_STATE_KEYS[key]: coerce_flag(value) for key, value in raw.items()}
        return cls(**values)

    def enabled(self, wire_key: str) -> bool:
        return getattr(self, TOOLS_STATE_KEYS[wire_key])

    def to_dict(self) -> Dict[str, bool]:
        return {key: getattr(self, attr) for key, attr in TOOLS_STATE_KEYS.items()}


@dataclass(frozen=True)
class TurnMessage:
    role: Literal["developer", "user", "assistant"]
    content: str


@dataclass(frozen=True)
class TurnRequest:
    """An accepted turn. Immutable once validated."""

    conversation_id: str
    messages: Tuple[TurnMessage, ...]
    tools_state: ToolsState
    header_signals: Tuple[str, ...] = field(default=())

    @property
    def last_user_text(self) -> str:
        for message in reversed(self.messages):
            if message.role == "user":
                return message.content
        return ""


def _flatten_content(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: List[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
            elif isinstance(part, dict) and isinstance(part.get("content"), str):
                parts.append(part["content"])
            else:
                raise ValueError("message content parts must be strings or {text} objects")
        return "\n".join(parts)
    raise ValueError("message content must be a string or a list of parts")


class _MessageIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: str
    content: Any

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: str) -> str:
        role = (value or "").strip().lower()
        if role == "system":
            return "developer"
        if role not in {"developer", "user", "assistant"}:
            raise ValueError(f"unrecognized role '{value}'")
        return role

    @field_validator("content")
    @classmethod
    def _validate_content(cls, value: Any) -> str:
        return _flatten_content(value).strip()


class _TurnPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    conversation_id: str = Field(DEFAULT_CONVERSATION_ID, alias="conversationId")
    messages: List[_MessageIn]
    tools_state: Optional[Dict[str, Any]] = Field(None, alias="toolsState")

    @field_validator("conversation_id")
    @classmethod
    def _validate_conversation_id(cls, value: str) -> str:
        if not CONVERSATION_ID_RE.match(value or ""):
            raise ValueError("conversation_id must match [A-Za-z0-9_.-]{1,128}")
        return value


class IngressValidator:
    """Shape and size checks for incoming turn requests."""

    def __init__(self, *, max_messages: int, max_message_chars: int, max_body_bytes: int) -> None:
        self.max_messages = max_messages
        self.max_message_chars = max_message_chars
        self.max_body_bytes = max_body_bytes

    def parse_body(self, raw: bytes) -> Any:
        if len(raw) > self.max_body_bytes:
            raise PayloadTooLarge(
                "request body too large",
                detail={"max_bytes": self.max_body_bytes, "got_bytes": len(raw)},
            )
        try:
            return json.loads(raw.decode("utf-8-sig") or "null")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError("request body is not valid JSON", detail={"error": str(exc)}) from exc

    def validate(self, payload: Any, *, header_signals: Tuple[str, ...] = ()) -> TurnRequest:
        if not isinstance(payload, dict):
            raise ValidationError("request body must be a JSON object")
        try:
            parsed = _TurnPayload.model_validate(payload)
        except PydanticValidationError as exc:
            errors = [
                {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
                for err in exc.errors()
            ]
            raise ValidationError("invalid turn request", detail={"errors": errors}) from exc

        if not parsed.messages:
            raise ValidationError("messages must not be empty")
        if len(parsed.messages) > self.max_messages:
            raise ValidationError(
                "too many messages",
                detail={"max_messages": self.max_messages, "got": len(parsed.messages)},
            )
        for index, message in enumerate(parsed.messages):
            if len(message.content) > self.max_message_chars:
                raise ValidationError(
                    "message too long",
                    detail={"index": index, "max_chars": self.max_message_chars},
                )
        messages = tuple(
            TurnMessage(role=m.role, content=m.content) for m in parsed.messages if m.content
        )
        if not any(m.role == "user" for m in messages):
            raise ValidationError("at least one non-empty user message is required")

        try:
            tools_state = ToolsState.from_mapping(parsed.tools_state)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "toolsState"}) from exc

        return TurnRequest(
            conversation_id=parsed.conversation_id,
            messages=messages,
            tools_state=tools_state,
            header_signals=tuple(header_signals),
        )


def ensure_not_cancelled(cancel_event: Optional[asyncio.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise TurnCancelled()
