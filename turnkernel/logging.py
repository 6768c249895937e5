from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

_TRUTHY = {"1", "true", "yes", "on"}

# Fields that may carry credentials; values are masked before rendering
_SECRET_FIELD_MARKERS = ("token", "authorization", "api_key", "secret", "credential")

# Fields that may carry model output or user text
_PAYLOAD_FIELDS = frozenset({"delta", "text", "content", "raw", "notes"})

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller's id (usually ``X-Request-ID``) or mint a new one."""
    cid = (correlation_id or "").strip()[:128] or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask_secrets(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in event_dict.items():
        if not isinstance(value, str) or not value:
            continue
        if any(marker in key.lower() for marker in _SECRET_FIELD_MARKERS):
            event_dict[key] = "***" + value[-2:] if len(value) > 6 else "***"
    return event_dict


def _make_payload_clipper(limit: int):
    def _clip_payload(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        for key in _PAYLOAD_FIELDS.intersection(event_dict):
            value = event_dict[key]
            if isinstance(value, str) and len(value) > limit:
                event_dict[key] = f"{value[:limit]}... [{len(value)} chars]"
        return event_dict

    return _clip_payload


def configure_logging(
    *,
    level: str = "INFO",
    json_output: bool = True,
    payload_preview: int = 200,
) -> None:
    """Install the structlog pipeline shared by every module.

    JSON lines in deployments; a colored console renderer when
    ``json_output`` is False.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _mask_secrets,
        _make_payload_clipper(payload_preview),
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=(
        os.getenv("LOG_JSON", "true").lower() in _TRUTHY
        and os.getenv("LOG_DEV_MODE", "false").lower() not in _TRUTHY
    ),
    payload_preview=int(os.getenv("LOG_PAYLOAD_PREVIEW", "200") or 200),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_turn_context(turn_id: str, conversation_id: str) -> None:
    """Attach turn identifiers to every log line emitted in this context."""
    structlog.contextvars.bind_contextvars(turn_id=turn_id, conversation_id=conversation_id)


def clear_turn_context() -> None:
    structlog.contextvars.unbind_contextvars("turn_id", "conversation_id")


# Never echoed to clients: host paths, credentials, tracebacks, writeback markers
_CLIENT_MESSAGE_SCRUBBERS = [
    re.compile(r"(?:/(?:home|root|srv|var|tmp|opt|etc|usr)/|[A-Za-z]:\\)\S+"),
    re.compile(r"(?i)\bbearer\s+\S+"),
    re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"),
    re.compile(r"(?i)(api[_-]?key|token|secret)\s*[:=]\s*\S+"),
    re.compile(r"(?i)traceback \(most recent call last\)"),
    re.compile(r"(?:BEGIN|END)_WRITEBACK_JSON"),
]

MAX_CLIENT_MESSAGE_CHARS = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    if not isinstance(error, str) or not error:
        return "An error occurred"
    for pattern in _CLIENT_MESSAGE_SCRUBBERS:
        error = pattern.sub(replacement, error)
    if len(error) > MAX_CLIENT_MESSAGE_CHARS:
        error = error[: MAX_CLIENT_MESSAGE_CHARS - 3] + "..."
    return error
