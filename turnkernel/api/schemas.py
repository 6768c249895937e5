from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from turnkernel.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "validation_error",
    "payload_too_large",
    "mode_conflict",
    "configuration_error",
    "tool_loop_exceeded",
    "upstream_error",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """JSON envelope for every non-streaming response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class TurnCancelRequest(BaseModel):
    """Request to cancel an in-progress turn."""

    turn_id: str = Field(..., min_length=1, max_length=128)


class TurnCancelResponse(BaseModel):
    turn_id: str
    cancelled: bool = Field(..., description="Whether a running turn was signalled")
    message: str


class PunctuateRequest(BaseModel):
    text: str = Field(..., max_length=200_000)


class PunctuateResponse(BaseModel):
    text: str
    chars_in: int
    clipped: bool


class StatePackSummaryResponse(BaseModel):
    conversation_id: str
    summary: Dict[str, Any]
    recent_events: List[Dict[str, Any]] = Field(default_factory=list)


class RetrievalTraceResponse(BaseModel):
    records: List[Dict[str, Any]]
    count: int


class DirectoryListResponse(BaseModel):
    root: str
    path: str
    entries: List[Dict[str, Any]]


class InventoryResponse(BaseModel):
    store_id: str
    data: List[Dict[str, Any]]
    has_more: bool
    after: Optional[str] = None
