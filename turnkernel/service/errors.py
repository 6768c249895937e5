from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for turn-pipeline exceptions mapped to HTTP responses.

    Each exception class defines an HTTP ``status_code`` and a stable
    ``error_code`` that clients can match on:
    - validation_error (400)
    - mode_conflict (400)
    - configuration_error (400/500)
    - unauthorized (401)
    - not_found (404)
    - payload_too_large (413)
    - tool_loop_exceeded (500)
    - upstream_error (502)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed turn request (400)."""
    status_code = 400
    error_code = "validation_error"


class PayloadTooLarge(ValidationError):
    """Inbound body exceeds the configured ceiling (413)."""
    status_code = 413
    error_code = "payload_too_large"


class AuthReason(str, Enum):
    """Why an authorization check did not pass."""

    OK = "ok"
    NOT_CONFIGURED = "not_configured"
    MISSING = "missing"
    INVALID = "invalid"


class AuthError(ServiceError):
    """Tool or admin authorization failed (401)."""
    status_code = 401
    error_code = "unauthorized"

    def __init__(
        self,
        message: str,
        *,
        reason: AuthReason = AuthReason.INVALID,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        merged = {"reason": reason.value, **(detail or {})}
        super().__init__(message, status_code=status_code, detail=merged)
        self.reason = reason


class ModeConflict(ServiceError):
    """Canon-only and threads-only signals were sent together (400)."""
    status_code = 400
    error_code = "mode_conflict"


class ConfigurationError(ServiceError):
    """A store or credential required by the request is not configured.

    Defaults to 400 because the caller asked for a mode the deployment
    cannot serve; server-side misconfiguration passes ``status_code=500``.
    """
    status_code = 400
    error_code = "configuration_error"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ToolLoopExceeded(ServiceError):
    """Tool loop hit its iteration cap without a final answer (500)."""
    status_code = 500
    error_code = "tool_loop_exceeded"


class UpstreamProviderError(ServiceError):
    """Model or retrieval provider call failed after retries (502)."""
    status_code = 502
    error_code = "upstream_error"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class WritebackMalformed(Exception):
    """Writeback payload could not be parsed or failed schema checks.

    Never surfaces to the client; the turn still succeeds.
    """

    def __init__(self, status: str, error: str) -> None:
        super().__init__(f"{status}: {error}")
        self.status = status
        self.error = error


class TurnCancelled(Exception):
    """The client aborted the turn; nothing further may be emitted or persisted."""


__all__ = [
    "TurnCancelled",
    "ServiceError",
    "ValidationError",
    "PayloadTooLarge",
    "AuthReason",
    "AuthError",
    "ModeConflict",
    "ConfigurationError",
    "NotFoundError",
    "ToolLoopExceeded",
    "UpstreamProviderError",
    "ServerError",
    "WritebackMalformed",
]
