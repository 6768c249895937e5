from __future__ import annotations

from typing import Any, Dict, Optional


class StorageError(Exception):
    """Raised when persisted state cannot be read or written."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CorruptStateError(StorageError):
    """Persisted JSON exists but does not parse into the expected shape."""


__all__ = ["StorageError", "CorruptStateError"]
