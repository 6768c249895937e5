from __future__ import annotations

import asyncio
import threading
from typing import Any, Dict, List, Optional, Protocol


class StateRepository(Protocol):
    """Persistence seen by the turn pipeline, keyed by conversation id.

    The pipeline never touches files directly; swapping the repository
    swaps the storage medium.
    """

    def get(self, conversation_id: str) -> Optional[Dict[str, Any]]: ...

    def put(self, conversation_id: str, pack: Dict[str, Any]) -> None: ...

    def append(self, conversation_id: str, entry: Dict[str, Any]) -> None: ...

    def events(self, conversation_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]: ...

    def load_canon_ops(self) -> Optional[Dict[str, Any]]: ...

    def lock(self, conversation_id: str) -> asyncio.Lock: ...


class ConversationLocks:
    """One asyncio lock per conversation id, created on first use."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._guard = threading.Lock()

    def get(self, conversation_id: str) -> asyncio.Lock:
        with self._guard:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[conversation_id] = lock
            return lock
