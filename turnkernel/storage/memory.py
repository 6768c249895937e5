from __future__ import annotations

import asyncio
import copy
import threading
from typing import Any, Dict, List, Optional

from turnkernel.logging import get_logger
from turnkernel.storage.repository import ConversationLocks


class MemoryRepository:
    """In-process repository used by tests and ephemeral deployments."""

    def __init__(self, canon_ops: Optional[Dict[str, Any]] = None) -> None:
        self.logger = get_logger(__name__)
        self.packs: Dict[str, Dict[str, Any]] = {}
        self.event_log: Dict[str, List[Dict[str, Any]]] = {}
        self.canon_ops = canon_ops
        self.put_count = 0
        self._data_lock = threading.RLock()
        self._locks = ConversationLocks()

    def get(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            pack = self.packs.get(conversation_id)
            return copy.deepcopy(pack) if pack is not None else None

    def put(self, conversation_id: str, pack: Dict[str, Any]) -> None:
        with self._data_lock:
            self.packs[conversation_id] = copy.deepcopy(pack)
            self.put_count += 1

    def append(self, conversation_id: str, entry: Dict[str, Any]) -> None:
        with self._data_lock:
            self.event_log.setdefault(conversation_id, []).append(copy.deepcopy(entry))

    def events(self, conversation_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._data_lock:
            entries = list(self.event_log.get(conversation_id, []))
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return copy.deepcopy(entries)

    def load_canon_ops(self) -> Optional[Dict[str, Any]]:
        with self._data_lock:
            return copy.deepcopy(self.canon_ops)

    def lock(self, conversation_id: str) -> asyncio.Lock:
        return self._locks.get(conversation_id)
