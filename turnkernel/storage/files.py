from __future__ import annotations

import asyncio
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from turnkernel.logging import get_logger
from turnkernel.service.fs import safe_join
from turnkernel.storage.errors import CorruptStateError, StorageError
from turnkernel.storage.repository import ConversationLocks

CANON_OPS_FILENAME = "canon_ops.json"


def _strip_bom(text: str) -> str:
    return text[1:] if text.startswith("\ufeff") else text


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write ``payload`` to ``path`` through a temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, ensure_ascii=False)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except FileNotFoundError:
            pass
        raise


class JsonFileRepository:
    """File-backed repository.

    Layout under ``root``::

        packs/<conversation_id>.json     state pack, read fully, replaced atomically
        events/<conversation_id>.jsonl   append-only event log
        canon_ops.json                   canon overlay document
    """

    def __init__(self, root: str | Path) -> None:
        self.logger = get_logger(__name__)
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._packs_dir = self.root / "packs"
        self._events_dir = self.root / "events"
        self._io_lock = threading.RLock()
        self._locks = ConversationLocks()

    def _pack_path(self, conversation_id: str) -> Path:
        return safe_join(self._packs_dir, f"{conversation_id}.json")

    def _events_path(self, conversation_id: str) -> Path:
        return safe_join(self._events_dir, f"{conversation_id}.jsonl")

    def _read_json(self, path: Path) -> Optional[Any]:
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"failed to read {path.name}", {"error": str(exc)}) from exc
        try:
            return json.loads(_strip_bom(raw).lstrip())
        except json.JSONDecodeError as exc:
            raise CorruptStateError(f"{path.name} is not valid JSON", {"error": str(exc)}) from exc

    def get(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        with self._io_lock:
            data = self._read_json(self._pack_path(conversation_id))
        if data is not None and not isinstance(data, dict):
            raise CorruptStateError("state pack must be a JSON object", {"conversation_id": conversation_id})
        return data

    def put(self, conversation_id: str, pack: Dict[str, Any]) -> None:
        with self._io_lock:
            write_json_atomic(self._pack_path(conversation_id), pack)

    def append(self, conversation_id: str, entry: Dict[str, Any]) -> None:
        path = self._events_path(conversation_id)
        line = json.dumps(entry, ensure_ascii=False, default=str)
        with self._io_lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")

    def events(self, conversation_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        path = self._events_path(conversation_id)
        with self._io_lock:
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except FileNotFoundError:
                return []
        entries: List[Dict[str, Any]] = []
        for line in lines:
            if not line.strip():
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                self.logger.warning("event_log_line_skipped", conversation_id=conversation_id)
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    def load_canon_ops(self) -> Optional[Dict[str, Any]]:
        with self._io_lock:
            data = self._read_json(self.root / CANON_OPS_FILENAME)
        if data is not None and not isinstance(data, dict):
            raise CorruptStateError("canon ops document must be a JSON object")
        return data

    def lock(self, conversation_id: str) -> asyncio.Lock:
        return self._locks.get(conversation_id)
