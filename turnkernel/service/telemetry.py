"""Append-only trace records for offline audit.

Three streams are written:

- ``retrieval_tap.jsonl``: one record per retrieval call.
- ``stream_tap.jsonl``: stream lifecycle (start, end, error) with chunk counts.
- the per-conversation event log, through the state repository.

Record fields are stable so external inspection tools can parse them
without negotiation. Every write is best-effort; a failed write marks the
turn degraded and never raises into the pipeline.
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from turnkernel.logging import get_logger
from turnkernel.storage.models import EventLogEntry, utc_now_iso
from turnkernel.storage.repository import StateRepository

logger = get_logger(__name__)

RETRIEVAL_TAP_FILENAME = "retrieval_tap.jsonl"
STREAM_TAP_FILENAME = "stream_tap.jsonl"
TAP_SCHEMA_VERSION = 1


class JsonlTap:
    """A size-rotated JSONL file that only ever grows by whole lines."""

    def __init__(self, path: Path, *, max_bytes: int) -> None:
        self.path = Path(path)
        self.max_bytes = max_bytes
        self._lock = threading.Lock()

    def _rotate_if_needed(self) -> None:
        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return
        if size >= self.max_bytes:
            os.replace(self.path, self.path.with_name(self.path.name + ".1"))

    def append(self, record: Dict[str, Any]) -> bool:
        try:
            line = json.dumps(record, ensure_ascii=False, default=str)
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._rotate_if_needed()
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            return True
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("tap_write_failed", tap=self.path.name, error=str(exc))
            return False

    def tail(self, limit: int, *, turn_id: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            try:
                lines = self.path.read_text(encoding="utf-8").splitlines()
            except FileNotFoundError:
                return []
        records: List[Dict[str, Any]] = []
        for line in reversed(lines):
            if len(records) >= limit:
                break
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                continue
            if turn_id is not None and record.get("turn_id") != turn_id:
                continue
            records.append(record)
        records.reverse()
        return records


class TelemetryRecorder:
    def __init__(self, taps_dir: str | Path, *, max_bytes: int, repository: StateRepository) -> None:
        taps_path = Path(taps_dir)
        self.retrieval_tap = JsonlTap(taps_path / RETRIEVAL_TAP_FILENAME, max_bytes=max_bytes)
        self.stream_tap = JsonlTap(taps_path / STREAM_TAP_FILENAME, max_bytes=max_bytes)
        self.repository = repository

    def for_turn(self, turn_id: str, conversation_id: str) -> "TurnTelemetry":
        return TurnTelemetry(self, turn_id, conversation_id)

    def retrieval_trace(self, *, turn_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        return self.retrieval_tap.tail(limit, turn_id=turn_id)


class TurnTelemetry:
    """Telemetry scoped to one turn; remembers whether any write failed."""

    def __init__(self, recorder: TelemetryRecorder, turn_id: str, conversation_id: str) -> None:
        self._recorder = recorder
        self.turn_id = turn_id
        self.conversation_id = conversation_id
        self.degraded = False
        self.failed_writes: List[str] = []

    def _mark(self, ok: bool, what: str) -> bool:
        if not ok:
            self.degraded = True
            self.failed_writes.append(what)
        return ok

    def retrieval(
        self,
        *,
        store_id: str,
        query: str,
        result_count: int,
        enforced_count: int,
        collisions: List[Dict[str, Any]],
        mode: str,
        error: Optional[str] = None,
    ) -> bool:
        record = {
            "v": TAP_SCHEMA_VERSION,
            "ts": utc_now_iso(),
            "turn_id": self.turn_id,
            "conversation_id": self.conversation_id,
            "mode": mode,
            "store_id": store_id,
            "query_chars": len(query),
            "result_count": result_count,
            "enforced_count": enforced_count,
            "collisions": collisions,
            "error": error,
        }
        return self._mark(self._recorder.retrieval_tap.append(record), "retrieval_tap")

    def stream(self, phase: str, **fields: Any) -> bool:
        record = {
            "v": TAP_SCHEMA_VERSION,
            "ts": utc_now_iso(),
            "turn_id": self.turn_id,
            "conversation_id": self.conversation_id,
            "phase": phase,
            **fields,
        }
        return self._mark(self._recorder.stream_tap.append(record), "stream_tap")

    def event(self, stage: str, outcome: str, **detail: Any) -> bool:
        entry = EventLogEntry(turn_id=self.turn_id, stage=stage, outcome=outcome, detail=detail)
        try:
            self._recorder.repository.append(self.conversation_id, entry.to_dict())
            ok = True
        except Exception as exc:
            logger.warning("event_log_write_failed", stage=stage, error=str(exc))
            ok = False
        return self._mark(ok, "event_log")
