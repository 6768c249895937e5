from __future__ import annotations

import copy
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

STATE_PACK_SCHEMA_VERSION = "0.1"
QUEUE_KEYS = ("now", "next", "parked")

# Limits for the copy of the pack that goes into the prompt
PROMPT_EVENTS_TAIL = 30
PROMPT_QUEUE_TAIL = 50
PROMPT_NOTES_TAIL = 2000


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class EventLogEntry:
    """One append-only record in a conversation's event log."""

    turn_id: str
    stage: str
    outcome: str
    ts: str = field(default_factory=utc_now_iso)
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def default_state_pack(conversation_id: str) -> Dict[str, Any]:
    now = utc_now_iso()
    return {
        "meta": {
            "schema_version": STATE_PACK_SCHEMA_VERSION,
            "session_id": conversation_id,
            "created_at": now,
            "updated_at": now,
        },
        "bindings": {"vector_store_id": None, "invocation_sha": None, "model": None},
        "canon": {"index": "CI-1", "active": []},
        "queue": {"now": [], "next": [], "parked": []},
        "decisions": [],
        "last_turn": None,
        "events": [],
        "notes": "",
        "updated_at": now,
        "mode": "NORMAL",
    }


def normalize_state_pack(pack: Dict[str, Any]) -> Dict[str, Any]:
    """Fold legacy queue keys of a persisted pack into the canonical lists, in place."""
    queue = pack.get("queue")
    if not isinstance(queue, dict):
        return pack

    def fold(source: str, target: str) -> None:
        items = queue.get(source)
        if not isinstance(items, list) or not items:
            return
        if not isinstance(queue.get(target), list):
            queue[target] = []
        queue[target].extend(items)
        del queue[source]

    fold("now_add", "now")
    fold("next_add", "next")
    fold("parked_add", "parked")
    fold("pending_inputs", "parked")
    queue.pop("now_remove", None)
    return pack


def stamp_updated(pack: Dict[str, Any]) -> None:
    now = utc_now_iso()
    meta = pack.setdefault("meta", {})
    if isinstance(meta, dict):
        meta["updated_at"] = now
    pack["updated_at"] = now


def prompt_state_pack(pack: Dict[str, Any]) -> Dict[str, Any]:
    """Return a bounded copy of ``pack`` suitable for the model context."""
    queue = pack.get("queue") if isinstance(pack.get("queue"), dict) else {}
    events = pack.get("events") if isinstance(pack.get("events"), list) else []
    notes = pack.get("notes") if isinstance(pack.get("notes"), str) else ""
    return {
        "meta": copy.deepcopy(pack.get("meta") or {}),
        "bindings": copy.deepcopy(pack.get("bindings") or {}),
        "canon": copy.deepcopy(pack.get("canon") or {}),
        "updated_at": pack.get("updated_at") or "",
        "mode": pack.get("mode") or "",
        "queue": {
            key: copy.deepcopy(queue.get(key)[-PROMPT_QUEUE_TAIL:])
            if isinstance(queue.get(key), list)
            else []
            for key in QUEUE_KEYS
        },
        "events": copy.deepcopy(events[-PROMPT_EVENTS_TAIL:]),
        "notes_tail": notes[-PROMPT_NOTES_TAIL:],
    }


def summarize_state_pack(pack: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if pack is None:
        return {"exists": False}
    queue = pack.get("queue") if isinstance(pack.get("queue"), dict) else {}
    notes = pack.get("notes") if isinstance(pack.get("notes"), str) else ""
    events = pack.get("events") if isinstance(pack.get("events"), list) else []
    return {
        "exists": True,
        "updated_at": pack.get("updated_at"),
        "mode": pack.get("mode"),
        "queue_counts": {
            key: len(queue.get(key)) if isinstance(queue.get(key), list) else 0
            for key in QUEUE_KEYS
        },
        "events_count": len(events),
        "notes_tail": notes[-400:],
    }
