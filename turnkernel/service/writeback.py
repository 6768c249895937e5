"""Writeback envelopes: on-the-fly stripping, extraction and persistence.

The model may embed a JSON payload between ``BEGIN_WRITEBACK_JSON`` and
``END_WRITEBACK_JSON``. The client never sees it: ``WritebackStripper``
removes envelopes from the relay as chunks arrive, independent of whether
the payload later parses. Persistence happens once the full text is known.
"""

from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator

from turnkernel.logging import get_logger
from turnkernel.service.errors import WritebackMalformed
from turnkernel.storage.models import normalize_state_pack, stamp_updated
from turnkernel.storage.repository import StateRepository

logger = get_logger(__name__)

WB_START = "BEGIN_WRITEBACK_JSON"
WB_END = "END_WRITEBACK_JSON"

# Rich UI marker glyphs that leak into plain text
RICH_BLOCK_START = "\ue200"
RICH_BLOCK_END = "\ue201"
RICH_GLYPHS_RE = re.compile("[\ue200\ue201\ue202]")

EVENT_NOTES_PREVIEW = 800
ERROR_PREVIEW = 300

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")

WRITEBACK_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["writeback"],
    "properties": {
        "writeback": {
            "type": "object",
            "properties": {
                "events": {"type": "array"},
                "parked": {"type": "array"},
                "notes": {"type": "string"},
                "state_patch": {"type": ["object", "null"]},
            },
        }
    },
}

_validator = Draft202012Validator(WRITEBACK_SCHEMA)


def _held_prefix_len(text: str, markers: tuple[str, ...]) -> int:
    """Length of the longest suffix of ``text`` that could start a marker."""
    best = 0
    for marker in markers:
        for size in range(min(len(marker) - 1, len(text)), 0, -1):
            if text.endswith(marker[:size]):
                best = max(best, size)
                break
    return best


class WritebackStripper:
    """Incremental filter that keeps envelopes and rich glyph blocks out of the relay.

    Text that might be the start of a delimiter is held back until the next
    chunk decides it. An envelope that never closes is dropped at ``flush``.
    """

    NORMAL = "normal"
    ENVELOPE = "envelope"
    RICH_BLOCK = "rich_block"

    def __init__(self) -> None:
        self._buffer = ""
        self._state = self.NORMAL
        self.envelopes_seen = 0
        self.unterminated = False

    def feed(self, chunk: str) -> str:
        self._buffer += chunk
        out: List[str] = []
        while self._buffer:
            if self._state == self.NORMAL:
                positions = [
                    (self._buffer.find(marker), marker)
                    for marker in (WB_START, WB_END, RICH_BLOCK_START)
                ]
                found = [(pos, marker) for pos, marker in positions if pos != -1]
                if not found:
                    held = _held_prefix_len(self._buffer, (WB_START, WB_END))
                    cut = len(self._buffer) - held
                    out.append(self._buffer[:cut])
                    self._buffer = self._buffer[cut:]
                    break
                pos, marker = min(found)
                out.append(self._buffer[:pos])
                self._buffer = self._buffer[pos + len(marker):]
                if marker == WB_START:
                    self._state = self.ENVELOPE
                    self.envelopes_seen += 1
                elif marker == RICH_BLOCK_START:
                    self._state = self.RICH_BLOCK
                # A stray end marker is dropped on its own
            elif self._state == self.ENVELOPE:
                pos = self._buffer.find(WB_END)
                if pos == -1:
                    keep = _held_prefix_len(self._buffer, (WB_END,))
                    self._buffer = self._buffer[len(self._buffer) - keep:] if keep else ""
                    break
                self._buffer = self._buffer[pos + len(WB_END):]
                self._state = self.NORMAL
            else:
                pos = self._buffer.find(RICH_BLOCK_END)
                if pos == -1:
                    self._buffer = ""
                    break
                self._buffer = self._buffer[pos + len(RICH_BLOCK_END):]
                self._state = self.NORMAL
        return RICH_GLYPHS_RE.sub("", "".join(out))

    def flush(self) -> str:
        remainder = ""
        if self._state == self.NORMAL:
            remainder = RICH_GLYPHS_RE.sub("", self._buffer)
        else:
            self.unterminated = self._state == self.ENVELOPE
            if self.unterminated:
                logger.warning("writeback_envelope_unterminated")
        self._buffer = ""
        self._state = self.NORMAL
        return remainder


def strip_writeback_blocks(text: str) -> str:
    stripper = WritebackStripper()
    return stripper.feed(text or "") + stripper.flush()


@dataclass
class WritebackExtraction:
    status: str  # absent | invalid_json | ok
    value: Any = None
    error: Optional[str] = None


def extract_writeback(full_text: str) -> WritebackExtraction:
    """Parse the payload between the last end marker and the last start marker before it."""
    if not full_text:
        return WritebackExtraction("absent")
    end = full_text.rfind(WB_END)
    if end == -1:
        return WritebackExtraction("absent")
    start = full_text.rfind(WB_START, 0, end)
    if start == -1:
        return WritebackExtraction("absent")
    raw = _FENCE_RE.sub("", full_text[start + len(WB_START):end].strip()).lstrip("\ufeff")
    if not raw:
        return WritebackExtraction("invalid_json", error="empty_writeback_payload")
    try:
        return WritebackExtraction("ok", value=json.loads(raw))
    except json.JSONDecodeError as exc:
        return WritebackExtraction("invalid_json", error=str(exc)[:ERROR_PREVIEW])


def normalize_state_patch(patch: Any) -> Any:
    """Fold append-style queue keys of ``patch`` into canonical lists, in place."""
    if not isinstance(patch, dict):
        return patch
    queue = patch.get("queue")
    if not isinstance(queue, dict):
        return patch

    def fold(source: str, target: str) -> None:
        items = queue.get(source)
        if isinstance(items, list) and items:
            if not isinstance(queue.get(target), list):
                queue[target] = []
            queue[target] = [*queue[target], *items]
        queue.pop(source, None)

    fold("now_add", "now")
    fold("next_add", "next")
    fold("parked_add", "parked")
    fold("pending_inputs_add", "parked")
    fold("pending_inputs", "parked")
    queue.pop("now_remove", None)
    return patch


def apply_patch_append_arrays(target: Any, patch: Any) -> Any:
    """Deep merge where lists append, dicts recurse and anything else replaces."""
    if patch is None:
        return target
    if isinstance(target, list) and isinstance(patch, list):
        return [*target, *patch]
    if isinstance(target, dict) and isinstance(patch, dict):
        out = dict(target)
        for key, value in patch.items():
            out[key] = apply_patch_append_arrays(out.get(key), value)
        return out
    return copy.deepcopy(patch)


@dataclass
class ValidatedWriteback:
    writeback: Dict[str, Any]
    normalized_patch: Optional[Dict[str, Any]] = None


def validate_envelope(value: Any) -> ValidatedWriteback:
    errors = sorted(_validator.iter_errors(value), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        location = ".".join(str(p) for p in first.path) or "envelope"
        raise WritebackMalformed("invalid_schema", f"{location}: {first.message}"[:ERROR_PREVIEW])
    writeback = value["writeback"]
    patch = writeback.get("state_patch")
    normalized = normalize_state_patch(copy.deepcopy(patch)) if isinstance(patch, dict) else None
    return ValidatedWriteback(writeback=writeback, normalized_patch=normalized)


def apply_writeback(pack: Dict[str, Any], validated: ValidatedWriteback) -> Dict[str, Any]:
    """Return a new pack with ``validated`` applied: events, patch, parked, notes."""
    updated = copy.deepcopy(pack)
    wb = validated.writeback
    if isinstance(wb.get("events"), list):
        if not isinstance(updated.get("events"), list):
            updated["events"] = []
        updated["events"].extend(copy.deepcopy(wb["events"]))
    if validated.normalized_patch:
        updated = apply_patch_append_arrays(updated, validated.normalized_patch)
    if isinstance(wb.get("parked"), list):
        queue = updated.get("queue") if isinstance(updated.get("queue"), dict) else {}
        updated["queue"] = queue
        if not isinstance(queue.get("parked"), list):
            queue["parked"] = []
        queue["parked"].extend(copy.deepcopy(wb["parked"]))
    notes = wb.get("notes")
    if isinstance(notes, str) and notes.strip():
        existing = updated.get("notes") if isinstance(updated.get("notes"), str) else ""
        updated["notes"] = (existing + "\n" if existing else "") + notes.strip()
    return updated


@dataclass
class WritebackOutcome:
    status: str  # absent | applied | malformed
    error: Optional[str] = None
    summary: Dict[str, Any] = field(default_factory=dict)


class WritebackService:
    """Extracts and persists writeback payloads into the conversation StatePack."""

    def __init__(self, repository: StateRepository) -> None:
        self.repository = repository

    async def persist(
        self, conversation_id: str, full_text: str, *, base_pack: Dict[str, Any]
    ) -> WritebackOutcome:
        extraction = extract_writeback(full_text)
        if extraction.status == "absent":
            return WritebackOutcome("absent")
        try:
            if extraction.status != "ok":
                raise WritebackMalformed(extraction.status, extraction.error or "unparseable")
            validated = validate_envelope(extraction.value)
        except WritebackMalformed as exc:
            logger.warning(
                "writeback_malformed",
                conversation_id=conversation_id,
                status=exc.status,
                error=exc.error,
            )
            return WritebackOutcome("malformed", error=f"{exc.status}: {exc.error}")

        async with self.repository.lock(conversation_id):
            current = self.repository.get(conversation_id)
            pack = normalize_state_pack(current if current is not None else copy.deepcopy(base_pack))
            updated = apply_writeback(pack, validated)
            stamp_updated(updated)
            self.repository.put(conversation_id, updated)

        wb = validated.writeback
        summary = {
            "events_count": len(wb["events"]) if isinstance(wb.get("events"), list) else 0,
            "patch_keys": sorted(validated.normalized_patch or {}),
            "parked_count": len(wb["parked"]) if isinstance(wb.get("parked"), list) else 0,
            "notes": (wb.get("notes") or "")[:EVENT_NOTES_PREVIEW],
        }
        logger.info("writeback_applied", conversation_id=conversation_id, **{
            k: v for k, v in summary.items() if k != "notes"
        })
        return WritebackOutcome("applied", summary=summary)
