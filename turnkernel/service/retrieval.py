from __future__ import annotations

import json
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import openai

from turnkernel.logging import get_logger
from turnkernel.service.bm25 import BM25Index, tokenize_text
from turnkernel.service.errors import ConfigurationError, NotFoundError
from turnkernel.service.fs import safe_join
from turnkernel.service.upstream import call_with_retry

logger = get_logger(__name__)

DEFAULT_INVENTORY_PAGE = 20
MAX_INVENTORY_PAGE = 100


def parse_timestamp(value: Any) -> float:
    """Best-effort conversion of ISO strings or epoch numbers to epoch seconds."""
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text).timestamp()
        except ValueError:
            return 0.0
    return 0.0


def coerce_rank(value: Any) -> Optional[int]:
    """Integer authority rank, or None for anything that is not a finite number."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if not math.isfinite(value):
        return None
    return int(value)


@dataclass(frozen=True)
class RetrievalResult:
    """One retrieved chunk.

    ``source_id`` is the artifact the chunk came from; several chunks can
    share one source. ``fact_key`` groups sources that describe the same
    logical fact; when absent the canon overlay decides the group.
    """

    source_id: str
    store_id: str
    text: str
    score: float = 0.0
    fact_key: Optional[str] = None
    authority_rank: int = 0
    timestamp: float = 0.0
    filename: Optional[str] = None
    superseded_by: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def with_changes(self, **changes: Any) -> "RetrievalResult":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "store_id": self.store_id,
            "filename": self.filename,
            "score": round(self.score, 4),
            "fact_key": self.fact_key,
            "authority_rank": self.authority_rank,
            "superseded_by": self.superseded_by,
            "text": self.text,
        }


@dataclass
class InventoryPage:
    data: List[Dict[str, Any]]
    has_more: bool
    after: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"data": self.data, "has_more": self.has_more, "after": self.after}


class RetrievalBackend(Protocol):
    async def search(self, store_id: str, query: str, max_results: int) -> List[RetrievalResult]: ...

    async def list_documents(
        self, store_id: str, *, after: Optional[str] = None, limit: int = DEFAULT_INVENTORY_PAGE
    ) -> InventoryPage: ...


def _result_from_record(record: Dict[str, Any], store_id: str, score: float) -> RetrievalResult:
    source_id = str(record.get("source_id") or record.get("artifact_id") or record.get("id"))
    rank = record.get("authority_rank", 0)
    return RetrievalResult(
        source_id=source_id,
        store_id=store_id,
        text=str(record.get("text", "")),
        score=score,
        fact_key=record.get("fact_key"),
        authority_rank=coerce_rank(rank) or 0,
        timestamp=parse_timestamp(record.get("timestamp") or record.get("updated_at")),
        filename=record.get("filename"),
    )


def _clamp_page(limit: int) -> int:
    return max(1, min(int(limit), MAX_INVENTORY_PAGE))


class LocalStoreBackend:
    """Stores kept as ``<root>/<store_id>.jsonl``, one document per line."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _load(self, store_id: str) -> List[Dict[str, Any]]:
        path = safe_join(self.root, f"{store_id}.jsonl")
        try:
            lines = path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError as exc:
            raise NotFoundError("retrieval store not found", detail={"store_id": store_id}) from exc
        records: List[Dict[str, Any]] = []
        for line_no, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("store_line_skipped", store_id=store_id, line=line_no)
                continue
            if isinstance(record, dict) and (record.get("source_id") or record.get("artifact_id") or record.get("id")):
                records.append(record)
        return records

    async def search(self, store_id: str, query: str, max_results: int) -> List[RetrievalResult]:
        records = self._load(store_id)
        if not records:
            return []
        index = BM25Index([tokenize_text(str(r.get("text", ""))) for r in records])
        ranked = index.rank(tokenize_text(query), max_results)
        return [_result_from_record(records[idx], store_id, score) for idx, score in ranked]

    async def list_documents(
        self, store_id: str, *, after: Optional[str] = None, limit: int = DEFAULT_INVENTORY_PAGE
    ) -> InventoryPage:
        limit = _clamp_page(limit)
        descriptors: Dict[str, Dict[str, Any]] = {}
        for record in self._load(store_id):
            source_id = str(record.get("source_id") or record.get("artifact_id") or record.get("id"))
            entry = descriptors.setdefault(
                source_id,
                {"id": source_id, "filename": record.get("filename"), "chunks": 0, "bytes": 0},
            )
            entry["chunks"] += 1
            entry["bytes"] += len(str(record.get("text", "")).encode("utf-8"))
        ordered = sorted(descriptors.values(), key=lambda d: d["id"])
        if after:
            ordered = [d for d in ordered if d["id"] > after]
        page = ordered[:limit]
        has_more = len(ordered) > limit
        return InventoryPage(data=page, has_more=has_more, after=page[-1]["id"] if page and has_more else None)


class OpenAIStoreBackend:
    """Vector stores hosted by the OpenAI API."""

    def __init__(
        self,
        *,
        api_key: Optional[str],
        base_url: Optional[str] = None,
        retries: int = 1,
        client: Optional[openai.AsyncOpenAI] = None,
    ) -> None:
        if client is None and not api_key:
            raise ConfigurationError(
                "OPENAI_API_KEY is required for the openai retrieval backend", status_code=500
            )
        self.client = client or openai.AsyncOpenAI(api_key=api_key, base_url=base_url)
        self.retries = retries

    async def search(self, store_id: str, query: str, max_results: int) -> List[RetrievalResult]:
        async def _search():
            return await self.client.vector_stores.search(
                vector_store_id=store_id,
                query=query,
                max_num_results=max_results,
            )

        page = await call_with_retry("vector_store_search", _search, retries=self.retries)
        results: List[RetrievalResult] = []
        for item in list(getattr(page, "data", []) or [])[:max_results]:
            attributes = dict(getattr(item, "attributes", None) or {})
            text = "\n".join(
                getattr(part, "text", "") for part in (getattr(item, "content", None) or [])
            )
            record = {
                **attributes,
                "source_id": attributes.get("artifact_id") or getattr(item, "file_id", None),
                "filename": getattr(item, "filename", None),
                "text": text,
            }
            result = _result_from_record(record, store_id, float(getattr(item, "score", 0.0) or 0.0))
            results.append(result.with_changes(attributes=attributes))
        return results

    async def list_documents(
        self, store_id: str, *, after: Optional[str] = None, limit: int = DEFAULT_INVENTORY_PAGE
    ) -> InventoryPage:
        limit = _clamp_page(limit)

        async def _list():
            kwargs: Dict[str, Any] = {"vector_store_id": store_id, "limit": limit}
            if after:
                kwargs["after"] = after
            return await self.client.vector_stores.files.list(**kwargs)

        page = await call_with_retry("vector_store_files_list", _list, retries=self.retries)
        data = [
            {
                "id": item.id,
                "status": getattr(item, "status", None),
                "bytes": getattr(item, "usage_bytes", None),
                "created_at": getattr(item, "created_at", None),
            }
            for item in (getattr(page, "data", None) or [])
        ]
        has_more = bool(getattr(page, "has_more", False))
        return InventoryPage(data=data, has_more=has_more, after=data[-1]["id"] if data and has_more else None)
