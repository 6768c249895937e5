from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from turnkernel.config import Settings
from turnkernel.logging import get_logger
from turnkernel.service.errors import ConfigurationError, ModeConflict, ServiceError
from turnkernel.service.ingress import TurnRequest
from turnkernel.service.retrieval import RetrievalBackend

logger = get_logger(__name__)


class RetrievalMode(str, Enum):
    CANON = "CANON"
    THREADS = "THREADS"
    COMBINED = "COMBINED"


class StoreKind(str, Enum):
    CANON = "canon"
    THREADS = "threads"
    MANIFEST = "manifest"
    LEGACY = "legacy"


class Signal(str, Enum):
    """Request-level retrieval mode signals."""

    CANON_ONLY = "canon_only"
    THREADS_ONLY = "threads_only"
    GOLD_HUNT = "gold_hunt"


# Header name -> signal; truthy values switch the signal on
SIGNAL_HEADERS: Dict[str, Signal] = {
    "x-canon-only": Signal.CANON_ONLY,
    "x-threads-only": Signal.THREADS_ONLY,
    "x-gold-hunt": Signal.GOLD_HUNT,
}

_INLINE_DIRECTIVES: List[Tuple[re.Pattern[str], Signal]] = [
    (re.compile(r"\[\s*canon[-_ ]only\s*\]", re.IGNORECASE), Signal.CANON_ONLY),
    (re.compile(r"\[\s*threads?[-_ ]only\s*\]", re.IGNORECASE), Signal.THREADS_ONLY),
    (re.compile(r"\[\s*gold[-_ ]hunt\s*\]", re.IGNORECASE), Signal.GOLD_HUNT),
]

_CANON_CLASS = {Signal.CANON_ONLY}
_THREADS_CLASS = {Signal.THREADS_ONLY, Signal.GOLD_HUNT}

# StatePack "mode" values that pin retrieval across turns
_STICKY_MODES = {"CANON_ONLY": Signal.CANON_ONLY, "THREADS_ONLY": Signal.THREADS_ONLY}


class TruthPolicy(str, Enum):
    ANCHOR_CANON_ONLY = "ANCHOR_CANON_ONLY"
    CANON_OPS_MANIFEST_FIRST = "CANON_OPS_MANIFEST_FIRST"
    THREAD_ARCHAEOLOGY_THREADS_FIRST = "THREAD_ARCHAEOLOGY_THREADS_FIRST"
    DEFAULT = "DEFAULT"


TRUTH_POLICY_NOTES: Dict[TruthPolicy, str] = {
    TruthPolicy.ANCHOR_CANON_ONLY: "\n".join(
        [
            "TRUTH SOURCE POLICY: ANCHORS",
            "- For identity or mission anchor questions, CANON is authoritative.",
            "- Search CANON first; do not use threads.",
            "- If the anchor is not found in canon, say 'Not found in canon' and stop.",
        ]
    ),
    TruthPolicy.CANON_OPS_MANIFEST_FIRST: "\n".join(
        [
            "TRUTH SOURCE POLICY: CANON OPS",
            "- For manifest, registry, tombstone or supersession questions, MANIFEST is the navigation authority.",
            "- Use MANIFEST first and CANON second for content.",
            "- Threads are non-authoritative unless requested as historical evidence.",
        ]
    ),
    TruthPolicy.THREAD_ARCHAEOLOGY_THREADS_FIRST: "\n".join(
        [
            "TRUTH SOURCE POLICY: THREAD ARCHAEOLOGY",
            "- For old-thread lookups, THREADS is the primary evidence store.",
            "- Canon still outranks threads for governance claims.",
        ]
    ),
    TruthPolicy.DEFAULT: "\n".join(
        [
            "TRUTH SOURCE POLICY: DEFAULT",
            "- Canon outranks threads for governance claims.",
        ]
    ),
}

_ANCHOR_TERMS = ("identity anchor", "mission anchor", "canon mission anchor", "cma-0.1")
_CANON_OPS_TERMS = (
    "canonmanifest",
    "artifactregistry",
    "manifest",
    "registry",
    "tombstone",
    "supersed",
    "governing",
    "authority",
)
_THREAD_TERMS = (
    "where did i say",
    "full chat",
    "old chat",
    "previous version",
    "find",
    "locate",
    "lost",
    "breakthrough",
    "goldpak",
    "thread",
)
_MANIFEST_TERMS = ("list", "inventory", "what files", "what documents", "ci-1") + _CANON_OPS_TERMS
_CANON_TERMS = ("canon", "governing", "authority", "artifact") + _ANCHOR_TERMS
_THREADS_WANT_TERMS = _THREAD_TERMS + ("gold", "earlier system")


def _contains_any(text: str, terms: Iterable[str]) -> bool:
    return any(term in text for term in terms)


def resolve_truth_policy(last_user_text: str) -> TruthPolicy:
    text = (last_user_text or "").lower()
    if _contains_any(text, _ANCHOR_TERMS):
        return TruthPolicy.ANCHOR_CANON_ONLY
    if _contains_any(text, _CANON_OPS_TERMS):
        return TruthPolicy.CANON_OPS_MANIFEST_FIRST
    if _contains_any(text, _THREAD_TERMS):
        return TruthPolicy.THREAD_ARCHAEOLOGY_THREADS_FIRST
    return TruthPolicy.DEFAULT


def signals_from_headers(headers: Any) -> Tuple[str, ...]:
    found: List[str] = []
    for name, signal in SIGNAL_HEADERS.items():
        value = headers.get(name)
        if value is not None and value.strip().lower() in {"1", "true", "yes", "on"}:
            found.append(signal.value)
    return tuple(found)


def inline_signals(text: str) -> Tuple[str, ...]:
    return tuple(signal.value for pattern, signal in _INLINE_DIRECTIVES if pattern.search(text or ""))


def strip_inline_directives(text: str) -> str:
    for pattern, _ in _INLINE_DIRECTIVES:
        text = pattern.sub("", text)
    return text.strip()


def _uniq(values: Iterable[Optional[str]]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            out.append(value)
    return out


@dataclass(frozen=True)
class RetrievalPlan:
    mode: RetrievalMode
    store_ids: Tuple[str, ...]
    caps: Dict[str, int] = field(default_factory=dict)
    search_first: bool = False
    policy: TruthPolicy = TruthPolicy.DEFAULT
    signals: Tuple[str, ...] = ()

    def response_headers(self) -> Dict[str, str]:
        return {
            "X-Retrieval-Mode": self.mode.value,
            "X-Retrieval-Stores": ",".join(self.store_ids) or "none",
            "X-Truth-Policy": self.policy.value,
            "X-Search-First": "1" if self.search_first else "0",
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "store_ids": list(self.store_ids),
            "caps": dict(self.caps),
            "search_first": self.search_first,
            "policy": self.policy.value,
            "signals": list(self.signals),
        }


class RetrievalRouter:
    """Turns request signals into a ``RetrievalPlan``.

    Contradictory signals are an input error, never a silent pick, and a
    forced mode whose store is not configured fails instead of falling back.
    """

    def __init__(
        self,
        *,
        stores: Dict[StoreKind, Optional[str]],
        caps: Dict[StoreKind, int],
        max_stores: int = 2,
    ) -> None:
        self.stores = stores
        self.caps = caps
        self.max_stores = max_stores

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetrievalRouter":
        return cls(
            stores={
                StoreKind.CANON: settings.vector_store_id_canon,
                StoreKind.THREADS: settings.vector_store_id_threads,
                StoreKind.MANIFEST: settings.vector_store_id_manifest,
                StoreKind.LEGACY: settings.vector_store_id_legacy,
            },
            caps={
                StoreKind.CANON: settings.canon_max_results,
                StoreKind.THREADS: settings.threads_max_results,
                StoreKind.MANIFEST: settings.manifest_max_results,
                StoreKind.LEGACY: settings.canon_max_results,
            },
            max_stores=settings.max_stores_per_turn,
        )

    def configured_store_ids(self) -> List[str]:
        return _uniq(self.stores.get(kind) for kind in StoreKind)

    def _cap_for(self, store_id: str) -> int:
        for kind in StoreKind:
            if self.stores.get(kind) == store_id:
                return self.caps.get(kind, 1)
        return 1

    def collect_signals(self, request: TurnRequest) -> Tuple[str, ...]:
        found = list(request.header_signals) + list(inline_signals(request.last_user_text))
        return tuple(sorted(set(found)))

    def _required(self, kind: StoreKind, reason: str) -> str:
        store_id = self.stores.get(kind)
        if not store_id:
            raise ConfigurationError(
                f"{reason} requires the {kind.value} store to be configured",
                detail={"store_kind": kind.value},
            )
        return store_id

    def _combined_order(self, text: str) -> List[str]:
        canon = self.stores.get(StoreKind.CANON)
        threads = self.stores.get(StoreKind.THREADS)
        manifest = self.stores.get(StoreKind.MANIFEST)
        legacy = self.stores.get(StoreKind.LEGACY)
        if not (canon or threads or manifest):
            return _uniq([legacy])
        wants_threads = _contains_any(text, _THREADS_WANT_TERMS)
        if _contains_any(text, _MANIFEST_TERMS) and manifest:
            second = threads if wants_threads else canon
            return _uniq([manifest, second, threads, canon, legacy])
        if wants_threads and threads:
            return _uniq([threads, manifest, legacy, canon])
        if _contains_any(text, _CANON_TERMS) and canon:
            return _uniq([canon, manifest, legacy, threads])
        return _uniq([canon, threads, manifest, legacy])

    def plan(self, request: TurnRequest, state_pack: Optional[Dict[str, Any]] = None) -> RetrievalPlan:
        signals = self.collect_signals(request)
        present = {Signal(s) for s in signals}
        if present & _CANON_CLASS and present & _THREADS_CLASS:
            raise ModeConflict(
                "canon-only and threads-only signals cannot be combined",
                detail={"signals": list(signals)},
            )

        if not present and state_pack:
            sticky = _STICKY_MODES.get(str(state_pack.get("mode") or "").upper())
            if sticky is not None:
                present = {sticky}

        text = strip_inline_directives(request.last_user_text).lower()
        policy = resolve_truth_policy(text)

        if present & _CANON_CLASS:
            store_id = self._required(StoreKind.CANON, "canon-only mode")
            plan = self._single(RetrievalMode.CANON, store_id, policy, signals)
        elif present & _THREADS_CLASS:
            store_id = self._required(StoreKind.THREADS, "threads-only mode")
            plan = self._single(RetrievalMode.THREADS, store_id, policy, signals)
        elif policy == TruthPolicy.ANCHOR_CANON_ONLY:
            store_id = self._required(StoreKind.CANON, "anchor lookup")
            plan = self._single(RetrievalMode.CANON, store_id, policy, signals)
        else:
            store_ids = tuple(self._combined_order(text)[: self.max_stores])
            plan = RetrievalPlan(
                mode=RetrievalMode.COMBINED,
                store_ids=store_ids,
                caps={sid: self._cap_for(sid) for sid in store_ids},
                search_first=False,
                policy=policy,
                signals=signals,
            )
        logger.info("retrieval_plan", **plan.to_dict())
        return plan

    def _single(
        self, mode: RetrievalMode, store_id: str, policy: TruthPolicy, signals: Tuple[str, ...]
    ) -> RetrievalPlan:
        return RetrievalPlan(
            mode=mode,
            store_ids=(store_id,),
            caps={store_id: self._cap_for(store_id)},
            search_first=True,
            policy=policy,
            signals=signals,
        )

    async def validate_stores(self, backend: RetrievalBackend) -> Dict[str, str]:
        """Check each configured store through the inventory listing."""
        status: Dict[str, str] = {}
        for store_id in self.configured_store_ids():
            try:
                await backend.list_documents(store_id, limit=1)
                status[store_id] = "ok"
            except ServiceError as exc:
                status[store_id] = exc.error_code
                logger.warning("store_validation_failed", store_id=store_id, error_code=exc.error_code)
        return status
