"""Canon authority overlay: tombstones, supersession and rank resolution.

Enforcement is a pure function of (results, overlay). Running it again on
its own output changes nothing, so repeated passes converge on one
authoritative source per fact.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from turnkernel.logging import get_logger
from turnkernel.service.retrieval import RetrievalResult, coerce_rank, parse_timestamp

logger = get_logger(__name__)

# Preview sizes for the prompt note
NOTE_TOMBSTONE_PREVIEW = 50
NOTE_SUCCESSOR_PREVIEW = 80


@dataclass
class CanonOverlay:
    tombstones: FrozenSet[str] = frozenset()
    successors: Dict[str, str] = field(default_factory=dict)
    authority: Dict[str, int] = field(default_factory=dict)
    fact_keys: Dict[str, str] = field(default_factory=dict)
    timestamps: Dict[str, float] = field(default_factory=dict)
    collisions: List[Dict[str, Any]] = field(default_factory=list)
    artifact_count: int = 0
    generated_at: Optional[str] = None
    source: str = "canon_ops.json"

    @classmethod
    def from_document(cls, doc: Optional[Dict[str, Any]]) -> "CanonOverlay":
        if not doc:
            return cls(source="none")
        collisions: List[Dict[str, Any]] = []

        artifacts = doc.get("artifacts") if isinstance(doc.get("artifacts"), list) else []
        known: set[str] = set()
        authority: Dict[str, int] = {}
        fact_keys: Dict[str, str] = {}
        timestamps: Dict[str, float] = {}
        for item in artifacts:
            if not isinstance(item, dict) or not item.get("artifact_id"):
                continue
            artifact_id = str(item["artifact_id"])
            if artifact_id in known:
                collisions.append({"type": "duplicate_artifact_id", "artifact_id": artifact_id})
                continue
            known.add(artifact_id)
            rank = coerce_rank(item.get("authority_rank"))
            if rank is not None:
                authority[artifact_id] = rank
            if item.get("fact_key"):
                fact_keys[artifact_id] = str(item["fact_key"])
            stamp = parse_timestamp(item.get("updated_at"))
            if stamp:
                timestamps[artifact_id] = stamp

        tombstones = frozenset(
            str(t["artifact_id"])
            for t in (doc.get("tombstones") or [])
            if isinstance(t, dict) and t.get("artifact_id")
        )

        edges: Dict[str, Tuple[str, float]] = {}
        for edge in doc.get("supersedes") or []:
            if not isinstance(edge, dict) or not edge.get("from") or not edge.get("to"):
                continue
            source, target = str(edge["from"]), str(edge["to"])
            at = parse_timestamp(edge.get("at"))
            if known:
                for node in (source, target):
                    if node not in known:
                        collisions.append({"type": "unknown_artifact", "artifact_id": node})
            if target in tombstones:
                collisions.append({"type": "supersedes_to_tombstoned", "from": source, "to": target})
                continue
            if source in tombstones:
                collisions.append({"type": "tombstoned_has_successor", "from": source, "to": target})
            previous = edges.get(source)
            if previous is not None and previous[0] != target:
                collisions.append(
                    {"type": "supersedes_multiple_successors", "from": source, "to": sorted({previous[0], target})}
                )
                # Latest edge wins; equal timestamps fall back to the smaller id
                if at < previous[1] or (at == previous[1] and target > previous[0]):
                    continue
            edges[source] = (target, at)
            if at:
                timestamps[target] = max(timestamps.get(target, 0.0), at)

        successors = {source: target for source, (target, _) in edges.items()}
        for cycle in _find_cycles(successors):
            collisions.append({"type": "supersedes_cycle", "members": cycle})
            for node in cycle:
                successors.pop(node, None)

        generated_at = doc.get("generated_at")
        return cls(
            tombstones=tombstones,
            successors=successors,
            authority=authority,
            fact_keys=fact_keys,
            timestamps=timestamps,
            collisions=collisions,
            artifact_count=len(known),
            generated_at=str(generated_at) if generated_at else None,
        )

    def is_tombstoned(self, source_id: str) -> bool:
        return source_id in self.tombstones

    def chain(self, source_id: str) -> List[str]:
        """Successors of ``source_id`` in order, ending at the terminal node."""
        out: List[str] = []
        seen = {source_id}
        current = source_id
        while current in self.successors:
            current = self.successors[current]
            if current in seen:
                break
            seen.add(current)
            out.append(current)
        return out

    def terminal(self, source_id: str) -> str:
        chain = self.chain(source_id)
        return chain[-1] if chain else source_id

    def effective_successors(self) -> Dict[str, str]:
        return {source: self.terminal(source) for source in sorted(self.successors)}

    def summary(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "generated_at": self.generated_at,
            "counts": {
                "artifacts": self.artifact_count,
                "tombstones": len(self.tombstones),
                "supersedes": len(self.successors),
                "collisions": len(self.collisions),
            },
            "tombstones": sorted(self.tombstones),
            "effective_successors": self.effective_successors(),
        }

    def developer_note(self) -> str:
        tombstones = sorted(self.tombstones)[:NOTE_TOMBSTONE_PREVIEW]
        pairs = list(self.effective_successors().items())[:NOTE_SUCCESSOR_PREVIEW]
        return "\n".join(
            [
                "CANON_OPS (authoritative mapping for supersession and tombstones)",
                f"counts: artifacts={self.artifact_count} tombstones={len(self.tombstones)} "
                f"supersedes={len(self.successors)}",
                "- Do not rely on, quote as truth, or cite tombstoned artifacts.",
                "- Treat superseded artifact ids as aliases; cite the effective successor.",
                f"tombstones: {', '.join(tombstones) if tombstones else '(none)'}",
                "effective successors: "
                + (", ".join(f"{a} -> {b}" for a, b in pairs) if pairs else "(none)"),
            ]
        )


def _find_cycles(successors: Dict[str, str]) -> List[List[str]]:
    cycles: List[List[str]] = []
    state: Dict[str, int] = {}
    for start in sorted(successors):
        if state.get(start):
            continue
        path: List[str] = []
        index: Dict[str, int] = {}
        node: Optional[str] = start
        while node is not None and not state.get(node):
            if node in index:
                cycles.append(sorted(path[index[node]:]))
                break
            index[node] = len(path)
            path.append(node)
            node = successors.get(node)
        for visited in path:
            state[visited] = 1
    return cycles


@dataclass
class EnforcedResults:
    results: List[RetrievalResult]
    collisions: List[Dict[str, Any]] = field(default_factory=list)
    dropped_tombstoned: List[str] = field(default_factory=list)
    dropped_superseded: List[str] = field(default_factory=list)
    dropped_outranked: List[str] = field(default_factory=list)


class _UnionFind:
    def __init__(self) -> None:
        self.parent: Dict[str, str] = {}

    def find(self, item: str) -> str:
        self.parent.setdefault(item, item)
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: str, b: str) -> None:
        ra, rb = self.find(a), self.find(b)
        if ra != rb:
            self.parent[max(ra, rb)] = min(ra, rb)


class CanonEnforcer:
    """Applies a ``CanonOverlay`` to raw retrieval results."""

    def __init__(self, overlay: CanonOverlay) -> None:
        self.overlay = overlay

    def _rank(self, result: RetrievalResult) -> int:
        return self.overlay.authority.get(result.source_id, result.authority_rank)

    def _timestamp(self, result: RetrievalResult) -> float:
        return self.overlay.timestamps.get(result.source_id, result.timestamp)

    def _group(self, results: Sequence[RetrievalResult]) -> Dict[str, List[int]]:
        uf = _UnionFind()
        for idx, result in enumerate(results):
            node = f"r:{idx}"
            uf.union(node, f"lineage:{self.overlay.terminal(result.source_id)}")
            fact_key = self.overlay.fact_keys.get(result.source_id) or result.fact_key
            if fact_key:
                uf.union(node, f"fact:{fact_key}")
        groups: Dict[str, List[int]] = {}
        for idx in range(len(results)):
            groups.setdefault(uf.find(f"r:{idx}"), []).append(idx)
        return groups

    def enforce(self, results: Iterable[RetrievalResult]) -> EnforcedResults:
        overlay = self.overlay
        incoming = list(results)
        outcome = EnforcedResults(results=[])

        live: List[RetrievalResult] = []
        for result in incoming:
            if overlay.is_tombstoned(result.source_id):
                outcome.dropped_tombstoned.append(result.source_id)
            else:
                live.append(result)

        keep: set[int] = set()
        for indexes in self._group(live).values():
            present = {live[i].source_id for i in indexes}
            candidates: List[int] = []
            for i in indexes:
                successors = overlay.chain(live[i].source_id)
                if any(s in present and s != live[i].source_id for s in successors):
                    outcome.dropped_superseded.append(live[i].source_id)
                else:
                    candidates.append(i)

            best_by_source: Dict[str, int] = {}
            for i in candidates:
                best_by_source.setdefault(live[i].source_id, i)
            ordered = sorted(
                best_by_source.items(),
                key=lambda item: (-self._rank(live[item[1]]), -self._timestamp(live[item[1]]), item[0]),
            )
            if not ordered:
                continue
            winner_id, winner_idx = ordered[0]
            winner_key = (self._rank(live[winner_idx]), self._timestamp(live[winner_idx]))
            tied = [
                source_id
                for source_id, idx in ordered[1:]
                if (self._rank(live[idx]), self._timestamp(live[idx])) == winner_key
            ]
            if tied:
                outcome.collisions.append(
                    {
                        "type": "rank_tie",
                        "fact_key": overlay.fact_keys.get(winner_id) or live[winner_idx].fact_key,
                        "sources": [winner_id, *tied],
                        "chosen": winner_id,
                        "authority_rank": winner_key[0],
                    }
                )
            for source_id, _ in ordered[1:]:
                outcome.dropped_outranked.append(source_id)
            keep.update(i for i in candidates if live[i].source_id == winner_id)

        for i, result in enumerate(live):
            if i not in keep:
                continue
            terminal = overlay.terminal(result.source_id)
            superseded_by = terminal if terminal != result.source_id else None
            if result.superseded_by != superseded_by:
                result = result.with_changes(superseded_by=superseded_by)
            outcome.results.append(result)

        if outcome.collisions:
            logger.info("canon_collisions_recorded", count=len(outcome.collisions))
        return outcome
