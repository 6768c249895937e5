from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from turnkernel.service.errors import NotFoundError, ValidationError

# Entries never listed regardless of root
DENIED_NAMES = frozenset({".git", "node_modules", ".env", "__pycache__", ".venv"})
DEFAULT_MAX_ENTRIES = 200


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    if "\0" in relative:
        raise PathTraversalError("null byte in path")
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


@dataclass(frozen=True)
class DirectoryEntry:
    name: str
    kind: str
    size: Optional[int] = None

    def to_dict(self) -> dict:
        out = {"name": self.name, "kind": self.kind}
        if self.size is not None:
            out["size"] = self.size
        return out


class DirectoryLister:
    """Read-only directory listing confined to an allow-listed set of roots."""

    def __init__(self, roots: Dict[str, Path], *, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        self.roots = {key: Path(path) for key, path in roots.items()}
        self.max_entries = max_entries

    @classmethod
    def for_base(
        cls,
        base: str | Path,
        *,
        state_root: str | Path,
        stores_root: str | Path,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ) -> "DirectoryLister":
        base_path = Path(base)
        roots = {
            "repo": base_path,
            "turnkernel": base_path / "turnkernel",
            "tests": base_path / "tests",
            "docs": base_path / "docs",
            "state": Path(state_root),
            "stores": Path(stores_root),
        }
        return cls(roots, max_entries=max_entries)

    def list(self, root_id: str, relative: str = ".") -> List[DirectoryEntry]:
        if root_id not in self.roots:
            raise ValidationError(
                "invalid root",
                detail={"root": root_id, "allowed_roots": sorted(self.roots)},
            )
        relative = (relative or ".").strip() or "."
        if any(part in DENIED_NAMES for part in Path(relative).parts):
            raise PathTraversalError("path is on the deny list")
        target = safe_join(self.roots[root_id], relative)
        if not target.exists():
            raise NotFoundError("directory not found", detail={"root": root_id, "path": relative})
        if not target.is_dir():
            raise ValidationError("not a directory", detail={"root": root_id, "path": relative})

        entries: List[DirectoryEntry] = []
        for child in sorted(target.iterdir(), key=lambda p: p.name):
            if child.name in DENIED_NAMES:
                continue
            if child.is_dir():
                entries.append(DirectoryEntry(child.name, "dir"))
            elif child.is_file():
                entries.append(DirectoryEntry(child.name, "file", child.stat().st_size))
            else:
                entries.append(DirectoryEntry(child.name, "other"))
            if len(entries) >= self.max_entries:
                break
        return entries
