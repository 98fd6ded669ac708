"""Workspace identity: stable ids for working directories."""
from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path

_REPO_MARKER = ".git"


@dataclass(frozen=True)
class WorkspaceIdentity:
    workspace_id: str
    path: str
    repository_root: str | None
    name: str


def find_repository_root(path: str | Path) -> Path | None:
    """Nearest ancestor (or *path* itself) that holds a .git marker."""
    current = Path(path)
    for candidate in (current, *current.parents):
        if (candidate / _REPO_MARKER).exists():
            return candidate
    return None


def _normalize(path: str | Path) -> Path:
    return Path(os.path.abspath(os.path.expanduser(str(path)))).resolve()


def workspace_id(path: str | Path) -> str:
    """Deterministic 12-hex-char id for a working directory.

    Hash of the repository root (if any) combined with the absolute
    path, so the id is stable across process restarts.
    """
    abs_path = _normalize(path)
    try:
        repo_root = find_repository_root(abs_path)
    except OSError:
        repo_root = None
    key = f"{repo_root or ''}:{abs_path}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:12]


def describe_workspace(path: str | Path) -> WorkspaceIdentity:
    abs_path = _normalize(path)
    try:
        repo_root = find_repository_root(abs_path)
    except OSError:
        repo_root = None
    return WorkspaceIdentity(
        workspace_id=workspace_id(abs_path),
        path=str(abs_path),
        repository_root=str(repo_root) if repo_root else None,
        name=abs_path.name or str(abs_path),
    )
