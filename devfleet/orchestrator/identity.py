"""Workspace identity resolution.

Maps the directory of the invoking worktree to a workspace identity.  The
identity is recomputed on every invocation and never persisted.  An
unrecognised directory is an error: silently falling back to a default
bundle would collide with another workspace's ports.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

from loguru import logger

from devfleet.orchestrator.models.enums import Step
from devfleet.orchestrator.table import AllocationTable, UnknownWorkspaceError


def resolve_workspace(current_path: str | Path, table: AllocationTable) -> str:
    """Return the identity whose directory pattern matches *current_path*.

    The terminal path segment must equal ``{project}{suffix}`` exactly, so
    ``webapp-Dev1`` resolves to the "-Dev1" entry but ``otherapp-Dev1`` does
    not.  Suffixes are unique per table, so at most one entry matches.
    """
    segment = Path(current_path).name

    for entry in table.entries:
        if segment == f"{table.project}{entry.suffix}":
            return entry.identity

    raise UnknownWorkspaceError(
        segment or str(current_path),
        step=Step.RESOLVE,
        detail=f"directory does not match any known worktree of '{table.project}'",
    )


def find_worktree_root(path: str | Path) -> Path:
    """Top-level directory of the git worktree containing *path*.

    In a linked worktree ``.git`` is a file rather than a directory, so ask
    git instead of walking up.  Falls back to *path* outside a repository.
    """
    path = Path(path).resolve()
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],  # noqa: S607
            cwd=path,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        logger.debug("git unavailable ({}); using {} as worktree root", exc, path)
        return path

    if result.returncode != 0 or not result.stdout.strip():
        return path
    return Path(result.stdout.strip())
