"""Fleet-wide inspection and fan-out.

``report`` renders the database state of every known workspace;
``launch_all`` runs a detached safe start for several worktrees at once,
isolating each workspace's failure from the others; ``launch_tools``
does the same for the database tool.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from functools import partial
from pathlib import Path

import anyio
import click
from anyio import to_thread
from loguru import logger

from devfleet.orchestrator.execution.launcher import LaunchError
from devfleet.orchestrator.execution.ports import PortReclaimFailedError
from devfleet.orchestrator.execution.supervisor import Supervisor
from devfleet.orchestrator.managers.database import DatabaseManager, DatabaseStartTimeoutError
from devfleet.orchestrator.models.enums import ContainerState, Step
from devfleet.orchestrator.models.status import BatchResult, DatabaseStatus
from devfleet.orchestrator.models.workspace import WorkspaceEntry
from devfleet.orchestrator.runtime.base import ContainerRuntimeError
from devfleet.orchestrator.table import AllocationTable, UnknownWorkspaceError

LAUNCH_ERRORS = (
    UnknownWorkspaceError,
    PortReclaimFailedError,
    DatabaseStartTimeoutError,
    ContainerRuntimeError,
    LaunchError,
    OSError,
)
"""Failures recorded per workspace by ``launch_all`` instead of aborting the batch."""

_STATE_LABELS = {
    ContainerState.RUNNING: ("RUNNING", "green"),
    ContainerState.STOPPED: ("STOPPED", "yellow"),
    ContainerState.ABSENT: ("NOT CREATED", "red"),
}

# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def render_status(rows: Sequence[DatabaseStatus], *, color: bool = False) -> str:
    """Render status rows as a fixed-width WORKTREE / CONTAINER / PORT / STATUS table."""
    lines = [
        f"{'WORKTREE':<15} {'CONTAINER':<25} {'PORT':<10} STATUS",
        f"{'--------':<15} {'---------':<25} {'----':<10} ------",
    ]
    for row in rows:
        if row.error is not None or row.state is None:
            label, fg = f"ERROR: {row.error}", "red"
        else:
            label, fg = _STATE_LABELS[row.state]
        status = click.style(label, fg=fg) if color else label
        lines.append(f"{row.workspace:<15} {row.container_name:<25} {row.port:<10} {status}")
    return "\n".join(lines)


def report(manager: DatabaseManager, *, color: bool = False) -> str:
    return render_status(manager.status(), color=color)


def render_urls(table: AllocationTable, workspaces: Sequence[str]) -> str:
    """Access URL summary for the given workspaces."""
    width = max((len(table.lookup(ws).identity) for ws in workspaces), default=0)
    lines = []
    for ws in workspaces:
        entry = table.lookup(ws)
        bundle = entry.bundle
        lines.append(
            f"  {entry.identity:<{width}} -> Frontend: http://localhost:{bundle.frontend_port}"
            f" | Backend: http://localhost:{bundle.backend_port}"
        )
    return "\n".join(lines)


def render_tool_urls(table: AllocationTable, workspaces: Sequence[str]) -> str:
    """Database tool URL summary for the given workspaces."""
    width = max((len(table.lookup(ws).identity) for ws in workspaces), default=0)
    return "\n".join(
        f"  {table.lookup(ws).identity:<{width}} -> Studio: http://localhost:{table.bundle(ws).tool_port}"
        for ws in workspaces
    )


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


def select_workspaces(table: AllocationTable, names: Sequence[str] | None) -> list[WorkspaceEntry]:
    """Entries for *names* (identities or aliases), or all entries when empty.

    Raises ``UnknownWorkspaceError`` before anything is launched.
    """
    if not names:
        return table.entries
    selected: list[WorkspaceEntry] = []
    for name in names:
        entry = table.lookup(name)
        if entry not in selected:
            selected.append(entry)
    return selected


def launch_all(
    supervisor: Supervisor,
    table: AllocationTable,
    base_dir: Path,
    *,
    workspaces: Sequence[str] | None = None,
    parallel: bool = False,
    clean: bool = False,
    log_dir: Path,
) -> BatchResult:
    """Detached safe start for every selected worktree under *base_dir*.

    Each worktree lives at ``{base_dir}/{project}{suffix}`` and logs to
    ``{log_dir}/{directory}-safe-start.log``.  One broken workspace never
    prevents the others from starting.
    """
    entries = select_workspaces(table, workspaces)
    result = BatchResult()

    def start(identity: str, worktree: Path) -> None:
        supervisor.safe_start(
            identity, worktree, clean=clean, detach=True, log_path=log_dir / f"{worktree.name}-safe-start.log"
        )

    _fan_out(partial(_launch_one, table, base_dir, start, result), entries, parallel=parallel)
    return result


def launch_tools(
    supervisor: Supervisor,
    table: AllocationTable,
    base_dir: Path,
    *,
    workspaces: Sequence[str] | None = None,
    parallel: bool = False,
    log_dir: Path,
) -> BatchResult:
    """Start the database tool in the background for every selected worktree.

    Logs go to ``{log_dir}/{directory}-studio.log``.  Failures are recorded
    per workspace like ``launch_all``.
    """
    entries = select_workspaces(table, workspaces)
    result = BatchResult()

    def start(identity: str, worktree: Path) -> None:
        supervisor.start_tool(identity, worktree, detach=True, log_path=log_dir / f"{worktree.name}-studio.log")

    _fan_out(partial(_launch_one, table, base_dir, start, result), entries, parallel=parallel)
    return result


def _fan_out(run_one: Callable[[WorkspaceEntry], None], entries: list[WorkspaceEntry], *, parallel: bool) -> None:
    if not parallel:
        for entry in entries:
            run_one(entry)
        return

    async def _run_all() -> None:
        async with anyio.create_task_group() as tg:
            for entry in entries:
                tg.start_soon(to_thread.run_sync, partial(run_one, entry))

    anyio.run(_run_all)


def _launch_one(
    table: AllocationTable,
    base_dir: Path,
    start: Callable[[str, Path], None],
    result: BatchResult,
    entry: WorkspaceEntry,
) -> None:
    identity = entry.identity
    worktree = base_dir / table.directory_name(identity)

    try:
        if not worktree.is_dir():
            raise LaunchError(identity, f"worktree not found: {worktree}", step=Step.RESOLVE)
        start(identity, worktree)
    except LAUNCH_ERRORS as exc:
        logger.error("[{}] Launch failed: {}", identity, exc)
        result.record_failure(identity, exc)
    else:
        logger.info("[{}] Launched in background from {}", identity, worktree)
        result.record_success(identity)
