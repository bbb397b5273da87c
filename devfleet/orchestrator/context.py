"""Per-invocation wiring for the CLI.

``FleetContext`` holds the objects one CLI invocation needs: settings, the
worktree it was started from, the allocation table, the container runtime,
and the port reclaimer.  Everything is built lazily, so ``--help`` and
table-only commands never touch git or Docker.  Tests inject fakes through
the constructor.

Nothing here outlives the process: "what is running" is always re-read from
the OS and the container engine.
"""

from __future__ import annotations

from functools import cached_property
from pathlib import Path

from devfleet.orchestrator.execution.ports import PortReclaimer
from devfleet.orchestrator.execution.supervisor import Supervisor
from devfleet.orchestrator.identity import find_worktree_root, resolve_workspace
from devfleet.orchestrator.managers.database import DatabaseManager
from devfleet.orchestrator.runtime.base import ContainerRuntime
from devfleet.orchestrator.runtime.docker_engine import DockerContainerRuntime
from devfleet.orchestrator.settings import DevfleetSettings
from devfleet.orchestrator.table import AllocationTable, load_table, locate_table


class FleetContext:
    """Lazily-built collaborators for one CLI invocation."""

    def __init__(
        self,
        settings: DevfleetSettings,
        path: Path,
        *,
        table: AllocationTable | None = None,
        runtime: ContainerRuntime | None = None,
        reclaimer: PortReclaimer | None = None,
    ) -> None:
        self.settings = settings
        self._path = path
        self._table = table
        self._runtime = runtime
        self._reclaimer = reclaimer

    # -- Location --------------------------------------------------------------

    @cached_property
    def worktree(self) -> Path:
        """Root of the worktree the CLI was invoked from."""
        return find_worktree_root(self._path)

    @property
    def base_dir(self) -> Path:
        """Directory that holds every worktree of the project."""
        if self.settings.base_dir:
            return Path(self.settings.base_dir)
        return self.worktree.parent

    # -- Collaborators ---------------------------------------------------------

    @property
    def table(self) -> AllocationTable:
        if self._table is None:
            self._table = load_table(locate_table(self.worktree, self.settings.table_path))
        return self._table

    @property
    def runtime(self) -> ContainerRuntime:
        if self._runtime is None:
            self._runtime = DockerContainerRuntime()
        return self._runtime

    @property
    def reclaimer(self) -> PortReclaimer:
        if self._reclaimer is None:
            s = self.settings
            self._reclaimer = PortReclaimer(
                terminate_grace=s.terminate_grace,
                retries=s.reclaim_retries,
                retry_delay=s.reclaim_retry_delay,
                poll_interval=s.port_poll_interval,
            )
        return self._reclaimer

    def databases(self) -> DatabaseManager:
        return DatabaseManager(
            self.table,
            self.runtime,
            ready_timeout=self.settings.db_ready_timeout,
            ready_interval=self.settings.db_ready_interval,
        )

    def supervisor(self) -> Supervisor:
        return Supervisor(
            self.table,
            self.databases(),
            self.reclaimer,
            settle_delay=self.settings.settle_delay,
            reclaim_tool_port=self.settings.reclaim_tool_port,
        )

    # -- Workspace selection ---------------------------------------------------

    def current_workspace(self) -> str:
        """Identity of the worktree the CLI was invoked from."""
        return resolve_workspace(self.worktree, self.table)

    def workspace(self, name: str | None) -> str:
        """Explicit identity/alias, or the current worktree's identity."""
        if name:
            return self.table.lookup(name).identity
        return self.current_workspace()

    def worktree_for(self, workspace: str) -> Path:
        """Worktree directory of *workspace*: the current one, or its sibling under ``base_dir``."""
        if self._is_current(workspace):
            return self.worktree
        return self.base_dir / self.table.directory_name(workspace)

    def _is_current(self, workspace: str) -> bool:
        try:
            return self.current_workspace() == self.table.lookup(workspace).identity
        except LookupError:
            return False
