"""Per-workspace database container lifecycle.

Each workspace owns one PostgreSQL container named by its bundle's
``db_container_name`` and published on its ``db_port``.  Containers are
never shared, so ``reset`` on one workspace cannot touch another's data.

State transitions::

    absent --start--> running --stop--> stopped --start--> running
       ^                                   |
       +------------- reset ---------------+  (remove, then start: empty DB)

The container engine is the only source of truth; nothing is cached between
calls.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

from loguru import logger

from devfleet.orchestrator.models.enums import ContainerState, Step
from devfleet.orchestrator.models.status import BatchResult, DatabaseStatus
from devfleet.orchestrator.models.workspace import WorkspaceEntry
from devfleet.orchestrator.runtime.base import (
    ContainerRuntime,
    ContainerRuntimeError,
    ContainerSpec,
)
from devfleet.orchestrator.table import AllocationTable

WORKSPACE_LABEL = "devfleet.workspace"


class DatabaseStartTimeoutError(TimeoutError):
    """The container started but never accepted connections within the bound."""

    def __init__(self, workspace: str, container_name: str, timeout: float) -> None:
        self.workspace = workspace
        self.step = Step.DATABASE
        self.container_name = container_name
        self.timeout = timeout
        super().__init__(
            f"Workspace '{workspace}' [{self.step}]: {container_name} did not accept connections within {timeout:g}s"
        )


class DatabaseManager:
    """Create, start, stop and reset workspace database containers."""

    def __init__(
        self,
        table: AllocationTable,
        runtime: ContainerRuntime,
        *,
        ready_timeout: float = 30.0,
        ready_interval: float = 1.0,
    ) -> None:
        self._table = table
        self._runtime = runtime
        self._ready_timeout = ready_timeout
        self._ready_interval = ready_interval

    # -- Inspection ------------------------------------------------------------

    def status(self) -> list[DatabaseStatus]:
        """Probe every workspace in table order.  Never raises for probe failures."""
        unavailable: str | None = None
        try:
            self._runtime.ping()
        except ContainerRuntimeError as exc:
            unavailable = exc.reason
            logger.warning("Container runtime not usable: {}", exc.reason)

        rows: list[DatabaseStatus] = []
        for entry in self._table.entries:
            bundle = entry.bundle
            state: ContainerState | None = None
            error = unavailable
            if unavailable is None:
                try:
                    state = self._runtime.state(bundle.db_container_name)
                except ContainerRuntimeError as exc:
                    error = exc.reason
            rows.append(
                DatabaseStatus(
                    workspace=entry.identity,
                    container_name=bundle.db_container_name,
                    port=bundle.db_port,
                    state=state,
                    error=error,
                )
            )
        return rows

    def connection_url(self, workspace: str) -> str:
        """PostgreSQL URL the application uses to reach this workspace's database."""
        return self._table.database_url(workspace)

    # -- Lifecycle -------------------------------------------------------------

    def start(self, workspace: str) -> None:
        """Ensure the workspace database is running and accepting connections (idempotent)."""
        entry = self._table.lookup(workspace)
        name = entry.bundle.db_container_name

        with _attributed(entry.identity):
            self._runtime.ping()
            state = self._runtime.state(name)
            if state == ContainerState.ABSENT:
                logger.info(
                    "[{}] Creating database container {} on port {}", entry.identity, name, entry.bundle.db_port
                )
                self._runtime.create(self._container_spec(entry))
            elif state == ContainerState.STOPPED:
                logger.info("[{}] Starting existing container {}", entry.identity, name)
                self._runtime.start(name)
            else:
                logger.debug("[{}] Database {} already running", entry.identity, name)

            self._wait_ready(entry)

        logger.info("[{}] Database ready: {} (port {})", entry.identity, name, entry.bundle.db_port)

    def stop(self, workspace: str) -> None:
        """Stop the workspace database if running (idempotent)."""
        entry = self._table.lookup(workspace)
        name = entry.bundle.db_container_name

        with _attributed(entry.identity):
            self._runtime.ping()
            if self._runtime.state(name) == ContainerState.RUNNING:
                logger.info("[{}] Stopping database {}", entry.identity, name)
                self._runtime.stop(name)
            else:
                logger.info("[{}] Database {} not running", entry.identity, name)

    def reset(self, workspace: str) -> None:
        """Destroy all data: stop, remove, and recreate an empty container.

        Irreversible.  Confirmation is the caller's responsibility.
        """
        entry = self._table.lookup(workspace)
        name = entry.bundle.db_container_name

        with _attributed(entry.identity):
            self._runtime.ping()
            state = self._runtime.state(name)
            if state == ContainerState.RUNNING:
                self._runtime.stop(name)
            if state != ContainerState.ABSENT:
                logger.warning("[{}] Removing container {} (all data deleted)", entry.identity, name)
                self._runtime.remove(name)
            else:
                logger.info("[{}] Container {} does not exist", entry.identity, name)

        self.start(entry.identity)

    def stop_all(self) -> BatchResult:
        """Stop every workspace database, collecting failures instead of aborting.

        An unreachable engine is reported once (raised) rather than per row.
        """
        self._runtime.ping()

        result = BatchResult()
        for entry in self._table.entries:
            try:
                self.stop(entry.identity)
            except ContainerRuntimeError as exc:
                logger.error("[{}] Stop failed: {}", entry.identity, exc.reason)
                result.record_failure(entry.identity, exc)
            else:
                result.record_success(entry.identity)
        return result

    # -- Helpers ---------------------------------------------------------------

    def _container_spec(self, entry: WorkspaceEntry) -> ContainerSpec:
        db = self._table.database
        return ContainerSpec(
            name=entry.bundle.db_container_name,
            image=db.image,
            host_port=entry.bundle.db_port,
            container_port=db.container_port,
            environment={
                "POSTGRES_USER": db.user,
                "POSTGRES_PASSWORD": db.password,
                "POSTGRES_DB": entry.bundle.db_logical_name,
            },
            labels={WORKSPACE_LABEL: entry.identity},
        )

    def _wait_ready(self, entry: WorkspaceEntry) -> None:
        """Poll ``pg_isready`` over TCP until it succeeds or the timeout expires.

        The image's init phase runs a temporary server on the unix socket
        only, so probing TCP avoids reporting ready before the restart.
        """
        db = self._table.database
        name = entry.bundle.db_container_name
        command = ["pg_isready", "-h", "127.0.0.1", "-p", str(db.container_port), "-U", db.user]

        deadline = time.monotonic() + self._ready_timeout
        while True:
            if self._runtime.exec_ok(name, command):
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise DatabaseStartTimeoutError(entry.identity, name, self._ready_timeout)
            time.sleep(min(self._ready_interval, remaining))


@contextmanager
def _attributed(workspace: str) -> Iterator[None]:
    """Attach the workspace to runtime errors raised inside the block."""
    try:
        yield
    except ContainerRuntimeError as exc:
        if exc.workspace is None:
            raise exc.with_workspace(workspace) from exc
        raise
