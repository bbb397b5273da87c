"""Safe start: idempotent (re)launch of one workspace's development stack.

Steps run strictly in this order:

1. Look up the workspace bundle (``UnknownWorkspaceError`` aborts before any
   side effect).
2. Reclaim the bundle's own ports by terminating whatever listens on them.
3. Ensure the workspace database is running and accepting connections.
4. Materialise the environment (process env + worktree-local env files).
5. Optionally wipe build artifacts (``clean``).
6. Launch the frontend and backend processes.

Repeating a safe start -- from the same terminal or from another agent --
always converges to "this workspace owns its ports now".  Recovery after an
interrupted run is simply running it again.
"""

from __future__ import annotations

import shlex
import shutil
import subprocess
import time
from collections.abc import Mapping
from pathlib import Path

from loguru import logger

from devfleet.orchestrator.execution.environment import (
    materialize_environment,
    template_fields,
    workspace_variables,
    write_env_files,
)
from devfleet.orchestrator.execution.launcher import LaunchError, ProcessPair, launch
from devfleet.orchestrator.execution.ports import PortReclaimer
from devfleet.orchestrator.managers.database import DatabaseManager
from devfleet.orchestrator.models.enums import ProcessRole, Step
from devfleet.orchestrator.models.workspace import WorkspaceEntry
from devfleet.orchestrator.table import AllocationTable


class Supervisor:
    """Runs the safe-start sequence for a workspace."""

    def __init__(
        self,
        table: AllocationTable,
        databases: DatabaseManager,
        reclaimer: PortReclaimer,
        *,
        settle_delay: float = 2.0,
        reclaim_tool_port: bool = False,
    ) -> None:
        self._table = table
        self._databases = databases
        self._reclaimer = reclaimer
        self._settle_delay = settle_delay
        self._reclaim_tool_port = reclaim_tool_port

    def safe_start(
        self,
        workspace: str,
        worktree: Path,
        *,
        clean: bool = False,
        detach: bool = False,
        log_path: Path | None = None,
    ) -> ProcessPair:
        """(Re)start *workspace* from the worktree at *worktree*."""
        entry = self._table.lookup(workspace)
        identity = entry.identity
        bundle = entry.bundle
        app_dir = worktree / self._table.app.workdir

        logger.info(
            "[{}] Safe start: frontend :{} backend :{} database {} (:{})",
            identity,
            bundle.frontend_port,
            bundle.backend_port,
            bundle.db_container_name,
            bundle.db_port,
        )

        ports = list(bundle.app_ports)
        if self._reclaim_tool_port:
            ports.append(bundle.tool_port)
        self._reclaim(identity, ports)

        self._databases.start(identity)

        env = self._prepare_environment(entry, app_dir)

        if clean:
            self._clean(identity, app_dir, env)

        commands = {ProcessRole.FRONTEND: self._table.app.frontend_command}
        if self._table.app.backend_command:
            commands[ProcessRole.BACKEND] = self._table.app.backend_command

        pair = launch(
            identity,
            app_dir,
            commands,
            template_fields(self._table, identity),
            env,
            detach=detach,
            log_path=log_path,
        )
        logger.info(
            "[{}] Running: frontend http://localhost:{} | backend http://localhost:{}",
            identity,
            bundle.frontend_port,
            bundle.backend_port,
        )
        return pair

    def start_tool(
        self,
        workspace: str,
        worktree: Path,
        *,
        detach: bool = False,
        log_path: Path | None = None,
    ) -> ProcessPair:
        """(Re)start the auxiliary database tool on the workspace's ``tool_port``."""
        entry = self._table.lookup(workspace)
        identity = entry.identity
        tool_command = self._table.app.tool_command
        if not tool_command:
            raise LaunchError(identity, "no tool_command configured in the allocation table")

        app_dir = worktree / self._table.app.workdir
        self._reclaim(identity, [entry.bundle.tool_port])
        self._databases.start(identity)
        env = self._prepare_environment(entry, app_dir, write_files=False)

        pair = launch(
            identity,
            app_dir,
            {ProcessRole.TOOL: tool_command},
            template_fields(self._table, identity),
            env,
            detach=detach,
            log_path=log_path,
        )
        logger.info("[{}] Tool running: http://localhost:{}", identity, entry.bundle.tool_port)
        return pair

    # -- Steps -----------------------------------------------------------------

    def _reclaim(self, identity: str, ports: list[int]) -> None:
        self._reclaimer.reclaim(identity, ports)
        if self._settle_delay > 0:
            logger.debug("[{}] Waiting {:g}s for ports to settle", identity, self._settle_delay)
            time.sleep(self._settle_delay)

    def _prepare_environment(self, entry: WorkspaceEntry, app_dir: Path, *, write_files: bool = True) -> dict[str, str]:
        identity = entry.identity
        if not app_dir.is_dir():
            raise LaunchError(identity, f"app directory not found: {app_dir}", step=Step.ENVIRONMENT)

        try:
            variables = workspace_variables(self._table, identity)
        except (KeyError, IndexError, ValueError) as exc:
            raise LaunchError(identity, f"invalid extra_env template: {exc!r}", step=Step.ENVIRONMENT) from exc
        if write_files:
            try:
                written = write_env_files(app_dir, self._table.app, variables)
            except OSError as exc:
                raise LaunchError(identity, f"cannot write env files: {exc}", step=Step.ENVIRONMENT) from exc
            for path in written:
                logger.info("[{}] Wrote {}", identity, path)
        return materialize_environment(variables)

    def _clean(self, identity: str, app_dir: Path, env: Mapping[str, str]) -> None:
        """Full artifact wipe: run the clean command, then delete the clean paths."""
        app = self._table.app
        if app.clean_command:
            argv = shlex.split(app.clean_command)
            logger.info("[{}] Running {}", identity, app.clean_command)
            try:
                result = subprocess.run(argv, cwd=app_dir, env=dict(env), check=False)  # noqa: S603
            except OSError as exc:
                raise LaunchError(identity, f"cannot run {argv[0]}: {exc}", step=Step.CLEAN) from exc
            if result.returncode != 0:
                msg = f"{app.clean_command!r} exited with code {result.returncode}"
                raise LaunchError(identity, msg, step=Step.CLEAN)

        root = app_dir.resolve()
        for rel in app.clean_paths:
            target = (app_dir / rel).resolve()
            if target == root or not target.is_relative_to(root):
                raise LaunchError(identity, f"clean path escapes the app directory: {rel}", step=Step.CLEAN)
            if not target.exists():
                continue
            logger.info("[{}] Removing {}", identity, target)
            try:
                if target.is_dir():
                    shutil.rmtree(target)
                else:
                    target.unlink()
            except OSError as exc:
                raise LaunchError(identity, f"cannot remove {target}: {exc}", step=Step.CLEAN) from exc
