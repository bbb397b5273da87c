"""Launching and tracking the application process pair.

Commands come from the table's ``[app]`` section as template strings.  They
are formatted with the workspace's template fields, split with ``shlex`` and
started in the worktree's app directory with the materialised environment.

A ``ProcessPair`` only lives as long as the invoking CLI.  Nothing about it
is persisted: afterwards the processes are identified solely by the ports
they hold.
"""

from __future__ import annotations

import shlex
import subprocess
import time
from collections.abc import Mapping
from contextlib import ExitStack
from dataclasses import dataclass, field
from pathlib import Path

import psutil
from loguru import logger

from devfleet.orchestrator.models.enums import ProcessRole, Step


class LaunchError(RuntimeError):
    """A supervisor step after the database check failed (env, clean, launch)."""

    def __init__(self, workspace: str, reason: str, step: Step = Step.LAUNCH) -> None:
        self.workspace = workspace
        self.step = step
        self.reason = reason
        super().__init__(f"Workspace '{workspace}' [{step}]: {reason}")


@dataclass
class ProcessPair:
    """Handles to the processes launched for one workspace."""

    workspace: str
    processes: dict[ProcessRole, subprocess.Popen] = field(default_factory=dict)

    @property
    def pids(self) -> dict[ProcessRole, int]:
        return {role: proc.pid for role, proc in self.processes.items()}

    def running(self) -> bool:
        """``True`` while every process is still alive."""
        return all(proc.poll() is None for proc in self.processes.values())

    def wait(self, poll_interval: float = 0.5) -> int:
        """Block until any process exits, stop the rest, and return that exit code."""
        while True:
            for role, proc in self.processes.items():
                code = proc.poll()
                if code is not None:
                    logger.info("[{}] {} exited with code {}", self.workspace, role, code)
                    self.terminate()
                    return code
            time.sleep(poll_interval)

    def terminate(self, grace: float = 5.0) -> None:
        """Stop every process and its children: SIGTERM, then SIGKILL after *grace*."""
        for role, proc in self.processes.items():
            if proc.poll() is not None:
                continue
            logger.info("[{}] Stopping {} (pid {})", self.workspace, role, proc.pid)
            _terminate_tree(proc.pid, grace)
            try:
                proc.wait(timeout=grace)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()


def build_command(template: str, fields: Mapping[str, object]) -> list[str]:
    """Format a command template and split it into argv."""
    return shlex.split(template.format(**fields))


def launch(
    workspace: str,
    app_dir: Path,
    commands: Mapping[ProcessRole, str],
    fields: Mapping[str, object],
    env: Mapping[str, str],
    *,
    detach: bool = False,
    log_path: Path | None = None,
) -> ProcessPair:
    """Start one process per role.  On any failure, already-started ones are stopped.

    With *detach* the children get their own session so they outlive the
    CLI; their output goes to *log_path* (or is discarded).
    """
    if not app_dir.is_dir():
        raise LaunchError(workspace, f"app directory not found: {app_dir}")

    pair = ProcessPair(workspace=workspace)
    with ExitStack() as stack:
        stdout = None
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            stdout = stack.enter_context(log_path.open("ab"))
        elif detach:
            stdout = subprocess.DEVNULL

        for role, template in commands.items():
            try:
                argv = build_command(template, fields)
            except (KeyError, ValueError) as exc:
                pair.terminate()
                raise LaunchError(workspace, f"invalid {role} command {template!r}: {exc}") from exc
            if not argv:
                pair.terminate()
                raise LaunchError(workspace, f"empty {role} command")

            try:
                proc = subprocess.Popen(  # noqa: S603
                    argv,
                    cwd=app_dir,
                    env=dict(env),
                    stdin=subprocess.DEVNULL if detach else None,
                    stdout=stdout,
                    stderr=subprocess.STDOUT if stdout is not None else None,
                    start_new_session=detach,
                )
            except OSError as exc:
                pair.terminate()
                raise LaunchError(workspace, f"cannot start {role} ({argv[0]}): {exc}") from exc

            logger.info("[{}] Started {} (pid {}): {}", workspace, role, proc.pid, shlex.join(argv))
            pair.processes[role] = proc

    return pair


def _terminate_tree(pid: int, grace: float) -> None:
    """Terminate *pid* and all of its descendants (npm -> node, etc.)."""
    try:
        parent = psutil.Process(pid)
        procs = [*parent.children(recursive=True), parent]
    except psutil.NoSuchProcess:
        return

    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            continue

    _, alive = psutil.wait_procs(procs, timeout=grace)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
