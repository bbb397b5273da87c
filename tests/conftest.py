"""Shared fixtures.

Unit tests never talk to Docker: ``FakeContainerRuntime`` implements the
``ContainerRuntime`` protocol over a dict and records every call.  Tests that
need a real engine are marked ``@pytest.mark.integration``.

Port reclamation and launch tests use real short-lived Python HTTP servers on
free ephemeral ports.
"""

from __future__ import annotations

import os
import subprocess
import sys
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from devfleet.orchestrator.execution.ports import PortReclaimer
from devfleet.orchestrator.managers.database import DatabaseManager
from devfleet.orchestrator.models.workspace import AllocationTableModel
from devfleet.orchestrator.settings import _get_settings_cached
from devfleet.orchestrator.table import AllocationTable
from tests.helpers import FakeContainerRuntime, table_data, wait_listening


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Drop DEVFLEET_* variables from the host and invalidate the settings cache."""
    for key in list(os.environ):
        if key.startswith("DEVFLEET_"):
            monkeypatch.delenv(key)
    _get_settings_cached.cache_clear()
    yield
    _get_settings_cached.cache_clear()


# -- Table and collaborators ---------------------------------------------------


@pytest.fixture
def table() -> AllocationTable:
    return AllocationTable(AllocationTableModel.model_validate(table_data()))


@pytest.fixture
def runtime() -> FakeContainerRuntime:
    return FakeContainerRuntime()


@pytest.fixture
def databases(table: AllocationTable, runtime: FakeContainerRuntime) -> DatabaseManager:
    return DatabaseManager(table, runtime, ready_timeout=0.2, ready_interval=0.01)


@pytest.fixture
def fast_reclaimer() -> PortReclaimer:
    return PortReclaimer(terminate_grace=2.0, retries=1, retry_delay=0.05, poll_interval=0.05)


@pytest.fixture
def worktree_root(tmp_path: Path) -> Path:
    """Base directory with ``webapp``, ``webapp-Dev1`` and ``webapp-Dev2`` worktrees, each with app/."""
    for name in ("webapp", "webapp-Dev1", "webapp-Dev2"):
        (tmp_path / name / "app").mkdir(parents=True)
    return tmp_path


# -- Real listeners ------------------------------------------------------------


@pytest.fixture
def listener() -> Iterator[Callable[[int], subprocess.Popen]]:
    """Start a Python HTTP server on a port and wait until it accepts connections.

    Every server started through the fixture is killed at teardown.
    """
    procs: list[subprocess.Popen] = []

    def _start(port: int) -> subprocess.Popen:
        proc = subprocess.Popen(
            [sys.executable, "-m", "http.server", str(port), "--bind", "127.0.0.1"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        procs.append(proc)
        wait_listening(port)
        return proc

    yield _start

    for proc in procs:
        if proc.poll() is None:
            proc.kill()
        proc.wait()
