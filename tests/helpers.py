"""Test helpers shared across modules: a fake container runtime, table data, real listeners."""

from __future__ import annotations

import shlex
import socket
import sys
import time

from devfleet.orchestrator.models.enums import ContainerState
from devfleet.orchestrator.runtime.base import (
    ContainerOperationError,
    ContainerRuntimeUnavailableError,
    ContainerSpec,
)

# ---------------------------------------------------------------------------
# Fake container runtime
# ---------------------------------------------------------------------------


class FakeContainerRuntime:
    """In-memory ContainerRuntime.  Each created container gets a new generation number."""

    def __init__(self) -> None:
        self.available = True
        self.containers: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []
        self.never_ready: set[str] = set()
        self.broken: set[str] = set()
        self.ping_error: Exception | None = None
        self._generation = 0

    def _check(self, name: str | None = None) -> None:
        if not self.available:
            msg = "Docker is not running"
            raise ContainerRuntimeUnavailableError(msg)
        if name is not None and name in self.broken:
            msg = f"docker inspect {name} failed: boom"
            raise ContainerOperationError(msg)

    def ping(self) -> None:
        self._check()
        if self.ping_error is not None:
            raise self.ping_error

    def state(self, name: str) -> ContainerState:
        self._check(name)
        container = self.containers.get(name)
        return container["state"] if container else ContainerState.ABSENT

    def create(self, spec: ContainerSpec) -> None:
        self._check(spec.name)
        if spec.name in self.containers:
            msg = f"container name {spec.name} already in use"
            raise ContainerOperationError(msg)
        self._generation += 1
        self.containers[spec.name] = {"state": ContainerState.RUNNING, "spec": spec, "generation": self._generation}
        self.calls.append(("create", spec.name))

    def start(self, name: str) -> None:
        self._check(name)
        self.containers[name]["state"] = ContainerState.RUNNING
        self.calls.append(("start", name))

    def stop(self, name: str) -> None:
        self._check(name)
        if name in self.containers:
            self.containers[name]["state"] = ContainerState.STOPPED
        self.calls.append(("stop", name))

    def remove(self, name: str) -> None:
        self._check(name)
        self.containers.pop(name, None)
        self.calls.append(("remove", name))

    def exec_ok(self, name: str, command: list[str]) -> bool:
        self._check(name)
        container = self.containers.get(name)
        if container is None or container["state"] != ContainerState.RUNNING:
            return False
        return name not in self.never_ready


# ---------------------------------------------------------------------------
# Table data
# ---------------------------------------------------------------------------


def make_bundle(frontend_port: int, db_port: int, tool_port: int, container: str) -> dict:
    """Bundle dict with ``backend_port = frontend_port + 1``."""
    return {
        "frontend_port": frontend_port,
        "backend_port": frontend_port + 1,
        "db_port": db_port,
        "tool_port": tool_port,
        "db_container_name": container,
    }


def table_data() -> dict:
    """Three-workspace table: ``develop`` (bare, alias ``main``), ``Dev1`` and ``Dev2``."""
    return {
        "project": "webapp",
        "workspaces": [
            {
                "identity": "develop",
                "suffix": "",
                "aliases": ["main"],
                "bundle": make_bundle(3000, 5432, 5555, "wasp-dev-db-develop"),
            },
            {"identity": "Dev1", "suffix": "-Dev1", "bundle": make_bundle(3100, 5433, 5556, "wasp-dev-db-dev1")},
            {"identity": "Dev2", "suffix": "-Dev2", "bundle": make_bundle(3200, 5434, 5557, "wasp-dev-db-dev2")},
        ],
    }


# ---------------------------------------------------------------------------
# Real processes on real ports
# ---------------------------------------------------------------------------


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def is_listening(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.settimeout(0.2)
        return s.connect_ex(("127.0.0.1", port)) == 0


def wait_listening(port: int, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if is_listening(port):
            return
        time.sleep(0.05)
    msg = f"nothing listening on port {port} after {timeout}s"
    raise TimeoutError(msg)


def http_server_command(port_field: str) -> str:
    """Command template for a Python HTTP server bound to ``{port_field}``."""
    return f"{shlex.quote(sys.executable)} -m http.server {{{port_field}}} --bind 127.0.0.1"
