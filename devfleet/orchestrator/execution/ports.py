"""Port reclamation.

Safe start is idempotent because it forcibly takes back the workspace's own
ports: whatever process is listening on them is terminated (SIGTERM, then
SIGKILL after a grace period), and the port is polled until free.  A port
that stays occupied is retried after a short delay, then reported as
``PortReclaimFailedError`` -- an un-killable holder is an operator-visible
condition.

Only ports passed in by the caller are touched; the supervisor passes its own
bundle's ports and nothing else.
"""

from __future__ import annotations

import os
import time
from collections.abc import Callable, Iterable

import psutil
from loguru import logger

from devfleet.orchestrator.models.enums import Step

ListenerFinder = Callable[[int], list[int | None]]
"""Returns the PIDs listening on a port.  ``None`` marks a holder whose PID is not visible."""


class PortReclaimFailedError(RuntimeError):
    """A process on an owned port resisted termination after all retries."""

    def __init__(self, workspace: str, port: int, pids: list[int | None]) -> None:
        self.workspace = workspace
        self.step = Step.RECLAIM_PORTS
        self.port = port
        self.pids = pids
        holders = ", ".join("unknown" if pid is None else str(pid) for pid in pids)
        super().__init__(f"Workspace '{workspace}' [{self.step}]: port {port} still held by pid(s) {holders}")


# ---------------------------------------------------------------------------
# Listener discovery
# ---------------------------------------------------------------------------


def find_listeners(port: int) -> list[int | None]:
    """PIDs with a TCP socket in LISTEN state on *port* (IPv4 or IPv6).

    ``psutil.net_connections`` needs elevated privileges on macOS; on
    ``AccessDenied`` fall back to per-process inspection, which sees every
    process owned by the current user.
    """
    try:
        connections = [(conn.pid, conn) for conn in psutil.net_connections(kind="inet")]
    except psutil.AccessDenied:
        connections = list(_per_process_connections())

    pids: list[int | None] = []
    for pid, conn in connections:
        if conn.status != psutil.CONN_LISTEN or not conn.laddr or conn.laddr.port != port:
            continue
        if pid not in pids:
            pids.append(pid)
    return pids


def _per_process_connections() -> Iterable[tuple[int, object]]:
    for proc in psutil.process_iter(["pid"]):
        try:
            for conn in proc.net_connections(kind="inet"):
                yield proc.pid, conn
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue


# ---------------------------------------------------------------------------
# Reclaimer
# ---------------------------------------------------------------------------


class PortReclaimer:
    """Frees ports by terminating their listeners, graceful then forceful."""

    def __init__(
        self,
        *,
        terminate_grace: float = 3.0,
        retries: int = 1,
        retry_delay: float = 1.0,
        poll_interval: float = 0.2,
        find: ListenerFinder = find_listeners,
    ) -> None:
        self._grace = terminate_grace
        self._retries = max(retries, 0)
        self._retry_delay = retry_delay
        self._poll_interval = poll_interval
        self._find = find

    def reclaim(self, workspace: str, ports: Iterable[int]) -> None:
        """Free every port in *ports* or raise ``PortReclaimFailedError``."""
        for port in ports:
            self._reclaim_port(workspace, port)

    def _reclaim_port(self, workspace: str, port: int) -> None:
        holders: list[int | None] = []
        for attempt in range(self._retries + 1):
            if attempt:
                logger.warning(
                    "[{}] Port {} still held by {}; retrying in {:g}s", workspace, port, holders, self._retry_delay
                )
                time.sleep(self._retry_delay)
            holders = self._free(workspace, port)
            if not holders:
                return
        raise PortReclaimFailedError(workspace, port, holders)

    def _free(self, workspace: str, port: int) -> list[int | None]:
        """One termination pass.  Returns the holders still present afterwards."""
        holders = self._find(port)
        if not holders:
            logger.debug("[{}] Port {} is free", workspace, port)
            return []

        procs: list[psutil.Process] = []
        for pid in holders:
            if pid is None or pid == os.getpid():
                continue
            try:
                proc = psutil.Process(pid)
                logger.info("[{}] Terminating pid {} ({}) on port {}", workspace, pid, proc.name(), port)
                proc.terminate()
                procs.append(proc)
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                logger.warning("[{}] Not permitted to terminate pid {} on port {}", workspace, pid, port)

        _, alive = psutil.wait_procs(procs, timeout=self._grace)
        for proc in alive:
            try:
                logger.warning("[{}] Killing pid {} on port {}", workspace, proc.pid, port)
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied:
                logger.warning("[{}] Not permitted to kill pid {} on port {}", workspace, proc.pid, port)
        if alive:
            psutil.wait_procs(alive, timeout=self._grace)

        # The socket can outlive the process briefly; poll until it is released.
        deadline = time.monotonic() + self._grace
        while True:
            remaining = self._find(port)
            if not remaining or time.monotonic() >= deadline:
                if not remaining:
                    logger.info("[{}] Port {} freed", workspace, port)
                return remaining
            time.sleep(self._poll_interval)
