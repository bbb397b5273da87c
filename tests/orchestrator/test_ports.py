"""Port reclamation tests.

Listeners are real Python processes bound to free ephemeral ports on
127.0.0.1, so these exercise psutil discovery and SIGTERM/SIGKILL escalation
end to end.
"""

from __future__ import annotations

import os
import subprocess
import sys
import textwrap

import pytest

from devfleet.orchestrator.execution.ports import PortReclaimer, PortReclaimFailedError, find_listeners
from devfleet.orchestrator.models.enums import Step
from tests.helpers import free_port, is_listening, wait_listening

_STUBBORN_SERVER = textwrap.dedent(
    """
    import signal, socket, sys, time
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    s = socket.socket()
    s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    s.bind(("127.0.0.1", int(sys.argv[1])))
    s.listen()
    time.sleep(120)
    """
)


def test_find_listeners_sees_server(listener) -> None:
    port = free_port()
    proc = listener(port)

    assert proc.pid in find_listeners(port)


def test_find_listeners_on_free_port() -> None:
    assert find_listeners(free_port()) == []


def test_reclaim_terminates_holder(listener, fast_reclaimer: PortReclaimer) -> None:
    port = free_port()
    proc = listener(port)

    fast_reclaimer.reclaim("Dev1", [port])

    proc.wait(timeout=5)
    assert not is_listening(port)
    assert find_listeners(port) == []


def test_reclaim_leaves_other_ports_alone(listener, fast_reclaimer: PortReclaimer) -> None:
    owned, foreign = free_port(), free_port()
    owned_proc = listener(owned)
    foreign_proc = listener(foreign)

    fast_reclaimer.reclaim("Dev1", [owned])

    owned_proc.wait(timeout=5)
    assert foreign_proc.poll() is None
    assert is_listening(foreign)


def test_reclaim_escalates_to_kill() -> None:
    port = free_port()
    proc = subprocess.Popen([sys.executable, "-c", _STUBBORN_SERVER, str(port)])
    try:
        wait_listening(port)
        reclaimer = PortReclaimer(terminate_grace=0.5, retries=0, poll_interval=0.05)

        reclaimer.reclaim("Dev1", [port])

        proc.wait(timeout=5)
        assert find_listeners(port) == []
        assert not is_listening(port)
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.wait()


def test_reclaim_free_ports_is_noop() -> None:
    calls: list[int] = []

    def find(port: int) -> list[int | None]:
        calls.append(port)
        return []

    PortReclaimer(find=find).reclaim("Dev1", [3100, 3101])
    assert calls == [3100, 3101]


def test_reclaim_gives_up_after_retries() -> None:
    calls: list[int] = []

    def find(port: int) -> list[int | None]:
        calls.append(port)
        return [None]

    reclaimer = PortReclaimer(terminate_grace=0.05, retries=2, retry_delay=0.01, poll_interval=0.01, find=find)
    with pytest.raises(PortReclaimFailedError) as exc_info:
        reclaimer.reclaim("Dev1", [3100, 3101])

    err = exc_info.value
    assert err.workspace == "Dev1"
    assert err.port == 3100
    assert err.pids == [None]
    assert err.step == Step.RECLAIM_PORTS
    assert "3100" in str(err)
    assert "unknown" in str(err)
    # The second port is never attempted.
    assert set(calls) == {3100}


def test_reclaim_never_signals_itself() -> None:
    answers = iter([[os.getpid()], []])

    def find(port: int) -> list[int | None]:
        return next(answers, [])

    PortReclaimer(terminate_grace=0.1, poll_interval=0.01, find=find).reclaim("Dev1", [3100])
