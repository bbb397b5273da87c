"""Tests for command building and process pair handling."""

from __future__ import annotations

import os
import shlex
import sys
from pathlib import Path

import pytest

from devfleet.orchestrator.execution.launcher import LaunchError, build_command, launch
from devfleet.orchestrator.models.enums import ProcessRole, Step

_PYTHON = shlex.quote(sys.executable)


def test_build_command_formats_and_splits() -> None:
    argv = build_command("npm run dev -- --port {frontend_port} --strictPort", {"frontend_port": 3100})
    assert argv == ["npm", "run", "dev", "--", "--port", "3100", "--strictPort"]


def test_build_command_keeps_quoted_arguments() -> None:
    argv = build_command("sh -c 'echo {workspace}'", {"workspace": "Dev1"})
    assert argv == ["sh", "-c", "echo Dev1"]


def test_launch_missing_app_dir(tmp_path: Path) -> None:
    with pytest.raises(LaunchError) as exc_info:
        launch("Dev1", tmp_path / "nope", {ProcessRole.FRONTEND: "true"}, {}, {})
    assert exc_info.value.step == Step.LAUNCH
    assert "app directory not found" in str(exc_info.value)


def test_launch_unknown_template_field(tmp_path: Path) -> None:
    with pytest.raises(LaunchError, match="invalid frontend command"):
        launch("Dev1", tmp_path, {ProcessRole.FRONTEND: "serve --port {nope}"}, {}, {})


def test_launch_passes_environment_and_cwd(tmp_path: Path) -> None:
    script = "import os, pathlib; pathlib.Path('out.txt').write_text(os.environ['FRONTEND_PORT'])"
    pair = launch(
        "Dev1",
        tmp_path,
        {ProcessRole.FRONTEND: f"{_PYTHON} -c {shlex.quote(script)}"},
        {},
        {**os.environ, "FRONTEND_PORT": "3100"},
    )

    assert pair.wait(poll_interval=0.05) == 0
    assert (tmp_path / "out.txt").read_text() == "3100"


def test_wait_returns_first_exit_code_and_stops_the_rest(tmp_path: Path) -> None:
    pair = launch(
        "Dev1",
        tmp_path,
        {
            ProcessRole.FRONTEND: f'{_PYTHON} -c "import time; time.sleep(60)"',
            ProcessRole.BACKEND: f'{_PYTHON} -c "raise SystemExit(7)"',
        },
        {},
        dict(os.environ),
    )

    assert pair.wait(poll_interval=0.05) == 7
    assert not pair.running()
    assert pair.processes[ProcessRole.FRONTEND].poll() is not None


def test_launch_failure_stops_started_processes(tmp_path: Path) -> None:
    commands = {
        ProcessRole.FRONTEND: f'{_PYTHON} -c "import time; time.sleep(60)"',
        ProcessRole.BACKEND: "definitely-not-a-real-binary-xyz",
    }
    with pytest.raises(LaunchError, match="cannot start backend") as exc_info:
        launch("Dev1", tmp_path, commands, {}, dict(os.environ), detach=True, log_path=tmp_path / "run.log")

    assert exc_info.value.workspace == "Dev1"
    assert (tmp_path / "run.log").exists()


def test_detached_output_goes_to_log(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "webapp-Dev1-safe-start.log"
    pair = launch(
        "Dev1",
        tmp_path,
        {ProcessRole.FRONTEND: f"{_PYTHON} -c \"print('hello from Dev1')\""},
        {},
        dict(os.environ),
        detach=True,
        log_path=log_path,
    )

    assert pair.wait(poll_interval=0.05) == 0
    assert "hello from Dev1" in log_path.read_text()
