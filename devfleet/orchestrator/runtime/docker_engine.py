"""Docker implementation of the ContainerRuntime protocol.

Uses the docker SDK (``docker.from_env``), which honours ``DOCKER_HOST`` and
the usual Docker context environment.  The client is created lazily so that
commands which never touch a container (``env``, table checks) work without
a daemon.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from loguru import logger

from devfleet.orchestrator.models.enums import ContainerState
from devfleet.orchestrator.runtime.base import (
    ContainerOperationError,
    ContainerRuntimeUnavailableError,
    ContainerSpec,
)

if TYPE_CHECKING:
    from docker import DockerClient
    from docker.models.containers import Container

STOP_TIMEOUT = 10
"""Seconds docker waits for postgres to shut down before SIGKILL."""


class DockerContainerRuntime:
    """Container runtime backed by the local Docker engine."""

    def __init__(self, client: DockerClient | None = None) -> None:
        self._client = client

    @property
    def client(self) -> DockerClient:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as exc:
                msg = f"Docker is not running or not installed ({exc})"
                raise ContainerRuntimeUnavailableError(msg) from exc
        return self._client

    # -- Probe -----------------------------------------------------------------

    def ping(self) -> None:
        with _translate("ping"):
            self.client.ping()

    def state(self, name: str) -> ContainerState:
        container = self._get(name)
        if container is None:
            return ContainerState.ABSENT
        if container.status == "running":
            return ContainerState.RUNNING
        return ContainerState.STOPPED

    # -- Mutation --------------------------------------------------------------

    def create(self, spec: ContainerSpec) -> None:
        logger.debug("docker run {} ({}, {}->{})", spec.name, spec.image, spec.host_port, spec.container_port)
        with _translate(f"create {spec.name}"):
            self.client.containers.run(
                spec.image,
                name=spec.name,
                detach=True,
                environment=spec.environment,
                ports={f"{spec.container_port}/tcp": spec.host_port},
                labels=spec.labels,
            )

    def start(self, name: str) -> None:
        container = self._require(name)
        with _translate(f"start {name}"):
            container.start()

    def stop(self, name: str) -> None:
        container = self._get(name)
        if container is None:
            return
        with _translate(f"stop {name}"):
            container.stop(timeout=STOP_TIMEOUT)

    def remove(self, name: str) -> None:
        container = self._get(name)
        if container is None:
            return
        with _translate(f"remove {name}"):
            container.remove(force=True, v=True)

    def exec_ok(self, name: str, command: list[str]) -> bool:
        container = self._get(name)
        if container is None:
            return False
        try:
            with _translate(f"exec in {name}"):
                result = container.exec_run(command)
        except ContainerOperationError as exc:
            # Exec against a container that is still starting is refused (409).
            logger.debug("exec {} in {} refused: {}", command, name, exc)
            return False
        return result.exit_code == 0

    # -- Helpers ---------------------------------------------------------------

    def _get(self, name: str) -> Container | None:
        try:
            with _translate(f"inspect {name}"):
                return self.client.containers.get(name)
        except ContainerOperationError as exc:
            if isinstance(exc.__cause__, NotFound):
                return None
            raise

    def _require(self, name: str) -> Container:
        container = self._get(name)
        if container is None:
            msg = f"container {name} does not exist"
            raise ContainerOperationError(msg)
        return container


@contextmanager
def _translate(action: str) -> Iterator[None]:
    """Map docker SDK / transport errors onto the runtime error taxonomy."""
    try:
        yield
    except ImageNotFound as exc:
        msg = f"docker {action} failed: image not found ({exc.explanation})"
        raise ContainerOperationError(msg) from exc
    except APIError as exc:
        msg = f"docker {action} failed: {exc.explanation or exc}"
        raise ContainerOperationError(msg) from exc
    except (DockerException, OSError) as exc:
        # requests' ConnectionError is an OSError: the daemon went away.
        msg = f"Docker is not reachable ({exc})"
        raise ContainerRuntimeUnavailableError(msg) from exc
