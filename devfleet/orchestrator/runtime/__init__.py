"""Container runtime adapters for workspace databases."""

from devfleet.orchestrator.runtime.base import (
    ContainerOperationError,
    ContainerRuntime,
    ContainerRuntimeError,
    ContainerRuntimeUnavailableError,
    ContainerSpec,
)
from devfleet.orchestrator.runtime.docker_engine import DockerContainerRuntime

__all__ = [
    "ContainerOperationError",
    "ContainerRuntime",
    "ContainerRuntimeError",
    "ContainerRuntimeUnavailableError",
    "ContainerSpec",
    "DockerContainerRuntime",
]
