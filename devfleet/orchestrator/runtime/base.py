"""Container runtime interface.

The database lifecycle manager talks to the container engine only through
this protocol, so the engine's own state is the single source of truth for
"is this database running" and tests can substitute an in-memory runtime.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from devfleet.orchestrator.models.enums import ContainerState, Step

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class ContainerRuntimeError(RuntimeError):
    """Base class for container engine failures."""

    def __init__(self, reason: str, *, workspace: str | None = None) -> None:
        self.reason = reason
        self.workspace = workspace
        self.step = Step.DATABASE
        if workspace is None:
            super().__init__(reason)
        else:
            super().__init__(f"Workspace '{workspace}' [{self.step}]: {reason}")

    def with_workspace(self, workspace: str) -> ContainerRuntimeError:
        """Copy of this error attributed to *workspace*."""
        return type(self)(self.reason, workspace=workspace)


class ContainerRuntimeUnavailableError(ContainerRuntimeError):
    """The container engine itself is not reachable (not installed / not running)."""


class ContainerOperationError(ContainerRuntimeError):
    """The engine is reachable but rejected an operation."""


# ---------------------------------------------------------------------------
# Spec
# ---------------------------------------------------------------------------


class ContainerSpec(BaseModel):
    """Everything needed to create a database container."""

    name: str
    image: str
    host_port: int
    container_port: int
    environment: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ContainerRuntime(Protocol):
    """Synchronous protocol over a single-host container engine.

    Every method raises ``ContainerRuntimeUnavailableError`` when the engine
    cannot be reached and ``ContainerOperationError`` when it refuses a call.
    """

    def ping(self) -> None:
        """Check the engine is reachable."""
        ...

    def state(self, name: str) -> ContainerState:
        """Current state of the named container (``ABSENT`` if it does not exist)."""
        ...

    def create(self, spec: ContainerSpec) -> None:
        """Create and start a new container."""
        ...

    def start(self, name: str) -> None:
        """Start an existing, stopped container."""
        ...

    def stop(self, name: str) -> None:
        """Stop a container.  No-op if missing or already stopped."""
        ...

    def remove(self, name: str) -> None:
        """Force-remove a container and its anonymous volumes.  No-op if missing."""
        ...

    def exec_ok(self, name: str, command: list[str]) -> bool:
        """Run *command* inside the container; ``True`` if it exits 0."""
        ...
