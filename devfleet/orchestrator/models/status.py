"""Read models returned by inspection and batch operations."""

from __future__ import annotations

from pydantic import BaseModel, Field

from devfleet.orchestrator.models.enums import ContainerState


class DatabaseStatus(BaseModel):
    """Live state of one workspace database, probed from the container runtime."""

    workspace: str
    container_name: str
    port: int
    state: ContainerState | None = None
    error: str | None = None
    """Probe error for this row only.  Status never aborts on a single failure."""

    @property
    def running(self) -> bool:
        return self.state == ContainerState.RUNNING


class BatchResult(BaseModel):
    """Outcome of a best-effort, report-all batch operation."""

    succeeded: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def record_success(self, workspace: str) -> None:
        self.succeeded.append(workspace)

    def record_failure(self, workspace: str, exc: BaseException) -> None:
        self.failed[workspace] = str(exc) or type(exc).__name__
