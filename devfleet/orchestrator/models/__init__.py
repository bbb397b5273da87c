"""Data models for the orchestrator."""

from devfleet.orchestrator.models.enums import ContainerState, ProcessRole, Step
from devfleet.orchestrator.models.status import BatchResult, DatabaseStatus
from devfleet.orchestrator.models.workspace import (
    AllocationTableModel,
    AppSpec,
    DatabaseSpec,
    ResourceBundle,
    WorkspaceEntry,
)

__all__ = [
    # Table
    "AllocationTableModel",
    "AppSpec",
    # Status
    "BatchResult",
    # Enums
    "ContainerState",
    "DatabaseSpec",
    "DatabaseStatus",
    "ProcessRole",
    "ResourceBundle",
    "Step",
    "WorkspaceEntry",
]
