"""Shared enumerations used across the orchestrator."""

from __future__ import annotations

from enum import StrEnum

# -- Database container ------------------------------------------------------


class ContainerState(StrEnum):
    """Lifecycle state of a workspace database container."""

    ABSENT = "absent"
    STOPPED = "stopped"
    RUNNING = "running"


# -- Supervisor --------------------------------------------------------------


class Step(StrEnum):
    """Named steps reported in errors and logs."""

    RESOLVE = "resolve"
    LOOKUP = "lookup"
    RECLAIM_PORTS = "reclaim-ports"
    DATABASE = "database"
    ENVIRONMENT = "environment"
    CLEAN = "clean"
    LAUNCH = "launch"


class ProcessRole(StrEnum):
    FRONTEND = "frontend"
    BACKEND = "backend"
    TOOL = "tool"
