"""Safe-start pipeline: port reclamation, environment, launch, supervision."""

from devfleet.orchestrator.execution.launcher import LaunchError, ProcessPair
from devfleet.orchestrator.execution.ports import PortReclaimer, PortReclaimFailedError
from devfleet.orchestrator.execution.supervisor import Supervisor

__all__ = [
    "LaunchError",
    "PortReclaimFailedError",
    "PortReclaimer",
    "ProcessPair",
    "Supervisor",
]
