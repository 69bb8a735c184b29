"""Control-plane public API."""

from sitebox_orchestrator.control_plane.host_lock import HostLock
from sitebox_orchestrator.control_plane.orchestrator import OpenReport, Orchestrator, StorageSettings

__all__ = [
    "HostLock",
    "OpenReport",
    "Orchestrator",
    "StorageSettings",
]
