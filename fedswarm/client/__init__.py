"""Client side of the swarm: transport, offline queue, sync state and orchestration."""

from .orchestrator import SyncOrchestrator
from .queue import OfflineQueue
from .state import SyncStateStore
from .transport import SwarmClient, validate_server_url

__all__ = [
    "OfflineQueue",
    "SwarmClient",
    "SyncOrchestrator",
    "SyncStateStore",
    "validate_server_url",
]
