"""
fedswarm - federated sharing of anonymized experience weights.

Independent, offline-first installations package local usage statistics
into normalized, anonymized weight vectors, upload them to a shared
aggregation service, and receive back a global model folded from every
contributor with sample-size-weighted averaging (FedAvg). Raw data never
leaves the machine.

Quick Start:

    from fedswarm import ClientConfig, SwarmClient, SyncOrchestrator, SyncStateStore

    config = ClientConfig(server_url="http://127.0.0.1:8080")
    async with SwarmClient(config) as client:
        orchestrator = SyncOrchestrator(
            client,
            SyncStateStore.from_config(config),
            pattern_source=load_my_patterns,
        )
        result = await orchestrator.force_sync()
        print(result.version, result.merged)

Packaging Without a Service:

    from fedswarm import ToolPattern, merge_weights, package_patterns

    package = package_patterns([ToolPattern("Read", confidence=0.6, sample_size=5)])
    merged = merge_weights(package.weights, global_weights, ratio=(0.3, 0.7))

Error Handling:

    from fedswarm import ConfigurationError, FedSwarmError

    try:
        SwarmClient(ClientConfig(server_url="http://example.org"))
    except ConfigurationError as e:
        print(f"Rejected: {e}")
"""

__version__ = "0.1.0"

from .client import OfflineQueue, SwarmClient, SyncOrchestrator, SyncStateStore
from .codec import (
    anonymize_key,
    compute_checksum,
    denormalize_duration,
    denormalize_file_count,
    denormalize_latency,
    merge_weights,
    normalize_duration,
    normalize_file_count,
    normalize_latency,
    package_patterns,
    unpack_weights,
    verify_checksum,
)
from .config import ClientConfig, ServerConfig
from .exceptions import (
    ConfigurationError,
    ConnectivityError,
    FedSwarmError,
    IntegrityError,
    RequestRejectedError,
    ServiceUnavailableError,
    StorageError,
    TransportError,
    ValidationError,
)
from .models import (
    CommandPattern,
    ErrorPattern,
    PackagedWeights,
    PackageResult,
    SyncState,
    TeamPattern,
    ToolPattern,
    WeightSnapshot,
    pattern_from_dict,
)
from .privacy import scrub_pii

__all__ = [
    "__version__",
    # Client
    "OfflineQueue",
    "SwarmClient",
    "SyncOrchestrator",
    "SyncStateStore",
    # Codec
    "anonymize_key",
    "compute_checksum",
    "denormalize_duration",
    "denormalize_file_count",
    "denormalize_latency",
    "merge_weights",
    "normalize_duration",
    "normalize_file_count",
    "normalize_latency",
    "package_patterns",
    "unpack_weights",
    "verify_checksum",
    # Config
    "ClientConfig",
    "ServerConfig",
    # Exceptions
    "ConfigurationError",
    "ConnectivityError",
    "FedSwarmError",
    "IntegrityError",
    "RequestRejectedError",
    "ServiceUnavailableError",
    "StorageError",
    "TransportError",
    "ValidationError",
    # Models
    "CommandPattern",
    "ErrorPattern",
    "PackagedWeights",
    "PackageResult",
    "SyncState",
    "TeamPattern",
    "ToolPattern",
    "WeightSnapshot",
    "pattern_from_dict",
    # Privacy
    "scrub_pii",
]
