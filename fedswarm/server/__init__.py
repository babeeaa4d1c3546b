"""Aggregation service: FedAvg, versioned storage and the HTTP application."""

from .fedavg import federated_average
from .store import WeightStore, compute_diff

__all__ = [
    "WeightStore",
    "compute_diff",
    "federated_average",
]
