"""Federated Averaging over stored weight snapshots.

Each contributor's influence on a key is proportional to its sample size
for that key, so a client that observed a tool 900 times outweighs one that
observed it 10 times.
"""

from __future__ import annotations

import copy
from collections.abc import Sequence
from typing import Any, Union

from ..models import CATEGORIES, WeightSnapshot

PRECISION = 4

SnapshotLike = Union[WeightSnapshot, dict[str, Any]]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _weights_of(snapshot: SnapshotLike) -> dict[str, Any]:
    if isinstance(snapshot, WeightSnapshot):
        return snapshot.weights or {}
    return snapshot.get("weights") or {}


def _average_entry(contributors: list[tuple[dict[str, Any], float]]) -> dict[str, Any]:
    """Combine one key's entries. ``contributors`` pairs each entry with its weight."""
    result: dict[str, Any] = {}
    field_names: dict[str, None] = {}
    for entry, _weight in contributors:
        field_names.update(dict.fromkeys(entry))

    for name in field_names:
        if name == "sampleSize":
            result[name] = sum(
                entry.get("sampleSize") or 0
                for entry, _weight in contributors
                if _is_number(entry.get("sampleSize"))
            )
            continue

        numeric = [(entry[name], weight) for entry, weight in contributors if _is_number(entry.get(name))]
        if numeric:
            result[name] = round(sum(value * weight for value, weight in numeric), PRECISION)
            continue

        # Non-numeric: value from the largest contributor, earliest on ties
        best_entry = None
        best_size = None
        for entry, _weight in contributors:
            if name not in entry:
                continue
            size = _sample_size(entry)
            if best_size is None or size > best_size:
                best_entry, best_size = entry, size
        if best_entry is not None:
            result[name] = best_entry[name]

    return result


def _sample_size(entry: dict[str, Any]) -> float:
    size = entry.get("sampleSize")
    return size if _is_number(size) else 1


def federated_average(snapshots: Sequence[SnapshotLike] | None) -> dict[str, Any]:
    """Merge snapshots into one global weight set.

    Snapshots must be in insertion order (oldest first); ties between equal
    sample sizes are resolved in favor of the earlier snapshot.
    """
    if not snapshots:
        return {}
    if len(snapshots) == 1:
        return copy.deepcopy(_weights_of(snapshots[0]))

    merged: dict[str, Any] = {}

    for category in CATEGORIES:
        per_key: dict[str, list[dict[str, Any]]] = {}
        for snapshot in snapshots:
            for key, entry in (_weights_of(snapshot).get(category) or {}).items():
                if isinstance(entry, dict):
                    per_key.setdefault(key, []).append(entry)

        merged_category: dict[str, Any] = {}
        for key, entries in per_key.items():
            sizes = [_sample_size(entry) for entry in entries]
            total = sum(sizes)
            if total > 0:
                weights = [size / total for size in sizes]
            else:
                weights = [1 / len(entries)] * len(entries)
            merged_category[key] = _average_entry(list(zip(entries, weights)))

        merged[category] = merged_category

    return merged
