"""Weight codec: local patterns <-> shareable weight vectors.

Packaging filters local patterns by eligibility, normalizes every quantity
into [0, 1] and anonymizes error keys. Unpacking reverses the normalizers so
the learning pipeline can consume global weights as ordinary patterns.
Merging blends a local and a global weight set with a fixed ratio.

Normalizers map [0, inf) onto (0, 1]:

    latency     1 / (1 + ms / 5000)
    duration    1 / (1 + ms / 60000)
    file count  1 / (1 + n / 20)
"""

from __future__ import annotations

import copy
import hashlib
import hmac
import json
import logging
import math
from collections.abc import Iterable, Sequence
from typing import Any

from .config import DEFAULT_MERGE_RATIO
from .exceptions import ConfigurationError, IntegrityError
from .models import (
    CATEGORIES,
    CommandPattern,
    CommandWeight,
    ErrorPattern,
    ErrorWeight,
    LocalPattern,
    PackagedWeights,
    PackageMetadata,
    PackageResult,
    TeamPattern,
    TeamWeight,
    ToolPattern,
    ToolWeight,
    pattern_from_dict,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

# Eligibility thresholds
MIN_SAMPLE_SIZE = 3
MIN_CONFIDENCE = 0.4

LATENCY_SCALE_MS = 5000
DURATION_SCALE_MS = 60000
FILE_COUNT_SCALE = 20

ANONYMIZED_KEY_LENGTH = 12
RATIO_TOLERANCE = 1e-9
MERGE_PRECISION = 4


# =============================================================================
# Normalizers
# =============================================================================


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def clamp01(value: Any) -> float:
    """Clamp to [0, 1]. Non-numbers and NaN become 0."""
    if not _is_number(value) or math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


def normalize_latency(ms: float) -> float:
    return clamp01(1.0 / (1 + max(0, ms) / LATENCY_SCALE_MS))


def denormalize_latency(normalized: float) -> float:
    if normalized <= 0:
        return math.inf
    return LATENCY_SCALE_MS * (1 / normalized - 1)


def normalize_duration(ms: float) -> float:
    return clamp01(1.0 / (1 + max(0, ms) / DURATION_SCALE_MS))


def denormalize_duration(normalized: float) -> float:
    if normalized <= 0:
        return math.inf
    return DURATION_SCALE_MS * (1 / normalized - 1)


def normalize_file_count(count: float) -> float:
    return clamp01(1.0 / (1 + max(0, count) / FILE_COUNT_SCALE))


def denormalize_file_count(normalized: float) -> float:
    if normalized <= 0:
        return math.inf
    return FILE_COUNT_SCALE * (1 / normalized - 1)


def _round_unbounded(value: float) -> float | int:
    return value if math.isinf(value) else round(value)


def _tristate(value: bool | None) -> float:
    if value is True:
        return 1.0
    if value is False:
        return 0.0
    return 0.5


# =============================================================================
# Hashing
# =============================================================================


def anonymize_key(key: str | None) -> str:
    """One-way hash of a key. SHA256[:12], ``"unknown"`` for empty keys."""
    if not key or not isinstance(key, str):
        return "unknown"
    return hashlib.sha256(key.encode()).hexdigest()[:ANONYMIZED_KEY_LENGTH]


def canonical_json(data: Any) -> str:
    """Serialize with sorted keys and compact separators."""
    if isinstance(data, PackagedWeights):
        data = data.to_dict()
    return json.dumps(data, sort_keys=True, separators=(",", ":"))


def compute_checksum(data: Any) -> str:
    """SHA-256 hex digest of the canonical JSON form of ``data``."""
    return hashlib.sha256(canonical_json(data).encode()).hexdigest()


def verify_checksum(data: Any, expected: str | None) -> bool:
    if not expected or not isinstance(expected, str):
        return False
    return hmac.compare_digest(compute_checksum(data), expected)


def require_checksum(data: Any, expected: str) -> None:
    """Raise IntegrityError unless ``expected`` is the checksum of ``data``."""
    computed = compute_checksum(data)
    if not verify_checksum(data, expected):
        raise IntegrityError(
            "Checksum verification failed", details={"expected": expected, "computed": computed}
        )


# =============================================================================
# Packaging
# =============================================================================


def is_eligible(pattern: LocalPattern) -> bool:
    """Whether a pattern carries enough evidence to be shared."""
    if not pattern.category:
        return False
    return (pattern.sample_size or 0) >= MIN_SAMPLE_SIZE and (
        pattern.confidence or 0
    ) >= MIN_CONFIDENCE


def _coerce_patterns(
    local_patterns: Iterable[LocalPattern | dict[str, Any]],
) -> list[LocalPattern]:
    patterns: list[LocalPattern] = []
    for item in local_patterns:
        pattern = pattern_from_dict(item) if isinstance(item, dict) else item
        if pattern is not None:
            patterns.append(pattern)
    return patterns


def package_patterns(
    local_patterns: Iterable[LocalPattern | dict[str, Any]] | None,
) -> PackageResult:
    """Package local patterns into normalized, anonymized weight vectors.

    Accepts typed patterns or their pipeline JSON form. Ineligible patterns
    and unknown kinds are skipped; they still count towards ``patternCount``.
    """
    raw = list(local_patterns or [])
    patterns = _coerce_patterns(raw)
    weights = PackagedWeights()

    for pattern in patterns:
        if not is_eligible(pattern):
            continue

        if isinstance(pattern, ToolPattern):
            rate = pattern.success_rate if pattern.success_rate is not None else pattern.confidence
            weights.tools[pattern.category] = ToolWeight(
                success_rate=clamp01(rate),
                avg_latency=normalize_latency(pattern.avg_ms or 0),
                confidence=clamp01(pattern.confidence),
                sample_size=pattern.sample_size,
            )
        elif isinstance(pattern, ErrorPattern):
            signature_source = (pattern.message or "")[:50] or pattern.category
            weights.errors[anonymize_key(pattern.category)] = ErrorWeight(
                frequency=clamp01(1 - pattern.confidence),
                recoverable=_tristate(pattern.recoverable),
                signature=anonymize_key(signature_source),
                sample_size=pattern.sample_size,
            )
        elif isinstance(pattern, CommandPattern):
            weights.commands[pattern.category] = CommandWeight(
                effectiveness=clamp01(pattern.confidence),
                avg_duration=normalize_duration(pattern.duration_ms or 0),
                files_modified=normalize_file_count(pattern.files_modified or 0),
                tests_pass=_tristate(pattern.tests_pass),
                sample_size=pattern.sample_size,
            )
        elif isinstance(pattern, TeamPattern):
            weights.teams[pattern.category] = TeamWeight(
                effectiveness=clamp01(pattern.confidence),
                optimal_size=pattern.size or 0,
                avg_duration=normalize_duration(pattern.duration_ms or 0),
                sample_size=pattern.sample_size,
            )

    metadata = PackageMetadata(
        pattern_count=len(raw),
        packaged_count=weights.count(),
        sample_size=weights.total_sample_size(),
        packaged_at=utc_now_iso(),
        categories=weights.non_empty_categories(),
    )
    logger.debug(f"Packaged {metadata.packaged_count} of {metadata.pattern_count} patterns")

    return PackageResult(weights=weights, metadata=metadata, checksum=compute_checksum(weights))


# =============================================================================
# Unpacking
# =============================================================================


def unpack_weights(global_weights: PackagedWeights | dict[str, Any] | None) -> list[LocalPattern]:
    """Convert global weights back into local patterns tagged ``swarm-global``.

    Error messages cannot be recovered from their hashes, so error patterns
    come back with ``message=None``.
    """
    if not global_weights:
        return []
    if isinstance(global_weights, PackagedWeights):
        global_weights = global_weights.to_dict()
    if not isinstance(global_weights, dict):
        return []

    weights = PackagedWeights.from_dict(global_weights)
    extracted_at = utc_now_iso()
    common = {"source": "swarm-global", "extracted_at": extracted_at}
    patterns: list[LocalPattern] = []

    for category, tool in weights.tools.items():
        patterns.append(
            ToolPattern(
                category=category,
                confidence=tool.confidence,
                sample_size=tool.sample_size,
                success_rate=tool.success_rate,
                avg_ms=_round_unbounded(denormalize_latency(tool.avg_latency)),
                **common,
            )
        )

    for signature, error in weights.errors.items():
        patterns.append(
            ErrorPattern(
                category=signature,
                confidence=clamp01(1 - error.frequency),
                sample_size=error.sample_size,
                message=None,
                recoverable=error.recoverable >= 0.5,
                **common,
            )
        )

    for category, command in weights.commands.items():
        patterns.append(
            CommandPattern(
                category=category,
                confidence=command.effectiveness,
                sample_size=command.sample_size,
                duration_ms=_round_unbounded(denormalize_duration(command.avg_duration)),
                files_modified=_round_unbounded(denormalize_file_count(command.files_modified)),
                tests_pass=command.tests_pass >= 0.5,
                **common,
            )
        )

    for category, team in weights.teams.items():
        patterns.append(
            TeamPattern(
                category=category,
                confidence=team.effectiveness,
                sample_size=team.sample_size,
                size=team.optimal_size,
                duration_ms=_round_unbounded(denormalize_duration(team.avg_duration)),
                **common,
            )
        )

    return patterns


# =============================================================================
# Merging
# =============================================================================


def validate_ratio(ratio: Sequence[float] | None) -> tuple[float, float]:
    """Return ``(local, global)`` or raise ConfigurationError."""
    if ratio is None:
        return DEFAULT_MERGE_RATIO

    try:
        local_ratio, global_ratio = ratio
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            "Merge ratio must be a [local, global] pair", details={"ratio": ratio}
        ) from e

    if not (_is_number(local_ratio) and _is_number(global_ratio)):
        raise ConfigurationError("Merge ratio must be numeric", details={"ratio": ratio})
    if not (0 <= local_ratio <= 1 and 0 <= global_ratio <= 1):
        raise ConfigurationError(
            "Merge ratio components must lie in [0, 1]", details={"ratio": ratio}
        )
    if abs(local_ratio + global_ratio - 1.0) > RATIO_TOLERANCE:
        raise ConfigurationError("Merge ratio must sum to 1.0", details={"ratio": ratio})

    return float(local_ratio), float(global_ratio)


def _merge_entries(
    local_entry: dict[str, Any],
    global_entry: dict[str, Any],
    local_ratio: float,
    global_ratio: float,
) -> dict[str, Any]:
    merged: dict[str, Any] = {}

    for field_name in {**local_entry, **global_entry}:
        local_value = local_entry.get(field_name)
        global_value = global_entry.get(field_name)

        if field_name not in global_entry:
            merged[field_name] = local_value
        elif field_name not in local_entry:
            merged[field_name] = global_value
        elif _is_number(local_value) and _is_number(global_value):
            if field_name == "sampleSize":
                merged[field_name] = local_value + global_value
            elif local_value == global_value:
                merged[field_name] = local_value
            else:
                merged[field_name] = round(
                    local_value * local_ratio + global_value * global_ratio, MERGE_PRECISION
                )
        else:
            merged[field_name] = local_value

    return merged


def _as_wire(weights: PackagedWeights | dict[str, Any]) -> dict[str, Any]:
    if isinstance(weights, PackagedWeights):
        return weights.to_dict()
    return copy.deepcopy(weights)


def merge_weights(
    local: PackagedWeights | dict[str, Any] | None,
    global_: PackagedWeights | dict[str, Any] | None,
    ratio: Sequence[float] | None = None,
) -> dict[str, Any]:
    """Blend local and global weights into one wire-form weight set.

    Keys present on one side pass through. Keys present on both have their
    numeric fields combined as ``local * lr + global * gr`` and their
    sample sizes summed.

    Raises:
        ConfigurationError: If the ratio is invalid.
    """
    local_ratio, global_ratio = validate_ratio(ratio)

    if local is None and global_ is None:
        return {}
    if local is None:
        return _as_wire(global_)
    if global_ is None:
        return _as_wire(local)

    local_wire = _as_wire(local)
    global_wire = _as_wire(global_)
    merged: dict[str, Any] = {}

    for category in CATEGORIES:
        local_category = local_wire.get(category) or {}
        global_category = global_wire.get(category) or {}
        merged_category: dict[str, Any] = {}

        for key in {**local_category, **global_category}:
            if key in local_category and key in global_category:
                merged_category[key] = _merge_entries(
                    local_category[key], global_category[key], local_ratio, global_ratio
                )
            elif key in local_category:
                merged_category[key] = local_category[key]
            else:
                merged_category[key] = global_category[key]

        merged[category] = merged_category

    return merged
