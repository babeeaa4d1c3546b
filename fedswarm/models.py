"""Data models for shareable experience weights.

These models capture STATISTICS, not DATA. Local patterns come from the
learning pipeline; weight entries are their normalized, anonymized
counterparts that leave the machine. Wire keys are camelCase to match the
service's JSON format.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Union

CATEGORIES = ("tools", "errors", "commands", "teams")


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


class PatternKind(str, Enum):
    """Kinds of local statistics the learning pipeline produces."""

    TOOL = "tool"
    ERROR = "error"
    SUCCESS = "success"  # Command outcomes
    TEAM = "team"


# =============================================================================
# Local patterns (learning pipeline format)
# =============================================================================


@dataclass
class _LocalPatternBase:
    category: str
    confidence: float = 0.0
    sample_size: int = 0
    source: str = "local"
    extracted_at: str | None = None

    kind: ClassVar[PatternKind]

    @property
    def key(self) -> str:
        return f"{self.kind.value}::{self.category}"

    def _best_data(self) -> dict[str, Any]:
        raise NotImplementedError

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the learning pipeline's JSON format."""
        return {
            "key": self.key,
            "type": self.kind.value,
            "category": self.category,
            "confidence": self.confidence,
            "sampleSize": self.sample_size,
            "bestData": self._best_data(),
            "source": self.source,
            "extractedAt": self.extracted_at,
        }


@dataclass
class ToolPattern(_LocalPatternBase):
    """Success rate and latency of one tool."""

    success_rate: float | None = None  # None = fall back to confidence
    avg_ms: float = 0.0

    kind: ClassVar[PatternKind] = PatternKind.TOOL

    def _best_data(self) -> dict[str, Any]:
        return {"successRate": self.success_rate, "avgMs": self.avg_ms}


@dataclass
class ErrorPattern(_LocalPatternBase):
    """A recurring error signature and whether it was recoverable."""

    message: str | None = None
    recoverable: bool | None = None

    kind: ClassVar[PatternKind] = PatternKind.ERROR

    def _best_data(self) -> dict[str, Any]:
        return {"message": self.message, "recoverable": self.recoverable}


@dataclass
class CommandPattern(_LocalPatternBase):
    """Effectiveness of a command: duration, files touched, test outcome."""

    duration_ms: float = 0.0
    files_modified: float = 0
    tests_pass: bool | None = None

    kind: ClassVar[PatternKind] = PatternKind.SUCCESS

    def _best_data(self) -> dict[str, Any]:
        return {
            "duration": self.duration_ms,
            "filesModified": self.files_modified,
            "testsPass": self.tests_pass,
        }


@dataclass
class TeamPattern(_LocalPatternBase):
    """Effectiveness of a team composition."""

    size: int = 0
    duration_ms: float = 0.0

    kind: ClassVar[PatternKind] = PatternKind.TEAM

    def _best_data(self) -> dict[str, Any]:
        return {"size": self.size, "duration": self.duration_ms, "pattern": self.category}


LocalPattern = Union[ToolPattern, ErrorPattern, CommandPattern, TeamPattern]


def pattern_from_dict(data: dict[str, Any]) -> LocalPattern | None:
    """Parse one pattern from the learning pipeline's JSON format.

    Accepts either a ``"kind::category"`` key or separate ``type`` and
    ``category`` fields. Returns None for unknown kinds.
    """
    if not isinstance(data, dict):
        return None

    kind_name = data.get("type")
    category = data.get("category")
    key = data.get("key")
    if isinstance(key, str) and "::" in key:
        kind_name, _, category = key.partition("::")

    try:
        kind = PatternKind(kind_name)
    except ValueError:
        return None

    best = data.get("bestData") or {}
    common = {
        "category": category or "",
        "confidence": data.get("confidence") or 0.0,
        "sample_size": data.get("sampleSize") or 0,
        "source": data.get("source", "local"),
        "extracted_at": data.get("extractedAt"),
    }

    if kind is PatternKind.TOOL:
        return ToolPattern(
            **common, success_rate=best.get("successRate"), avg_ms=best.get("avgMs") or 0.0
        )
    if kind is PatternKind.ERROR:
        return ErrorPattern(
            **common, message=best.get("message"), recoverable=best.get("recoverable")
        )
    if kind is PatternKind.SUCCESS:
        return CommandPattern(
            **common,
            duration_ms=best.get("duration") or 0.0,
            files_modified=best.get("filesModified") or 0,
            tests_pass=best.get("testsPass"),
        )
    return TeamPattern(
        **common, size=best.get("size") or 0, duration_ms=best.get("duration") or 0.0
    )


# =============================================================================
# Weight entries (wire format)
# =============================================================================


@dataclass
class ToolWeight:
    success_rate: float
    avg_latency: float
    confidence: float
    sample_size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "successRate": self.success_rate,
            "avgLatency": self.avg_latency,
            "confidence": self.confidence,
            "sampleSize": self.sample_size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolWeight:
        return cls(
            success_rate=data.get("successRate", 0.0),
            avg_latency=data.get("avgLatency", 0.5),
            confidence=data.get("confidence", 0.5),
            sample_size=data.get("sampleSize", 0),
        )


@dataclass
class ErrorWeight:
    frequency: float
    recoverable: float  # 0.0, 0.5 (unknown) or 1.0
    signature: str
    sample_size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "frequency": self.frequency,
            "recoverable": self.recoverable,
            "signature": self.signature,
            "sampleSize": self.sample_size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorWeight:
        return cls(
            frequency=data.get("frequency", 0.5),
            recoverable=data.get("recoverable", 0.5),
            signature=data.get("signature", "unknown"),
            sample_size=data.get("sampleSize", 0),
        )


@dataclass
class CommandWeight:
    effectiveness: float
    avg_duration: float
    files_modified: float
    tests_pass: float  # 0.0, 0.5 (unknown) or 1.0
    sample_size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "effectiveness": self.effectiveness,
            "avgDuration": self.avg_duration,
            "filesModified": self.files_modified,
            "testsPass": self.tests_pass,
            "sampleSize": self.sample_size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CommandWeight:
        return cls(
            effectiveness=data.get("effectiveness", 0.5),
            avg_duration=data.get("avgDuration", 0.5),
            files_modified=data.get("filesModified", 0.5),
            tests_pass=data.get("testsPass", 0.5),
            sample_size=data.get("sampleSize", 0),
        )


@dataclass
class TeamWeight:
    effectiveness: float
    optimal_size: int
    avg_duration: float
    sample_size: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "effectiveness": self.effectiveness,
            "optimalSize": self.optimal_size,
            "avgDuration": self.avg_duration,
            "sampleSize": self.sample_size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TeamWeight:
        return cls(
            effectiveness=data.get("effectiveness", 0.5),
            optimal_size=data.get("optimalSize", 0),
            avg_duration=data.get("avgDuration", 0.5),
            sample_size=data.get("sampleSize", 0),
        )


WeightEntry = Union[ToolWeight, ErrorWeight, CommandWeight, TeamWeight]

_ENTRY_TYPES: dict[str, type] = {
    "tools": ToolWeight,
    "errors": ErrorWeight,
    "commands": CommandWeight,
    "teams": TeamWeight,
}


@dataclass
class PackagedWeights:
    """The four weight categories, keyed by opaque category key."""

    tools: dict[str, ToolWeight] = field(default_factory=dict)
    errors: dict[str, ErrorWeight] = field(default_factory=dict)  # Keys are anonymized
    commands: dict[str, CommandWeight] = field(default_factory=dict)
    teams: dict[str, TeamWeight] = field(default_factory=dict)

    def count(self) -> int:
        """Total number of entries across all categories."""
        return sum(len(getattr(self, category)) for category in CATEGORIES)

    def non_empty_categories(self) -> list[str]:
        return [category for category in CATEGORIES if getattr(self, category)]

    def total_sample_size(self) -> int:
        return sum(
            entry.sample_size for category in CATEGORIES for entry in getattr(self, category).values()
        )

    def to_dict(self) -> dict[str, dict[str, dict[str, Any]]]:
        """Convert to the wire format."""
        return {
            category: {key: entry.to_dict() for key, entry in getattr(self, category).items()}
            for category in CATEGORIES
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> PackagedWeights:
        """Create from the wire format. Unknown categories are ignored."""
        data = data or {}
        kwargs: dict[str, Any] = {}
        for category, entry_type in _ENTRY_TYPES.items():
            raw = data.get(category) or {}
            kwargs[category] = {
                key: entry_type.from_dict(value)
                for key, value in raw.items()
                if isinstance(value, dict)
            }
        return cls(**kwargs)


@dataclass
class PackageMetadata:
    pattern_count: int
    packaged_count: int
    sample_size: int
    packaged_at: str
    categories: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "patternCount": self.pattern_count,
            "packagedCount": self.packaged_count,
            "sampleSize": self.sample_size,
            "packagedAt": self.packaged_at,
            "categories": self.categories,
        }


@dataclass
class PackageResult:
    """Output of packaging: weights, package metadata and their checksum."""

    weights: PackagedWeights
    metadata: PackageMetadata
    checksum: str


# =============================================================================
# Server-side snapshot
# =============================================================================


@dataclass
class WeightSnapshot:
    """One accepted upload. Immutable once stored."""

    weights: dict[str, Any]
    metadata: dict[str, Any]
    version: str
    timestamp: str

    @property
    def sample_size(self) -> int:
        return self.metadata.get("sampleSize", 0)

    def to_dict(self) -> dict[str, Any]:
        return {
            "weights": self.weights,
            "metadata": self.metadata,
            "version": self.version,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WeightSnapshot:
        return cls(
            weights=data.get("weights") or {},
            metadata=data.get("metadata") or {},
            version=data["version"],
            timestamp=data.get("timestamp", ""),
        )


# =============================================================================
# Client-local persisted state
# =============================================================================


@dataclass
class SyncState:
    """Per-installation sync bookkeeping, persisted between runs."""

    last_upload: str | None = None
    last_download: str | None = None
    pending_uploads: int = 0
    next_sync: str | None = None
    current_version: str | None = None
    interval: str = "session"
    total_uploads: int = 0
    total_downloads: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastUpload": self.last_upload,
            "lastDownload": self.last_download,
            "pendingUploads": self.pending_uploads,
            "nextSync": self.next_sync,
            "currentVersion": self.current_version,
            "interval": self.interval,
            "totalUploads": self.total_uploads,
            "totalDownloads": self.total_downloads,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> SyncState:
        data = data or {}
        return cls(
            last_upload=data.get("lastUpload"),
            last_download=data.get("lastDownload"),
            pending_uploads=data.get("pendingUploads") or 0,
            next_sync=data.get("nextSync"),
            current_version=data.get("currentVersion"),
            interval=data.get("interval") or "session",
            total_uploads=data.get("totalUploads") or 0,
            total_downloads=data.get("totalDownloads") or 0,
        )


@dataclass
class OfflineQueueEntry:
    """An upload that could not reach the service yet.

    ``weights`` are already scrubbed (and noised); replay sends them as is.
    """

    weights: dict[str, Any]
    metadata: dict[str, Any]
    queued_at: str = field(default_factory=utc_now_iso)
    type: str = "upload"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "weights": self.weights,
            "metadata": self.metadata,
            "queuedAt": self.queued_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OfflineQueueEntry:
        return cls(
            weights=data.get("weights") or {},
            metadata=data.get("metadata") or {},
            queued_at=data.get("queuedAt") or utc_now_iso(),
            type=data.get("type", "upload"),
        )


# =============================================================================
# Operation results
# =============================================================================


@dataclass
class UploadResult:
    success: bool
    version: str | None = None
    timestamp: str | None = None
    queued: bool = False
    error: str | None = None


@dataclass
class DownloadResult:
    success: bool
    weights: dict[str, Any] | None = None
    version: str | None = None
    diff: dict[str, Any] | None = None
    error: str | None = None


@dataclass
class HealthResult:
    status: str  # "healthy", "degraded" or "unreachable"
    latency_ms: int
    info: dict[str, Any] = field(default_factory=dict)


@dataclass
class ContributionStats:
    success: bool
    uploads: int = 0
    downloads: int = 0
    rank: int | None = None
    error: str | None = None


@dataclass
class FlushResult:
    flushed: int = 0
    remaining: int = 0
    errors: list[str] = field(default_factory=list)


@dataclass
class SyncResult:
    success: bool
    uploaded: bool = False
    downloaded: bool = False
    merged: bool = False
    flushed: int = 0
    version: str | None = None
    error: str | None = None


@dataclass
class SessionStartResult:
    downloaded: bool
    version: str | None = None


@dataclass
class SessionEndResult:
    uploaded: bool
    version: str | None = None
    queued: bool = False


@dataclass
class ScheduleResult:
    scheduled: bool
    interval: str
    next_sync: str | None = None
