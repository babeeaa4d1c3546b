"""Custom exceptions for fedswarm.

All exceptions inherit from FedSwarmError, making it easy to catch every
fedswarm-related error in one place.

Example:
    from fedswarm import SwarmClient, ConfigurationError, FedSwarmError

    try:
        client = SwarmClient(ClientConfig(server_url="http://example.org"))
    except ConfigurationError as e:
        print(f"Configuration problem: {e}")
    except FedSwarmError as e:
        print(f"fedswarm error: {e}")
"""

from __future__ import annotations

from typing import Any


class FedSwarmError(Exception):
    """Base exception for all fedswarm errors.

    Carries a human readable message plus an optional ``details`` mapping
    with structured context for logging.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({detail_str})"
        return self.message


class ConfigurationError(FedSwarmError):
    """Raised when fedswarm is misconfigured.

    This includes:
    - Merge ratios that do not sum to 1.0
    - Unknown sync intervals
    - Server URLs outside the allowed host list

    Example:
        ConfigurationError(
            "Unknown sync interval 'weekly'",
            details={"valid_intervals": ["session", "hourly", "daily"]}
        )
    """

    pass


class ValidationError(FedSwarmError):
    """Raised when a payload does not have the expected shape.

    Validation errors are terminal: they are never retried.
    """

    pass


class IntegrityError(FedSwarmError):
    """Raised when a checksum does not match the payload it accompanies.

    Example:
        IntegrityError(
            "Checksum verification failed",
            details={"expected": "ab12...", "computed": "cd34..."}
        )
    """

    pass


class StorageError(FedSwarmError):
    """Raised when local or server-side persistence fails."""

    pass


class TransportError(FedSwarmError):
    """Base class for failures talking to the aggregation service."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code

    @property
    def transient(self) -> bool:
        """Whether the payload should be kept for a later attempt."""
        return False


class ConnectivityError(TransportError):
    """The service could not be reached (refused, timed out, network down)."""

    @property
    def transient(self) -> bool:
        return True


class ServiceUnavailableError(TransportError):
    """The service kept answering 5xx or 429 until the retry ceiling."""

    @property
    def transient(self) -> bool:
        return True


class RequestRejectedError(TransportError):
    """The service declined the request with a terminal 4xx status."""

    pass
