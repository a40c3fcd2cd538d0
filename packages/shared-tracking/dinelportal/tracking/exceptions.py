"""Custom exceptions for the tracking client.

None of these ever reach the host page: the tracker catches them at its
public boundary and logs them.
"""

from __future__ import annotations


class TrackingError(Exception):
    """Base exception for tracking errors."""

    pass


class StorageUnavailableError(TrackingError):
    """Raised when a storage area is disabled or blocked."""

    pass


class StorageQuotaExceededError(StorageUnavailableError):
    """Raised when a write would exceed a storage area's quota."""

    pass


class MalformedRecordError(TrackingError):
    """Raised when a stored value cannot be parsed into a StorageRecord."""

    pass


class BeaconDeliveryError(TrackingError):
    """Raised when a beacon request fails at the transport or HTTP level.

    Attributes:
        status_code: HTTP status of the failed response, None for
            transport errors.
        retryable: Whether another attempt may succeed.
    """

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class ConfigurationError(TrackingError):
    """Raised when the tracker is missing required configuration."""

    pass
