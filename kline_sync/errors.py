"""Error taxonomy shared by the sync services and the HTTP layer."""
from __future__ import annotations


class SyncError(Exception):
    """Base class for every error the sync engine raises on purpose."""

    status_code = 500
    error_code = "sync_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(SyncError):
    """Bad input rejected before any side effect."""

    status_code = 400
    error_code = "validation_error"


class NotFoundError(SyncError):
    status_code = 404
    error_code = "not_found"


class StateConflictError(SyncError):
    """Illegal state transition or a series that is not eligible for the operation."""

    status_code = 409
    error_code = "state_conflict"


class UpstreamError(SyncError):
    """Exchange call failed."""

    status_code = 502
    error_code = "upstream_error"


class OperationAborted(SyncError):
    """A throttling sleep was interrupted by the shutdown signal."""

    status_code = 503
    error_code = "operation_aborted"


class CircuitOpenError(UpstreamError):
    """The data source's circuit is open; no request was sent."""

    status_code = 503
    error_code = "circuit_open"
