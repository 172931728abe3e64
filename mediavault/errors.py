"""Error types shared by the API surface and the background workers."""

from __future__ import annotations

from typing import Any


class ApiError(RuntimeError):
    """Error rendered to HTTP clients in the standard envelope."""

    kind = "internal"
    status = 500

    def __init__(self, message: str, *, details: Any | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidArgument(ApiError):
    kind = "invalid_argument"
    status = 400


class ForbiddenPath(ApiError):
    kind = "forbidden_path"
    status = 403


class NotFound(ApiError):
    kind = "not_found"
    status = 404


class Conflict(ApiError):
    kind = "conflict"
    status = 409


class RangeNotSatisfiable(ApiError):
    kind = "range_not_satisfiable"
    status = 416

    def __init__(self, message: str, *, size: int | None = None) -> None:
        super().__init__(message)
        self.size = size


class ServiceUnavailable(ApiError):
    kind = "service_unavailable"
    status = 503


class WorkerError(RuntimeError):
    """Base class for failures raised inside background workers."""

    retryable = False


class TransientError(WorkerError):
    """A failure worth retrying later (network hiccup, throttling)."""

    retryable = True


class PermanentError(WorkerError):
    """A failure that will not go away by retrying."""


class JobCancelled(PermanentError):
    """Raised by workers that observed a cancellation request."""


__all__ = [
    "ApiError",
    "Conflict",
    "ForbiddenPath",
    "InvalidArgument",
    "JobCancelled",
    "NotFound",
    "PermanentError",
    "RangeNotSatisfiable",
    "ServiceUnavailable",
    "TransientError",
    "WorkerError",
]
