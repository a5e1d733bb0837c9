"""Custom exceptions for OpenSync.

Every error the API can surface derives from ``OpenSyncError`` and carries
the HTTP status it maps to. ``UpstreamProviderError`` is recovered locally
(retry in the embedding worker, degraded results in search) and never
reaches a client.
"""

from typing import Optional


class OpenSyncError(Exception):
    """Base class for OpenSync errors."""

    status_code: int = 500
    error_type: str = "internal_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(OpenSyncError):
    """Raised for malformed payloads or request parameters."""

    status_code = 400
    error_type = "validation_error"


class AuthError(OpenSyncError):
    """Raised when a bearer token is missing, invalid, or revoked."""

    status_code = 401
    error_type = "auth_error"


class NotFoundError(OpenSyncError):
    """Raised when a session (or other entity) does not exist for the account."""

    status_code = 404
    error_type = "not_found"

    def __init__(self, entity: str, identifier: object):
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity} {identifier} not found")


class UpstreamProviderError(OpenSyncError):
    """Raised when the embedding provider is unavailable or rate limited."""

    status_code = 502
    error_type = "upstream_provider_error"

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class ConflictError(OpenSyncError):
    """Raised when concurrent session writes keep conflicting after retries."""

    status_code = 503
    error_type = "conflict"
    retry_after_seconds: int = 1


class EmbeddingQueueFullError(ConflictError):
    """Raised when the embedding queue is at capacity (backpressure)."""

    error_type = "queue_full"
    retry_after_seconds = 5

    def __init__(self, depth: int, max_depth: int):
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(
            f"Embedding queue is full ({depth}/{max_depth} active jobs), retry later"
        )
