"""
Error taxonomy for upload orchestration.

Every failure path in the core raises one of these, so callers (the API
layer, mostly) can tell a bad request from a missing resource from a
flaky object store without parsing messages.
"""

from typing import Optional


class UploadError(Exception):
    """Base class for all upload/delivery errors."""
    pass


class ConfigurationError(UploadError):
    """Required configuration is missing. Fatal, never retried."""
    pass


class CredentialError(ConfigurationError):
    """Signing keys, bucket or region are not configured."""
    pass


class ValidationError(UploadError):
    """Caller supplied malformed input."""
    pass


class PayloadTooLargeError(ValidationError):
    """Upload would exceed a configured size ceiling."""
    pass


class RangeNotSatisfiableError(ValidationError):
    """
    Requested byte range cannot be served for this object.

    Carries the object's size so the response can advertise
    `Content-Range: bytes */<size>`.
    """

    def __init__(self, message: str, total_size: int) -> None:
        super().__init__(message)
        self.total_size = total_size


class NotFoundError(UploadError):
    """Unknown ticket, session or recording."""
    pass


class ConflictError(UploadError):
    """
    Operation doesn't fit the resource's current state.

    Raised for incomplete part manifests (retryable) and for operations
    against tickets that already reached a terminal state.
    """
    pass


class UpstreamError(UploadError):
    """Object store or registry call failed."""

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.code = code
