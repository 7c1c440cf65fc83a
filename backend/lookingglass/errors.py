"""
Exception hierarchy for probe sessions and throughput tests.

Every error carries the HTTP status it maps to and a fixed, user-facing
message for its category. The raw ``str(exc)`` stays available for logs.
"""

from typing import Optional


class LookingGlassError(Exception):
    """Base class for all looking glass errors."""

    status_code = 500
    user_message = "An unexpected error occurred. Please try again."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message


class MalformedInputError(LookingGlassError):
    """A request header, token or command could not be parsed."""

    status_code = 400
    user_message = "Invalid request."


class ResourceLimitExceededError(LookingGlassError):
    """A declared or actual body size is above the configured cap."""

    status_code = 413
    user_message = "Request too large."


class UploadSizeMismatchError(LookingGlassError):
    """More bytes arrived than the request declared."""

    status_code = 400
    user_message = "Upload size mismatch."


class TransferTimeoutError(LookingGlassError):
    """An endpoint operation or a whole test phase ran out of time."""

    status_code = 408
    user_message = "Test timed out. Please check your connection and try again."


class TransientNetworkError(LookingGlassError):
    """A single chunk attempt failed; eligible for retry."""

    status_code = 502
    user_message = "Network error. Please try again."

    def __init__(self, message: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransferFailedError(LookingGlassError):
    """A chunk kept failing after every attempt, so the phase was aborted."""

    status_code = 502
    user_message = "Speed test failed. Check your connection and try again."

    def __init__(self, message: Optional[str] = None, chunk_index: Optional[int] = None):
        super().__init__(message)
        self.chunk_index = chunk_index


class TransferCancelledError(LookingGlassError):
    """The phase was cancelled before it finished."""

    status_code = 499
    user_message = "Speed test cancelled."


class EnrichmentError(LookingGlassError):
    """ASN or reverse DNS lookup failed. Never reaches the caller."""

    status_code = 502
    user_message = "Lookup failed."
