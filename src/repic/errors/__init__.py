"""Custom exception hierarchy for the rePic image pipeline."""

from __future__ import annotations


class RepicError(Exception):
    """Base class for all custom errors raised by rePic."""


# --- 2-layer hierarchy ---

class InfrastructureError(RepicError):
    """Base class for infrastructure-level errors."""


class ApplicationError(RepicError):
    """Base class for application-level errors."""


# --- Cancellation ---

class AbortError(RepicError):
    """Raised when a load was cancelled on purpose.

    Consumers must never retry or escalate on this error.
    """


# --- Infrastructure errors ---

class NetworkError(InfrastructureError):
    """Raised when fetching an image over HTTP fails."""

    def __init__(self, message: str, *, url: str | None = None, status: int | None = None):
        super().__init__(message)
        self.url = url
        self.status = status


class DecodeError(InfrastructureError):
    """Raised when image bytes cannot be decoded (non-fatal for loads)."""


class CacheError(InfrastructureError):
    """Raised by durable store backends; never escapes the cache layer."""


class ConnectionPoolExhausted(CacheError):
    """Raised when no connections are available in the pool."""


# --- Application errors ---

class InvalidSourceError(ApplicationError):
    """Raised when a source identifier is not network addressable."""


class ImageUnavailableError(ApplicationError):
    """Raised when every layer of the escalation chain failed."""

    def __init__(self, message: str, *, url: str | None = None, attempts: tuple[str, ...] = ()):
        super().__init__(message)
        self.url = url
        self.attempts = attempts
