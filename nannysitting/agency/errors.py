"""Exceptions shared by the agency back office."""

from __future__ import annotations


class ValidationError(RuntimeError):
    """Raised when incoming data fails validation."""


class NotFoundError(ValidationError):
    """Raised when a requested record does not exist."""


class RateLimitExceeded(ValidationError):
    """Raised when a caller has used up its request window."""

    def __init__(self, message: str, *, retry_after: int) -> None:
        super().__init__(message)
        self.retry_after = retry_after
