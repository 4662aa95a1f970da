"""Error types that cross component boundaries.

Only input and admission errors ever reach the HTTP layer. Storage errors are
raised by the backends and absorbed by the rate limiter and conversation store.
"""
from __future__ import annotations


class ChatError(Exception):
    """Base error with a machine-readable code and an HTTP status hint."""

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ChatInputError(ChatError):
    """Malformed, empty or oversized message."""


class QuotaExceededError(ChatError):
    """Identity used up its requests for the current window."""

    def __init__(self, identity: str, message: str = "Rate limit exceeded. Try again tomorrow."):
        super().__init__(code="RATE_LIMIT", message=message, http_status=429, identity=identity)


class StorageError(ChatError):
    """Backing key-value store is unreachable or returned an error."""

    def __init__(self, message: str):
        super().__init__(code="STORAGE_ERROR", message=message, http_status=503)
