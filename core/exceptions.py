"""Shared exception types for core trading logic."""

from typing import Optional


class FetchError(RuntimeError):
    """Raised when an external read (price, balance, RPC) fails."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class TransientNetworkError(FetchError):
    """Timeout, connection reset or 5xx. Retried with backoff."""


class RateLimited(FetchError):
    """Endpoint answered 429 or an explicit rate-limit marker."""


class NonRetryableError(FetchError):
    """Client-side failure (4xx other than 429). Retrying will not help."""


class AllEndpointsFailed(FetchError):
    """Every attempt failed and neither cache nor estimate could answer."""

    def __init__(self, cache_key: str, attempts: int, last_error: Optional[Exception] = None):
        super().__init__(f"{cache_key}: {attempts} attempt(s) failed", last_error)
        self.cache_key = cache_key
        self.attempts = attempts
        self.last_error = last_error


class ExecError(RuntimeError):
    """Trade open/close failed. The position keeps its prior state."""

    def __init__(self, message: str, token_id: Optional[str] = None):
        super().__init__(message)
        self.token_id = token_id


class InvariantViolation(ValueError):
    """Position data is inconsistent (negative price, empty size, ...)."""

    def __init__(self, position_id: str, reason: str):
        super().__init__(f"{position_id}: {reason}")
        self.position_id = position_id
        self.reason = reason
