"""
Exception hierarchy for the bookings backfill engine.

Exception Hierarchy:
    BackfillError (base)
    ├── UpstreamError              - upstream API returned an error
    │   ├── RateLimitedError       - 429 / RATE_LIMITED (retryable)
    │   ├── UpstreamServerError    - 5xx (retryable)
    │   ├── UpstreamConnectionError - timeout, connection reset (retryable)
    │   ├── AuthError              - 401/403 (fatal)
    │   ├── InvalidFilterError     - 400 on the location filter (fatal)
    │   └── NotFoundError          - 404
    ├── MalformedRecordError       - payload cannot be stored
    └── DependencyError            - referenced row could not be ensured

ExhaustedRetriesError lives in bookingsync.retry next to RetryError.
"""

from typing import Any, Dict, List, Optional


class BackfillError(Exception):
    """Base exception for all backfill errors."""

    def __init__(self, message: str, details: Optional[str] = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class UpstreamError(BackfillError):
    """
    The upstream API answered with an error.

    `errors` carries the upstream error objects verbatim
    (dicts with `category`, `code`, `detail`, `field`).
    """

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        status_code: Optional[int] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(message, details)
        self.status_code = status_code
        self.errors = errors or []


class RateLimitedError(UpstreamError):
    """Too many requests. Retry with backoff."""


class UpstreamServerError(UpstreamError):
    """Upstream 5xx. Retry with backoff."""


class UpstreamConnectionError(UpstreamError):
    """Timeout or connection failure before a response arrived."""


class AuthError(UpstreamError):
    """Access token rejected (401/403). Never retried."""


class InvalidFilterError(UpstreamError):
    """Upstream rejected the location filter. Never retried."""


class NotFoundError(UpstreamError):
    """Requested entity does not exist upstream (anymore)."""


class MalformedRecordError(BackfillError):
    """A fetched item cannot be turned into a storable booking."""

    def __init__(self, message: str, details: Optional[str] = None, external_id: Optional[str] = None):
        super().__init__(message, details)
        self.external_id = external_id


class DependencyError(BackfillError):
    """A referenced row (customer) does not exist and could not be created."""

    def __init__(self, message: str, details: Optional[str] = None, key: Optional[str] = None):
        super().__init__(message, details)
        self.key = key


RETRYABLE_ERRORS = (RateLimitedError, UpstreamServerError, UpstreamConnectionError)
FATAL_ERRORS = (AuthError, InvalidFilterError)
