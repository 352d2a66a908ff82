"""liverc_etl.errors

Exception taxonomy shared by every ingestion component.

  UrlParseError       malformed provider URL, fatal to the single operation
  ClientError         network / non-2xx failure surfaced after retries
  ValidationError     bad input (request parameters, unusable payloads)
  PersistenceError    repository failure, fails the owning job item
  GuardrailExceeded   plan/apply limit violated before any enqueue
"""

from __future__ import annotations

from typing import Any


class LiveRcError(Exception):
    """Base class for all liverc_etl failures."""


class UrlParseError(LiveRcError, ValueError):
    """Raised when a provider URL cannot be parsed into a results reference."""

    def __init__(self, reason: str, message: str, url: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason
        self.url = url


# Client error codes
MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
RETRYABLE_STATUS = "RETRYABLE_STATUS"
NOT_FOUND = "NOT_FOUND"
UNKNOWN = "UNKNOWN"


class ClientError(LiveRcError):
    """Terminal HTTP failure with the upstream status and request URL."""

    def __init__(
        self,
        message: str,
        code: str = UNKNOWN,
        status: int | None = None,
        url: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status = status
        self.url = url

    @property
    def retryable(self) -> bool:
        return self.code in (MAX_RETRIES_EXCEEDED, RETRYABLE_STATUS)

    def __str__(self) -> str:
        base = super().__str__()
        return f"{base} (code={self.code} status={self.status} url={self.url})"


class ValidationError(LiveRcError, ValueError):
    """Raised when request input or a scraped payload fails validation."""

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}


class DiscoveryValidationError(ValidationError):
    """Raised when a discovery request is rejected before any network call."""


class PersistenceError(LiveRcError):
    """Raised when a repository adapter fails to read or write."""


class GuardrailExceeded(LiveRcError):
    """Raised when a plan exceeds the apply guardrails."""

    code = "PLAN_GUARDRAILS_EXCEEDED"

    def __init__(self, limit: str, actual: int, maximum: int) -> None:
        super().__init__(
            f"plan exceeds guardrail {limit}: {actual} > {maximum}"
        )
        self.limit = limit
        self.actual = actual
        self.maximum = maximum
