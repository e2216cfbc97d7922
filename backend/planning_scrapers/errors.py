"""
Scraper error taxonomy.

NetworkError and RateLimitError are transient and retried by RetryPolicy.
ComplianceBlockedError and ParsingError are deterministic and never retried.
"""
from typing import Any, List, Optional


class ScraperError(Exception):
    """Base exception for planning scraper errors."""

    def __init__(
        self,
        message: str,
        source_id: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.source_id = source_id
        self.cause = cause

    def __str__(self) -> str:
        if self.source_id:
            return f"[{self.source_id}] {self.message}"
        return self.message


class NetworkError(ScraperError):
    """Transport failure, timeout or server error."""

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class RateLimitError(ScraperError):
    """Remote site asked us to slow down (HTTP 429 / Retry-After)."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ParsingError(ScraperError):
    """Page or row could not be parsed into the expected shape."""
    pass


class ComplianceBlockedError(ScraperError):
    """Compliance gateway refused the request. Never retried."""

    def __init__(self, message: str, decision: Any = None, **kwargs):
        super().__init__(message, **kwargs)
        self.decision = decision

    @property
    def reasons(self) -> List[str]:
        return list(getattr(self.decision, "reasons", []) or [])

    @property
    def alternatives(self) -> List[str]:
        return list(getattr(self.decision, "alternatives", None) or [])


class RunCancelledError(ScraperError):
    """Run was cancelled through its CancellationToken."""
    pass


class AlreadyRunningError(ScraperError):
    """A coordinator run is already in progress."""
    pass


class ConfigurationError(ScraperError):
    """Invalid source or compliance configuration."""
    pass


class UnknownSourceError(ScraperError):
    """No source registered under the requested id."""
    pass


NON_RETRYABLE_ERRORS = (
    ComplianceBlockedError,
    ParsingError,
    RunCancelledError,
    ConfigurationError,
)


def is_retryable(exc: BaseException) -> bool:
    """Whether a failed attempt may be retried."""
    return isinstance(exc, Exception) and not isinstance(exc, NON_RETRYABLE_ERRORS)
