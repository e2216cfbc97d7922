"""
London council planning scrapers.

Parallel, rate-limited and compliance-gated scraping of council planning
portals into normalized Records.

Usage:
    from planning_scrapers import build_context

    context = build_context()
    report = context.coordinator.run_all(context.settings.default_from_date())
    print(report.format_report())
"""

from .batch import BatchProcessor
from .cancellation import CancellationToken
from .context import ScrapeContext, build_context
from .errors import (
    AlreadyRunningError,
    ComplianceBlockedError,
    ConfigurationError,
    NetworkError,
    ParsingError,
    RateLimitError,
    RunCancelledError,
    ScraperError,
    UnknownSourceError,
)
from .jobs import handle_job, start_background_run
from .models import ComplianceDecision, PlanningStatus, Record, SourceConfig
from .orchestrator import AggregateReport, ScrapeCoordinator, SourceRunner, SourceRunResult
from .rate_limiter import FixedRateLimiter, TokenBucketRateLimiter
from .retry import RetryPolicy, retry_with_backoff
from .settings import Settings

__all__ = [
    "AggregateReport",
    "AlreadyRunningError",
    "BatchProcessor",
    "CancellationToken",
    "ComplianceBlockedError",
    "ComplianceDecision",
    "ConfigurationError",
    "FixedRateLimiter",
    "NetworkError",
    "ParsingError",
    "PlanningStatus",
    "RateLimitError",
    "Record",
    "RetryPolicy",
    "RunCancelledError",
    "ScrapeContext",
    "ScrapeCoordinator",
    "ScraperError",
    "Settings",
    "SourceConfig",
    "SourceRunResult",
    "SourceRunner",
    "TokenBucketRateLimiter",
    "UnknownSourceError",
    "build_context",
    "handle_job",
    "retry_with_backoff",
    "start_background_run",
]
