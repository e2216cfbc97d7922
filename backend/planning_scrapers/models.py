"""
Planning scraper data model.

SourceConfig is a frozen pydantic model validated at the config boundary.
Everything produced during a run (records, batch results, stats) is a plain
dataclass owned by the task that created it.
"""
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import ConfigurationError, ParsingError

T = TypeVar("T")

DEFAULT_USER_AGENT = "PlanningScrapers/1.0 (public planning data aggregation)"

# Raw row extracted from a results page before normalization.
RawRow = Dict[str, Optional[str]]


# =============================================================================
# Source configuration
# =============================================================================

class SourceConfig(BaseModel):
    """
    Per-source scraping configuration.

    Immutable after construction. Values come from config/sources.yaml with
    environment overrides applied in settings.load_source_configs().
    """
    model_config = ConfigDict(
        frozen=True,  # Immutable after construction
        str_strip_whitespace=True,  # Strip whitespace from strings
        populate_by_name=True,  # Accept both alias and field name
        extra='ignore',  # Ignore undeclared fields
    )

    source_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    base_url: str = Field(min_length=1)
    layout: str = "idox"

    # URL templates. search_params values may use {from_date}, {to_date},
    # {page} and {per_page}; detail_path uses {reference}.
    search_path: str = "search.do"
    search_params: Dict[str, str] = Field(default_factory=lambda: {
        "action": "advanced",
        "dateFrom": "{from_date}",
        "page": "{page}",
    })
    detail_path: str = "applicationDetails.do?activeTab=summary&keyVal={reference}"

    requests_per_second: float = Field(default=5.0, gt=0, alias="rate_limit")
    max_retries: int = Field(default=3, ge=0)
    timeout_seconds: float = Field(default=30.0, gt=0, alias="timeout")
    user_agent: str = DEFAULT_USER_AGENT

    page_concurrency: int = Field(default=10, ge=1, alias="parallel_pages")
    detail_concurrency: int = Field(default=5, ge=1, alias="parallel_details")
    use_burst_rate_limit: bool = True
    burst_capacity: Optional[int] = Field(default=None, ge=1)

    retry_base_delay: float = Field(default=1.0, ge=0)
    retry_jitter: bool = True

    results_per_page: int = Field(default=10, ge=1)
    max_pages: int = Field(default=100, ge=1)
    default_page_count: int = Field(default=10, ge=1)

    @model_validator(mode="after")
    def _check_base_url(self):
        parsed = urlparse(self.base_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"base_url must be an absolute http(s) URL: {self.base_url}")
        return self

    @property
    def domain(self) -> str:
        return urlparse(self.base_url).netloc.lower()

    @property
    def origin(self) -> str:
        parsed = urlparse(self.base_url)
        return f"{parsed.scheme}://{parsed.netloc}"

    @property
    def effective_burst_capacity(self) -> int:
        return self.burst_capacity or self.page_concurrency * 2

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceConfig":
        """Build a config, converting validation failures to ConfigurationError."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid source config: {e}", source_id=data.get("source_id")
            ) from e


# =============================================================================
# Compliance
# =============================================================================

class AccessMethod(str, Enum):
    """How a target may be accessed."""
    DIRECT = "direct"
    API = "api"
    PROXY = "proxy"
    BLOCKED = "blocked"


@dataclass
class ComplianceDecision:
    """Result of evaluating one target URL. Not persisted."""
    allowed: bool
    method: AccessMethod
    url: str = ""
    reasons: List[str] = field(default_factory=list)
    alternatives: Optional[List[str]] = None
    effective_rate_limit: Optional[float] = None
    headers: Dict[str, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    crawl_delay: Optional[float] = None
    proxy: Optional[str] = None

    @classmethod
    def blocked(
        cls,
        url: str,
        reasons: List[str],
        alternatives: Optional[List[str]] = None,
        warnings: Optional[List[str]] = None,
    ) -> "ComplianceDecision":
        return cls(
            allowed=False,
            method=AccessMethod.BLOCKED,
            url=url,
            reasons=list(reasons),
            alternatives=list(alternatives) if alternatives else None,
            warnings=list(warnings or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "allowed": self.allowed,
            "method": self.method.value,
            "reasons": list(self.reasons),
            "alternatives": list(self.alternatives) if self.alternatives else None,
            "effective_rate_limit": self.effective_rate_limit,
            "crawl_delay": self.crawl_delay,
            "proxy": self.proxy,
            "headers": dict(self.headers),
            "warnings": list(self.warnings),
        }


# =============================================================================
# Batch processing
# =============================================================================

@dataclass(frozen=True)
class WorkItem(Generic[T]):
    """Opaque unit of batch work carrying its original index."""
    index: int
    value: T


@dataclass(frozen=True)
class BatchProgress:
    """Snapshot passed to progress callbacks after every settled item."""
    completed: int
    total: int
    success_count: int
    error_count: int

    @property
    def percentage(self) -> int:
        if self.total == 0:
            return 100
        return round(self.completed / self.total * 100)


@dataclass
class BatchResult(Generic[T]):
    """
    Outcome of one batch run.

    Every input index appears in exactly one of successes, failures or
    skipped (skipped only when the run was cancelled before dispatch).
    All three lists are ordered by index.
    """
    successes: List[Tuple[int, T]] = field(default_factory=list)
    failures: List[Tuple[int, BaseException]] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    attempts: Dict[int, int] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def total(self) -> int:
        return len(self.successes) + len(self.failures) + len(self.skipped)

    @property
    def success_count(self) -> int:
        return len(self.successes)

    @property
    def error_count(self) -> int:
        return len(self.failures)

    def values(self) -> List[T]:
        return [value for _, value in self.successes]


# =============================================================================
# Records
# =============================================================================

class PlanningStatus(str, Enum):
    """Closed set of normalized planning application statuses."""
    PENDING = "pending"
    APPROVED = "approved"
    REFUSED = "refused"
    WITHDRAWN = "withdrawn"
    INVALID = "invalid"
    APPEAL = "appeal"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Record:
    """Normalized planning application. Never mutated after creation."""
    reference: str
    address: str
    proposal: str
    status: PlanningStatus
    source_id: str
    slug: str
    canonical_url: str
    received_date: Optional[date] = None
    validated_date: Optional[date] = None
    decision_date: Optional[date] = None
    case_officer: Optional[str] = None
    ward: Optional[str] = None

    def __post_init__(self):
        if not self.reference or not self.reference.strip():
            raise ParsingError("Record requires a non-empty reference", source_id=self.source_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "address": self.address,
            "proposal": self.proposal,
            "status": self.status.value,
            "source_id": self.source_id,
            "slug": self.slug,
            "canonical_url": self.canonical_url,
            "received_date": self.received_date.isoformat() if self.received_date else None,
            "validated_date": self.validated_date.isoformat() if self.validated_date else None,
            "decision_date": self.decision_date.isoformat() if self.decision_date else None,
            "case_officer": self.case_officer,
            "ward": self.ward,
        }


# =============================================================================
# Run statistics
# =============================================================================

@dataclass
class RunStats:
    """
    Counters for a source run or an aggregate run.

    Counters only increase. finalize() fixes the end time once; later calls
    are no-ops so cancellation and completion can both finalize safely.
    """
    items_processed: int = 0
    items_succeeded: int = 0
    items_failed: int = 0
    pages_processed: int = 0
    records: int = 0
    rows_discarded: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    _started_monotonic: float = field(default_factory=time.monotonic, repr=False)
    _duration: Optional[float] = field(default=None, repr=False)

    def add_batch(self, result: BatchResult) -> None:
        self.items_processed += result.success_count + result.error_count
        self.items_succeeded += result.success_count
        self.items_failed += result.error_count

    def finalize(self) -> "RunStats":
        if self.finished_at is None:
            self.finished_at = datetime.now()
            self._duration = time.monotonic() - self._started_monotonic
        return self

    @property
    def duration_seconds(self) -> float:
        if self._duration is not None:
            return self._duration
        return time.monotonic() - self._started_monotonic

    @property
    def throughput(self) -> float:
        """Records per second."""
        duration = self.duration_seconds
        if duration <= 0:
            return 0.0
        return self.records / duration

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items_processed": self.items_processed,
            "items_succeeded": self.items_succeeded,
            "items_failed": self.items_failed,
            "pages_processed": self.pages_processed,
            "records": self.records,
            "rows_discarded": self.rows_discarded,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "throughput": round(self.throughput, 3),
        }
