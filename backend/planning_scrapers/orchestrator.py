"""
Planning Scrape Orchestration

SourceRunner drives one source end to end:
1. Compliance pre-check of the source's base URL (blocked => no fetch at all)
2. Page discovery
3. Pages [1..N] through the BatchProcessor at page concurrency
4. Flatten successful pages into Records; failed pages are logged, not fatal
5. Summary: record count, pages processed, errors, duration, throughput

ScrapeCoordinator runs every SourceRunner in parallel with settle-all
semantics, refuses a second run while one is active, and supports
cooperative cancellation. Partial results are always reported.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .batch import BatchProcessor
from .cancellation import CancellationToken
from .errors import AlreadyRunningError, ComplianceBlockedError, UnknownSourceError
from .models import BatchProgress, Record, RunStats
from .retry import RetryPolicy
from .sources.base import PageDiscovery

logger = logging.getLogger(__name__)

PROGRESS_LOG_STEP = 10  # percent


class SourceStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    BLOCKED = "blocked"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


EXIT_CODES = {
    RunStatus.SUCCESS: 0,
    RunStatus.FAILED: 1,
    RunStatus.PARTIAL: 2,
    RunStatus.CANCELLED: 3,
}
# Every requested source refused by compliance policy; also used for usage errors.
BLOCKED_EXIT_CODE = 4


# =============================================================================
# Per-source results
# =============================================================================

@dataclass
class SourceRunResult:
    """Outcome of one source run (listing or detail enrichment)."""
    source_id: str
    name: str
    mode: str = "listing"  # listing | detail
    status: SourceStatus = SourceStatus.COMPLETED
    records: List[Record] = field(default_factory=list)
    stats: RunStats = field(default_factory=RunStats)
    pages_discovered: int = 0
    discovery_method: Optional[str] = None
    failed_items: List[Tuple[Any, str]] = field(default_factory=list)
    skipped_items: int = 0
    error: Optional[str] = None
    blocked_reasons: List[str] = field(default_factory=list)
    alternatives: List[str] = field(default_factory=list)

    @property
    def record_count(self) -> int:
        return len(self.records)

    @property
    def error_count(self) -> int:
        return len(self.failed_items) + (1 if self.error else 0)

    @property
    def discovery_fallback(self) -> bool:
        return self.discovery_method == "fallback"

    def summary(self) -> Dict[str, Any]:
        return {
            "record_count": self.record_count,
            "pages_processed": self.stats.pages_processed,
            "error_count": self.error_count,
            "duration_seconds": round(self.stats.duration_seconds, 3),
            "throughput": round(self.stats.throughput, 3),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "name": self.name,
            "mode": self.mode,
            "status": self.status.value,
            **self.summary(),
            "pages_discovered": self.pages_discovered,
            "discovery_method": self.discovery_method,
            "discovery_fallback": self.discovery_fallback,
            "rows_discarded": self.stats.rows_discarded,
            "failed_items": [{"item": item, "error": err} for item, err in self.failed_items],
            "skipped_items": self.skipped_items,
            "error": self.error,
            "blocked_reasons": list(self.blocked_reasons),
            "alternatives": list(self.alternatives),
        }


def _describe(error: BaseException) -> str:
    return f"{type(error).__name__}: {error}"


class SourceRunner:
    """
    Runs one source.

    Example:
        runner = SourceRunner(source, gateway=gateway)
        result = runner.run(date(2024, 1, 1))
        logger.info(result.summary())
    """

    def __init__(
        self,
        source,
        gateway=None,
        processor: Optional[BatchProcessor] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.source = source
        self.gateway = gateway
        self.config = source.config
        self.retry_policy = retry_policy or RetryPolicy.from_source_config(self.config)
        self.processor = processor or BatchProcessor(self.retry_policy, name=self.config.source_id)

    @property
    def source_id(self) -> str:
        return self.config.source_id

    @property
    def name(self) -> str:
        return self.config.name

    def _new_result(self, mode: str) -> SourceRunResult:
        return SourceRunResult(source_id=self.source_id, name=self.name, mode=mode)

    def _precheck(self, result: SourceRunResult) -> bool:
        """Evaluate the source's base URL. Returns False when blocked."""
        if self.gateway is None:
            return True
        decision = self.gateway.evaluate(self.config.base_url, self.config.requests_per_second)
        if decision.allowed:
            for warning in decision.warnings:
                logger.info(f"[{self.name}] Compliance note: {warning}")
            return True
        self._mark_blocked(result, decision.reasons, decision.alternatives)
        return False

    def _mark_blocked(self, result: SourceRunResult, reasons, alternatives) -> None:
        result.status = SourceStatus.BLOCKED
        result.blocked_reasons = list(reasons or [])
        result.alternatives = list(alternatives or [])
        logger.warning(
            f"[{self.name}] Blocked by compliance policy: {'; '.join(result.blocked_reasons)}"
            + (f" (alternatives: {', '.join(result.alternatives)})" if result.alternatives else "")
        )

    def _progress_logger(self, label: str, started: float):
        last_logged = {"pct": -PROGRESS_LOG_STEP}

        def on_progress(progress: BatchProgress) -> None:
            pct = progress.percentage
            if pct - last_logged["pct"] < PROGRESS_LOG_STEP and progress.completed < progress.total:
                return
            last_logged["pct"] = pct
            elapsed = time.monotonic() - started
            speed = progress.completed / elapsed if elapsed > 0 else 0.0
            remaining = progress.total - progress.completed
            eta = remaining / speed if speed > 0 else 0.0
            logger.info(
                f"[{self.name}] {label}: {progress.completed}/{progress.total} ({pct}%) "
                f"ok={progress.success_count} failed={progress.error_count} "
                f"speed={speed:.2f}/s eta={eta:.1f}s"
            )

        return on_progress

    def _discover(self, from_date: date) -> PageDiscovery:
        discover = getattr(self.source, "discover", None)
        if discover is not None:
            return discover(from_date)
        return PageDiscovery(self.source.discover_page_count(from_date), "explicit")

    def run(self, from_date: date, cancel_token: Optional[CancellationToken] = None) -> SourceRunResult:
        """Scrape every results page since `from_date`."""
        token = cancel_token or CancellationToken()
        result = self._new_result("listing")
        stats = result.stats
        logger.info(f"[{self.name}] Starting scrape from {from_date.isoformat()}")

        try:
            if not self._precheck(result):
                return result
            if token.cancelled:
                result.status = SourceStatus.CANCELLED
                return result

            discovery = self._discover(from_date)
            result.pages_discovered = discovery.page_count
            result.discovery_method = discovery.method
            logger.info(f"[{self.name}] {discovery.page_count} page(s) to scrape ({discovery.method})")

            pages = list(range(1, discovery.page_count + 1))
            batch = self.processor.process(
                pages,
                lambda page: self.source.fetch_page(from_date, page),
                concurrency=self.config.page_concurrency,
                retry_policy=self.retry_policy,
                on_progress=self._progress_logger("pages", time.monotonic()),
                cancel_token=token,
            )
        except ComplianceBlockedError as e:
            self._mark_blocked(result, e.reasons or [str(e)], e.alternatives)
            return result
        except Exception as e:
            logger.exception(f"[{self.name}] Scrape failed: {e}")
            result.status = SourceStatus.FAILED
            result.error = _describe(e)
            return result
        else:
            self._collect_pages(result, batch, pages, token)
        finally:
            stats.finalize()

        logger.info(
            f"[{self.name}] {result.status.value}: {result.record_count} records from "
            f"{stats.pages_processed} page(s), {len(batch.failures)} failed page(s), "
            f"{stats.rows_discarded} row(s) without reference, "
            f"{stats.duration_seconds:.1f}s ({stats.throughput:.2f} records/s)"
        )
        return result

    def _collect_pages(self, result: SourceRunResult, batch, pages: List[int], token: CancellationToken) -> None:
        # Join point: only this thread touches the result from here on.
        stats = result.stats
        stats.add_batch(batch)
        stats.pages_processed = batch.success_count + batch.error_count
        for _, rows in batch.successes:
            records, discarded = self.source.normalize_rows(rows)
            result.records.extend(records)
            stats.rows_discarded += discarded
        stats.records = len(result.records)

        for index, error in batch.failures:
            page = pages[index]
            result.failed_items.append((page, _describe(error)))
            logger.warning(
                f"[{self.name}] Page {page} failed after {batch.attempts.get(index, 1)} attempt(s): {error}"
            )
        result.skipped_items = len(batch.skipped)
        result.status = self._status_for(batch, token)

        blocked = [e for _, e in batch.failures if isinstance(e, ComplianceBlockedError)]
        if blocked and not batch.successes:
            self._mark_blocked(result, blocked[0].reasons, blocked[0].alternatives)

    def enrich(self, references: Iterable[str], cancel_token: Optional[CancellationToken] = None) -> SourceRunResult:
        """Fetch full details for references; failed or unparseable ones are dropped."""
        token = cancel_token or CancellationToken()
        references = list(references)
        result = self._new_result("detail")
        stats = result.stats
        logger.info(f"[{self.name}] Enriching {len(references)} application(s)")

        try:
            if not self._precheck(result):
                return result
            batch = self.processor.process(
                references,
                self.source.fetch_detail,
                concurrency=self.config.detail_concurrency,
                retry_policy=self.retry_policy,
                on_progress=self._progress_logger("details", time.monotonic()),
                cancel_token=token,
            )
        except Exception as e:
            logger.exception(f"[{self.name}] Detail enrichment failed: {e}")
            result.status = SourceStatus.FAILED
            result.error = _describe(e)
            return result
        else:
            self._collect_details(result, batch, references, token)
        finally:
            stats.finalize()

        logger.info(
            f"[{self.name}] Enriched {result.record_count}/{len(references)} application(s), "
            f"dropped {len(result.failed_items)}"
        )
        return result

    @staticmethod
    def _collect_details(
        result: SourceRunResult, batch, references: List[str], token: CancellationToken
    ) -> None:
        stats = result.stats
        stats.add_batch(batch)
        stats.pages_processed = batch.success_count + batch.error_count
        for index, record in batch.successes:
            if record is None:
                result.failed_items.append((references[index], "unparseable detail page"))
            else:
                result.records.append(record)
        for index, error in batch.failures:
            result.failed_items.append((references[index], _describe(error)))
        stats.records = len(result.records)
        result.skipped_items = len(batch.skipped)

        if token.cancelled and batch.skipped:
            result.status = SourceStatus.CANCELLED
        elif references and not result.records:
            result.status = SourceStatus.FAILED
        elif result.failed_items:
            result.status = SourceStatus.PARTIAL

    @staticmethod
    def _status_for(batch, token: CancellationToken) -> SourceStatus:
        if batch.cancelled or (token.cancelled and batch.skipped):
            return SourceStatus.CANCELLED
        if batch.failures and not batch.successes:
            return SourceStatus.FAILED
        if batch.failures:
            return SourceStatus.PARTIAL
        return SourceStatus.COMPLETED


# =============================================================================
# Aggregate report
# =============================================================================

@dataclass
class AggregateReport:
    """Outcome of a coordinator run across sources."""
    results: List[SourceRunResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    cancelled: bool = False
    cancel_reason: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    @property
    def total_records(self) -> int:
        return sum(r.record_count for r in self.results)

    @property
    def successful_sources(self) -> int:
        return sum(1 for r in self.results if r.status in (SourceStatus.COMPLETED, SourceStatus.PARTIAL))

    @property
    def failed_sources(self) -> int:
        return sum(1 for r in self.results if r.status == SourceStatus.FAILED)

    @property
    def blocked_sources(self) -> int:
        return sum(1 for r in self.results if r.status == SourceStatus.BLOCKED)

    @property
    def page_failures(self) -> int:
        return sum(len(r.failed_items) for r in self.results)

    @property
    def throughput(self) -> float:
        if self.duration_seconds <= 0:
            return 0.0
        return self.total_records / self.duration_seconds

    @property
    def status(self) -> RunStatus:
        if self.cancelled:
            return RunStatus.CANCELLED
        if not self.results or self.successful_sources == 0:
            return RunStatus.FAILED
        if all(r.status == SourceStatus.COMPLETED for r in self.results) and not self.errors:
            return RunStatus.SUCCESS
        return RunStatus.PARTIAL

    @property
    def exit_code(self) -> int:
        if self.results and self.blocked_sources == len(self.results):
            return BLOCKED_EXIT_CODE
        return EXIT_CODES[self.status]

    def get(self, source_id: str) -> Optional[SourceRunResult]:
        return next((r for r in self.results if r.source_id == source_id), None)

    def all_records(self) -> List[Record]:
        return [record for r in self.results for record in r.records]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "exit_code": self.exit_code,
            "total_records": self.total_records,
            "successful_sources": self.successful_sources,
            "failed_sources": self.failed_sources,
            "blocked_sources": self.blocked_sources,
            "page_failures": self.page_failures,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "throughput": round(self.throughput, 3),
            "cancel_reason": self.cancel_reason,
            "errors": list(self.errors),
            "sources": [r.to_dict() for r in self.results],
        }

    def format_report(self) -> str:
        lines = [
            "=" * 60,
            f"PLANNING SCRAPE REPORT ({self.status.value.upper()})",
            "=" * 60,
            f"Duration: {self.duration_seconds:.1f}s",
            f"Total records: {self.total_records}",
            f"Throughput: {self.throughput:.2f} records/s",
            f"Sources: {self.successful_sources} ok, {self.failed_sources} failed, "
            f"{self.blocked_sources} blocked",
            "",
        ]
        for r in sorted(self.results, key=lambda r: r.record_count, reverse=True):
            line = (
                f"  {r.name:<24} {r.status.value:<10} {r.record_count:>6} records  "
                f"{r.stats.pages_processed:>4} pages  {len(r.failed_items):>3} failed  "
                f"{r.stats.duration_seconds:>6.1f}s"
            )
            if r.discovery_fallback:
                line += "  (page count guessed)"
            lines.append(line)
            if r.error:
                lines.append(f"      error: {r.error}")
            for reason in r.blocked_reasons:
                lines.append(f"      blocked: {reason}")
            for alternative in r.alternatives:
                lines.append(f"      alternative: {alternative}")
        if self.cancelled:
            lines.append("")
            lines.append(f"Run cancelled: {self.cancel_reason}")
        for error in self.errors:
            lines.append(f"Error: {error}")
        return "\n".join(lines)


# =============================================================================
# Coordinator
# =============================================================================

class ScrapeCoordinator:
    """
    Runs all registered sources in parallel.

    Only one run may be active at a time; a second call raises
    AlreadyRunningError instead of interleaving.

    Example:
        coordinator = ScrapeCoordinator(runners, sink=JsonlRecordSink(path))
        report = coordinator.run_all(date(2024, 1, 1))
        sys.exit(report.exit_code)
    """

    def __init__(
        self,
        runners: Iterable[SourceRunner],
        sink=None,
        cache_invalidator=None,
        max_parallel_sources: Optional[int] = None,
    ):
        self.runners: Dict[str, SourceRunner] = {r.source_id: r for r in runners}
        self.sink = sink
        self.cache_invalidator = cache_invalidator
        self.max_parallel_sources = max_parallel_sources
        self._run_lock = threading.Lock()
        self._in_progress = False
        self._cancel_token: Optional[CancellationToken] = None
        self._last_report: Optional[AggregateReport] = None

    @property
    def is_running(self) -> bool:
        with self._run_lock:
            return self._in_progress

    @property
    def source_ids(self) -> List[str]:
        return list(self.runners)

    def _begin(self) -> CancellationToken:
        with self._run_lock:
            if self._in_progress:
                raise AlreadyRunningError("A scrape run is already in progress")
            self._in_progress = True
            self._cancel_token = CancellationToken()
            return self._cancel_token

    def _end(self, report: AggregateReport) -> None:
        with self._run_lock:
            self._in_progress = False
            self._last_report = report

    def cancel(self, reason: str = "cancelled by request") -> bool:
        """Ask the active run to stop dispatching new work."""
        with self._run_lock:
            if not self._in_progress or self._cancel_token is None:
                return False
            self._cancel_token.cancel(reason)
        logger.warning(f"Cancelling scrape run: {reason}")
        return True

    def run_all(self, from_date: date, source_ids: Optional[Iterable[str]] = None) -> AggregateReport:
        """Run every source (or the listed ones) and wait for all to settle."""
        runners = self._select(source_ids)
        token = self._begin()
        report = AggregateReport()
        try:
            logger.info(
                f"Starting planning scrape of {len(runners)} source(s) from {from_date.isoformat()}"
            )
            started = time.monotonic()
            report.results = self._run_parallel(runners, from_date, token)
            report.duration_seconds = time.monotonic() - started
            report.finished_at = datetime.now()
            report.cancelled = token.cancelled
            report.cancel_reason = token.reason
            self._publish(report)
            logger.info(
                f"Planning scrape {report.status.value}: {report.total_records} records, "
                f"{report.successful_sources} ok / {report.failed_sources} failed / "
                f"{report.blocked_sources} blocked in {report.duration_seconds:.1f}s"
            )
            return report
        finally:
            self._end(report)

    def run_source(self, source_id: str, from_date: date) -> AggregateReport:
        """Run a single source under the same single-flight guard."""
        return self.run_all(from_date, source_ids=[source_id])

    def enrich(self, source_id: str, references: Iterable[str]) -> SourceRunResult:
        runner = self._select([source_id])[0]
        token = self._begin()
        report = AggregateReport()
        try:
            result = runner.enrich(references, cancel_token=token)
            report.results = [result]
            self._publish(report)
            return result
        finally:
            self._end(report)

    def get_status(self) -> Dict[str, Any]:
        with self._run_lock:
            last = self._last_report
            return {
                "in_progress": self._in_progress,
                "sources": list(self.runners),
                "last_run_status": last.status.value if last else None,
                "last_run_finished_at": last.finished_at.isoformat() if last and last.finished_at else None,
                "last_run_records": last.total_records if last else None,
            }

    def _select(self, source_ids: Optional[Iterable[str]]) -> List[SourceRunner]:
        if source_ids is None:
            return list(self.runners.values())
        selected = []
        for source_id in source_ids:
            if source_id not in self.runners:
                raise UnknownSourceError(f"Unknown source '{source_id}'. Known: {sorted(self.runners)}")
            selected.append(self.runners[source_id])
        return selected

    def _run_parallel(
        self,
        runners: List[SourceRunner],
        from_date: date,
        token: CancellationToken,
    ) -> List[SourceRunResult]:
        if not runners:
            return []
        workers = min(self.max_parallel_sources or len(runners), len(runners))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="source") as executor:
            futures = [executor.submit(self._run_one, runner, from_date, token) for runner in runners]
            wait(futures)
        return [future.result() for future in futures]

    @staticmethod
    def _run_one(runner: SourceRunner, from_date: date, token: CancellationToken) -> SourceRunResult:
        # Settle-all: one source's failure never reaches its siblings.
        try:
            return runner.run(from_date, cancel_token=token)
        except Exception as e:
            logger.exception(f"[{runner.name}] Unhandled error: {e}")
            result = SourceRunResult(source_id=runner.source_id, name=runner.name)
            result.status = SourceStatus.FAILED
            result.error = _describe(e)
            result.stats.finalize()
            return result

    def _publish(self, report: AggregateReport) -> None:
        """Hand records to the sink and signal cache invalidation."""
        tags = []
        for result in report.results:
            if not result.records:
                continue
            if self.sink is not None:
                try:
                    self.sink.write(result.source_id, result.records)
                except Exception as e:
                    logger.exception(f"[{result.name}] Record sink failed: {e}")
                    report.errors.append(f"{result.source_id}: sink failed: {_describe(e)}")
                    continue
            tags.append(f"planning:{result.source_id}")

        if tags and self.cache_invalidator is not None:
            try:
                self.cache_invalidator.invalidate(["planning"] + tags)
            except Exception as e:
                logger.exception(f"Cache invalidation failed: {e}")
                report.errors.append(f"cache invalidation failed: {_describe(e)}")
