"""
Parallel Batch Processor - bounded thread-pool fan-out with retries.

Keeps at most `concurrency` items in flight. Items are dispatched lazily in
input order: each time one settles, the next pending item is submitted. Every
worker call runs under the RetryPolicy; an item that exhausts its retries is
recorded as a failure and the batch carries on.

Results are collected on the calling thread only, so progress counters are
updated by a single writer and never double count.

Usage:
    processor = BatchProcessor()
    result = processor.process(
        pages, fetch_page, concurrency=10,
        retry_policy=RetryPolicy(retry_attempts=3),
        on_progress=lambda p: logger.info(f"{p.percentage}%"),
    )
    records = result.values()
"""
import logging
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, Iterator, Optional, TypeVar

from .cancellation import CancellationToken
from .models import BatchProgress, BatchResult, WorkItem
from .retry import RetryOutcome, RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

ProgressCallback = Callable[[BatchProgress], None]


class BatchProcessor:
    """Runs a worker over a list of items with bounded concurrency."""

    def __init__(self, retry_policy: Optional[RetryPolicy] = None, name: str = "batch"):
        self.retry_policy = retry_policy or RetryPolicy()
        self.name = name

    def process(
        self,
        items: Iterable[T],
        worker: Callable[[T], R],
        concurrency: int,
        retry_policy: Optional[RetryPolicy] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> BatchResult[R]:
        """
        Process items with at most `concurrency` worker calls in flight.

        Args:
            items: Inputs, dispatched in order
            worker: Called once per attempt with the item value
            concurrency: Maximum simultaneous worker calls
            retry_policy: Overrides the processor default
            on_progress: Called after every settled item
            cancel_token: Checked before each dispatch

        Returns:
            BatchResult ordered by input index. Items never dispatched because
            of cancellation are listed in `skipped`.
        """
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")

        policy = retry_policy or self.retry_policy
        work = [WorkItem(index=i, value=v) for i, v in enumerate(items)]
        result: BatchResult[R] = BatchResult()
        if not work:
            return result

        total = len(work)
        pending: Iterator[WorkItem] = iter(work)
        in_flight: Dict[Future, WorkItem] = {}
        exhausted = False

        with ThreadPoolExecutor(
            max_workers=min(concurrency, total),
            thread_name_prefix=f"{self.name}-worker",
        ) as executor:

            def dispatch() -> None:
                nonlocal exhausted
                while not exhausted and len(in_flight) < concurrency:
                    if cancel_token is not None and cancel_token.cancelled:
                        return
                    item = next(pending, None)
                    if item is None:
                        exhausted = True
                        return
                    future = executor.submit(
                        policy.run, worker, item.value,
                        label=f"{self.name}[{item.index}]",
                    )
                    in_flight[future] = item

            dispatch()
            while in_flight:
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    item = in_flight.pop(future)
                    self._record(result, item, future.result())
                    self._report(on_progress, result, total)
                dispatch()

        remaining = [item.index for item in pending] if not exhausted else []
        if remaining:
            result.skipped = remaining
            result.cancelled = True
            logger.info(
                f"{self.name}: cancelled with {len(result.skipped)}/{total} items not dispatched"
                + (f" ({cancel_token.reason})" if cancel_token is not None else "")
            )

        result.successes.sort(key=lambda pair: pair[0])
        result.failures.sort(key=lambda pair: pair[0])
        return result

    @staticmethod
    def _record(result: BatchResult, item: WorkItem, outcome: RetryOutcome) -> None:
        result.attempts[item.index] = outcome.attempts
        if outcome.success:
            result.successes.append((item.index, outcome.value))
        else:
            result.failures.append((item.index, outcome.error))

    def _report(self, on_progress: Optional[ProgressCallback], result: BatchResult, total: int) -> None:
        if on_progress is None:
            return
        progress = BatchProgress(
            completed=result.success_count + result.error_count,
            total=total,
            success_count=result.success_count,
            error_count=result.error_count,
        )
        try:
            on_progress(progress)
        except Exception as e:
            logger.warning(f"{self.name}: progress callback raised {type(e).__name__}: {e}")
