"""
Tests for BatchProcessor.

Covers bounded concurrency, retry accounting, ordering, progress reporting
and cancellation.
"""

import threading
import time

import pytest

from planning_scrapers.batch import BatchProcessor
from planning_scrapers.cancellation import CancellationToken
from planning_scrapers.errors import NetworkError, ParsingError
from planning_scrapers.retry import RetryPolicy

NO_RETRY = RetryPolicy(retry_attempts=0, base_delay=0)


def fast_policy(retries: int) -> RetryPolicy:
    return RetryPolicy(retry_attempts=retries, base_delay=0)


class InFlightCounter:
    """Tracks the peak number of concurrent worker calls."""

    def __init__(self):
        self._lock = threading.Lock()
        self.current = 0
        self.peak = 0

    def __enter__(self):
        with self._lock:
            self.current += 1
            self.peak = max(self.peak, self.current)

    def __exit__(self, *exc):
        with self._lock:
            self.current -= 1


class TestConcurrency:
    """At most `concurrency` worker calls are ever in flight."""

    @pytest.mark.parametrize("concurrency", [1, 3, 8])
    def test_peak_in_flight_bounded(self, concurrency):
        counter = InFlightCounter()

        def worker(item):
            with counter:
                time.sleep(0.005)
            return item

        result = BatchProcessor(NO_RETRY).process(range(30), worker, concurrency=concurrency)
        assert result.success_count == 30
        assert counter.peak <= concurrency

    def test_concurrency_actually_used(self):
        """With slow work, more than one item runs at a time."""
        counter = InFlightCounter()
        barrier = threading.Barrier(3, timeout=5)

        def worker(item):
            with counter:
                if item < 3:
                    barrier.wait()
            return item

        BatchProcessor(NO_RETRY).process(range(6), worker, concurrency=3)
        assert counter.peak == 3

    def test_concurrency_must_be_positive(self):
        with pytest.raises(ValueError):
            BatchProcessor().process([1], lambda x: x, concurrency=0)

    def test_empty_input(self):
        result = BatchProcessor().process([], lambda x: x, concurrency=4)
        assert result.total == 0
        assert not result.cancelled


class TestRetries:
    """Worker failures are retried per the policy and recorded, never raised."""

    def test_always_failing_item_attempted_retry_attempts_plus_one(self):
        calls = []
        lock = threading.Lock()

        def worker(item):
            with lock:
                calls.append(item)
            raise NetworkError("HTTP 503")

        result = BatchProcessor().process([7], worker, concurrency=2, retry_policy=fast_policy(3))
        assert calls == [7, 7, 7, 7]
        assert result.attempts[0] == 4
        assert result.error_count == 1
        index, error = result.failures[0]
        assert index == 0
        assert isinstance(error, NetworkError)

    def test_success_on_nth_attempt_counts_as_success(self):
        attempts = {}
        lock = threading.Lock()

        def worker(item):
            with lock:
                attempts[item] = attempts.get(item, 0) + 1
                n = attempts[item]
            if n < 3:
                raise NetworkError("transient")
            return item * 10

        result = BatchProcessor().process([1, 2], worker, concurrency=2, retry_policy=fast_policy(3))
        assert result.values() == [10, 20]
        assert result.error_count == 0
        assert result.attempts == {0: 3, 1: 3}

    def test_parsing_error_not_retried(self):
        calls = []

        def worker(item):
            calls.append(item)
            raise ParsingError("unrecognised page")

        result = BatchProcessor().process(["p1"], worker, concurrency=1, retry_policy=fast_policy(3))
        assert calls == ["p1"]
        assert result.attempts[0] == 1

    def test_one_failure_does_not_stop_others(self):
        def worker(item):
            if item == 2:
                raise NetworkError("bad")
            return item

        result = BatchProcessor(NO_RETRY).process([0, 1, 2, 3, 4], worker, concurrency=2)
        assert result.values() == [0, 1, 3, 4]
        assert [i for i, _ in result.failures] == [2]


class TestOrdering:
    def test_results_ordered_by_input_index(self):
        """Later items finishing first does not reorder results."""

        def worker(item):
            time.sleep(0.001 * (10 - item))
            return f"page-{item}"

        result = BatchProcessor(NO_RETRY).process(range(10), worker, concurrency=10)
        assert [i for i, _ in result.successes] == list(range(10))
        assert result.values() == [f"page-{i}" for i in range(10)]

    def test_every_index_settles_exactly_once(self):
        def worker(item):
            if item % 3 == 0:
                raise NetworkError("x")
            return item

        result = BatchProcessor(NO_RETRY).process(range(20), worker, concurrency=5)
        indices = sorted([i for i, _ in result.successes] + [i for i, _ in result.failures])
        assert indices == list(range(20))
        assert result.total == 20


class TestProgress:
    def test_progress_is_monotonic_and_complete(self):
        seen = []

        def worker(item):
            if item == 4:
                raise NetworkError("x")
            return item

        BatchProcessor(NO_RETRY).process(range(10), worker, concurrency=4, on_progress=seen.append)

        completed = [p.completed for p in seen]
        assert completed == list(range(1, 11))
        assert all(p.total == 10 for p in seen)
        assert seen[-1].percentage == 100
        assert seen[-1].success_count == 9
        assert seen[-1].error_count == 1

    def test_callback_errors_do_not_break_batch(self):
        def bad_callback(progress):
            raise RuntimeError("ui exploded")

        result = BatchProcessor(NO_RETRY).process(range(5), lambda x: x, concurrency=2, on_progress=bad_callback)
        assert result.success_count == 5


class TestCancellation:
    def test_cancel_stops_dispatch_and_reports_skipped(self):
        token = CancellationToken()

        def worker(item):
            if item == 2:
                token.cancel("operator stop")
            return item

        result = BatchProcessor(NO_RETRY).process(
            range(10), worker, concurrency=1, cancel_token=token
        )
        assert result.cancelled
        assert result.values() == [0, 1, 2]
        assert result.skipped == list(range(3, 10))
        assert result.total == 10

    def test_already_cancelled_token_dispatches_nothing(self):
        token = CancellationToken()
        token.cancel()
        calls = []
        result = BatchProcessor().process(range(3), calls.append, concurrency=2, cancel_token=token)
        assert calls == []
        assert result.skipped == [0, 1, 2]
        assert result.cancelled

    def test_child_token_follows_parent(self):
        parent = CancellationToken()
        child = parent.child()
        parent.cancel("shutdown")
        assert child.cancelled
        assert child.reason == "shutdown"
