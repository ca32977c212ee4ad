"""
Tests for DelayingQueue and OperationQueue.

DelayingQueue is driven with a manual clock so delay handling is
deterministic; OperationQueue tests use real worker threads with short
timeouts.
"""

from __future__ import annotations

import threading
import time
from unittest.mock import MagicMock

import pytest

from provisioner.core.metrics import InMemoryMetrics
from provisioner.operations.models import OperationType, ProcessingResult
from provisioner.operations.queue import MAX_RATE_LIMIT_DELAY, DelayingQueue, OperationQueue, default_rate_limiter
from provisioner.operations.retry import ConstantBackoff


class ManualClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class _OverflowingLimiter(ConstantBackoff):
    def next_delay(self, attempt: int) -> float:
        raise OverflowError("Numerical result out of range")


def _get_nowait(queue: DelayingQueue) -> str | None:
    """Pop an item if one is ready, without blocking."""
    if len(queue) == 0:
        return None
    item, _ = queue.get()
    return item


# ── DelayingQueue ───────────────────────────────────────────────────────


class TestDelayingQueueDedupe:
    def test_duplicate_adds_are_coalesced(self):
        queue = DelayingQueue()
        queue.add("op-1")
        queue.add("op-1")
        queue.add("op-2")
        assert len(queue) == 2

    def test_add_while_processing_defers_until_done(self):
        """Re-adding an id being processed queues it once, after done()."""
        queue = DelayingQueue()
        queue.add("op-1")
        item, shutdown = queue.get()
        assert (item, shutdown) == ("op-1", False)

        for _ in range(5):
            queue.add("op-1")
        assert len(queue) == 0

        queue.done("op-1")
        assert len(queue) == 1
        assert queue.get() == ("op-1", False)
        queue.done("op-1")
        assert len(queue) == 0

    def test_done_without_readd_drops_item(self):
        queue = DelayingQueue()
        queue.add("op-1")
        queue.get()
        queue.done("op-1")
        assert len(queue) == 0

    def test_fifo_order(self):
        queue = DelayingQueue()
        for item in ("a", "b", "c"):
            queue.add(item)
        assert [queue.get()[0] for _ in range(3)] == ["a", "b", "c"]


class TestDelayingQueueDelays:
    def test_add_after_waits_for_delay(self):
        clock = ManualClock()
        queue = DelayingQueue(clock=clock)

        queue.add_after("op-1", 20)
        assert len(queue) == 0
        assert queue.waiting == 1

        clock.now += 19.9
        assert _get_nowait(queue) is None

        clock.now += 0.2
        # promotion happens inside get()
        queue.add("trigger")
        assert queue.get() == ("trigger", False)
        assert queue.get() == ("op-1", False)

    def test_add_after_zero_is_immediate(self):
        queue = DelayingQueue()
        queue.add_after("op-1", 0)
        assert len(queue) == 1

    def test_earliest_ready_time_wins(self):
        clock = ManualClock()
        queue = DelayingQueue(clock=clock)

        queue.add_after("op-1", 60)
        queue.add_after("op-1", 10)
        queue.add_after("op-1", 30)
        assert queue.waiting == 1

        clock.now += 11
        assert queue.get() == ("op-1", False)
        queue.done("op-1")

        # the superseded 60s entry must not add the item a second time
        clock.now += 100
        queue.add("other")
        assert queue.get() == ("other", False)
        assert len(queue) == 0

    def test_get_blocks_until_delay_elapses(self):
        """A blocked get() wakes up once the delayed item is ready."""
        queue = DelayingQueue()
        queue.add_after("op-1", 0.05)

        started = time.monotonic()
        item, shutdown = queue.get()

        assert (item, shutdown) == ("op-1", False)
        assert time.monotonic() - started >= 0.04


class TestDelayingQueueRateLimiting:
    def test_backoff_grows_and_forget_resets(self):
        clock = ManualClock()
        queue = DelayingQueue(clock=clock)

        queue.add_rate_limited("op-1")
        queue.add_rate_limited("op-1")
        assert queue.num_requeues("op-1") == 2

        queue.forget("op-1")
        assert queue.num_requeues("op-1") == 0

    def test_default_rate_limiter_delays(self):
        limiter = default_rate_limiter()
        assert limiter.next_delay(0) == pytest.approx(0.005)
        assert limiter.next_delay(3) == pytest.approx(0.04)
        assert limiter.next_delay(40) == 1000.0

    def test_many_failures_stay_capped(self):
        """Backoff after thousands of failures is the cap, not an overflow."""
        clock = ManualClock()
        queue = DelayingQueue(clock=clock)
        for _ in range(1100):
            queue.add_rate_limited("op-1")
        assert queue.num_requeues("op-1") == 1100

        queue.add_rate_limited("op-2")
        assert queue.waiting == 2

    def test_limiter_arithmetic_error_falls_back_to_max_delay(self):
        clock = ManualClock()
        queue = DelayingQueue(rate_limiter=_OverflowingLimiter(), clock=clock)

        queue.add_rate_limited("op-1")
        assert queue.waiting == 1

        clock.now += MAX_RATE_LIMIT_DELAY - 1
        queue.add("trigger")
        assert queue.get() == ("trigger", False)
        assert len(queue) == 0

        clock.now += 2
        assert queue.get() == ("op-1", False)


class TestDelayingQueueShutdown:
    def test_shutdown_wakes_blocked_getters(self):
        queue = DelayingQueue()
        results: list[tuple[str | None, bool]] = []
        thread = threading.Thread(target=lambda: results.append(queue.get()))
        thread.start()

        queue.shut_down()
        thread.join(timeout=2)

        assert not thread.is_alive()
        assert results == [(None, True)]

    def test_adds_ignored_after_shutdown(self):
        queue = DelayingQueue()
        queue.shut_down()
        queue.add("op-1")
        queue.add_after("op-2", 1)
        assert len(queue) == 0
        assert queue.shutting_down is True

    def test_queued_items_drain_before_shutdown_reported(self):
        queue = DelayingQueue()
        queue.add("op-1")
        queue.shut_down()
        assert queue.get() == ("op-1", False)
        assert queue.get() == (None, True)


# ── OperationQueue ──────────────────────────────────────────────────────


def _executor(side_effect) -> MagicMock:
    executor = MagicMock()
    executor.operation_type = OperationType.PROVISION
    executor.execute.side_effect = side_effect
    return executor


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class TestOperationQueue:
    def test_processes_added_operation(self):
        executor = _executor(lambda op_id: ProcessingResult.done())
        queue = OperationQueue(executor, workers=2)
        queue.start()
        try:
            queue.add("op-1")
            assert _wait_for(lambda: executor.execute.call_count == 1)
        finally:
            queue.stop(timeout=2)
        executor.execute.assert_called_once_with("op-1")

    def test_readds_during_processing_run_once_more(self):
        """N adds while an id is in flight lead to exactly one more execute."""
        release = threading.Event()
        entered = threading.Event()
        calls: list[str] = []

        def execute(op_id):
            calls.append(op_id)
            if len(calls) == 1:
                entered.set()
                release.wait(2)
            return ProcessingResult.done()

        executor = _executor(execute)
        queue = OperationQueue(executor, workers=4)
        queue.start()
        try:
            queue.add("op-1")
            assert entered.wait(2)
            for _ in range(10):
                queue.add("op-1")
            release.set()
            assert _wait_for(lambda: len(calls) == 2)
            time.sleep(0.05)
        finally:
            queue.stop(timeout=2)

        assert calls == ["op-1", "op-1"]

    def test_same_id_never_processed_concurrently(self):
        active = 0
        max_active = 0
        lock = threading.Lock()
        calls = 0

        def execute(op_id):
            nonlocal active, max_active, calls
            with lock:
                active += 1
                calls += 1
                max_active = max(max_active, active)
            time.sleep(0.01)
            with lock:
                active -= 1
            return ProcessingResult.done()

        queue = OperationQueue(_executor(execute), workers=4)
        queue.start()
        try:
            for _ in range(20):
                queue.add("op-1")
                time.sleep(0.002)
            assert _wait_for(lambda: calls >= 1 and active == 0 and len(queue.queue) == 0)
        finally:
            queue.stop(timeout=2)

        assert max_active == 1

    def test_requeue_result_schedules_retry(self):
        results = iter([ProcessingResult.requeue_after(0.01), ProcessingResult.done()])
        executor = _executor(lambda op_id: next(results))
        queue = OperationQueue(executor, workers=1)
        queue.start()
        try:
            queue.add("op-1")
            assert _wait_for(lambda: executor.execute.call_count == 2)
        finally:
            queue.stop(timeout=2)

    def test_worker_survives_executor_crash(self):
        """An exception escaping execute is logged and the id retried with backoff."""
        metrics = InMemoryMetrics()
        outcomes = iter([RuntimeError("bug"), ProcessingResult.done()])

        def execute(op_id):
            outcome = next(outcomes)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        executor = _executor(execute)
        queue = OperationQueue(executor, workers=1, metrics=metrics)
        queue.start()
        try:
            queue.add("op-1")
            assert _wait_for(lambda: executor.execute.call_count == 2)
            assert _wait_for(lambda: queue.queue.num_requeues("op-1") == 0)
        finally:
            queue.stop(timeout=2)

        assert metrics.value("queue_worker_errors_total", {"queue": "provision-queue"}) == 1
        assert metrics.value("queue_items_processed_total", {"queue": "provision-queue"}) == 1

    def test_run_blocks_until_stop_event(self):
        executor = _executor(lambda op_id: ProcessingResult.done())
        queue = OperationQueue(executor, workers=1)
        stop = threading.Event()
        runner = threading.Thread(target=queue.run, args=(stop,))
        runner.start()
        try:
            queue.add("op-1")
            assert _wait_for(lambda: executor.execute.call_count == 1)
            assert runner.is_alive()
        finally:
            stop.set()
            runner.join(timeout=2)

        assert not runner.is_alive()
        assert queue.queue.shutting_down is True

    def test_start_twice_raises(self):
        queue = OperationQueue(_executor(lambda op_id: ProcessingResult.done()), workers=1)
        queue.start()
        try:
            with pytest.raises(RuntimeError):
                queue.start()
        finally:
            queue.stop(timeout=2)

    def test_workers_must_be_positive(self):
        with pytest.raises(ValueError):
            OperationQueue(_executor(None), workers=0)

    def test_name_defaults_to_operation_type(self):
        queue = OperationQueue(_executor(None))
        assert queue.name == "provision-queue"

    def test_injected_queue_is_used(self):
        """An empty caller-supplied queue is kept and drained by the workers."""
        executor = _executor(lambda op_id: ProcessingResult.done())
        delaying = DelayingQueue()
        queue = OperationQueue(executor, workers=1, queue=delaying)
        assert queue.queue is delaying

        queue.start()
        try:
            delaying.add("op-1")
            assert _wait_for(lambda: executor.execute.call_count == 1)
        finally:
            queue.stop(timeout=2)
        executor.execute.assert_called_once_with("op-1")

    def test_worker_survives_crash_after_many_failures(self):
        """A crashing id with a huge failure count does not take the worker down."""
        calls: list[str] = []

        def execute(op_id):
            calls.append(op_id)
            if op_id == "op-1":
                raise RuntimeError("bug")
            return ProcessingResult.done()

        delaying = DelayingQueue()
        for _ in range(1100):
            delaying.add_rate_limited("op-1")
        queue = OperationQueue(_executor(execute), workers=1, queue=delaying)
        queue.start()
        try:
            assert _wait_for(lambda: "op-1" in calls)
            queue.add("op-2")
            assert _wait_for(lambda: "op-2" in calls)
        finally:
            queue.stop(timeout=2)

        assert calls == ["op-1", "op-2"]
        assert delaying.num_requeues("op-1") == 1101

    def test_worker_survives_queue_error(self):
        """An error while rescheduling is logged and the worker keeps going."""

        class FlakyQueue(DelayingQueue):
            def __init__(self) -> None:
                super().__init__()
                self.broken = True

            def forget(self, item: str) -> None:
                if self.broken:
                    self.broken = False
                    raise RuntimeError("forget failed")
                super().forget(item)

        executor = _executor(lambda op_id: ProcessingResult.done())
        queue = OperationQueue(executor, workers=1, queue=FlakyQueue())
        queue.start()
        try:
            queue.add("op-1")
            assert _wait_for(lambda: executor.execute.call_count == 1)
            queue.add("op-2")
            assert _wait_for(lambda: executor.execute.call_count == 2)
        finally:
            queue.stop(timeout=2)

        assert [c.args[0] for c in executor.execute.call_args_list] == ["op-1", "op-2"]

    def test_from_settings_uses_worker_count(self):
        """worker_count sizes the pool; every worker is started."""
        from provisioner.core.config import ProvisionerSettings

        active = 0
        peak = 0
        lock = threading.Lock()
        release = threading.Event()

        def execute(op_id):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            release.wait(2)
            with lock:
                active -= 1
            return ProcessingResult.done()

        metrics = InMemoryMetrics()
        queue = OperationQueue.from_settings(ProvisionerSettings(worker_count=3), _executor(execute), metrics=metrics)
        queue.start()
        try:
            for index in range(5):
                queue.add(f"op-{index}")
            assert _wait_for(lambda: peak == 3)
            time.sleep(0.05)
            assert peak == 3
        finally:
            release.set()
            queue.stop(timeout=2)

        assert metrics.value("queue_items_processed_total", {"queue": "provision-queue"}) == 5
