"""Delayed, de-duplicating work queue and the worker pool that drains it.

:class:`DelayingQueue` follows the kubernetes client workqueue model. An
item lives in up to three places:

- ``queue``      ids waiting for a worker, in FIFO order
- ``dirty``      ids that need processing (queued, or re-added while running)
- ``processing`` ids currently held by a worker

``add`` on a dirty id is a no-op and ``add`` on a processing id only marks
it dirty; ``done`` puts a dirty id back on the queue. Together this means
one operation id is never handed to two workers at once, and any number of
re-adds during a run collapse into exactly one follow-up run.

:class:`OperationQueue` runs a fixed pool of threads, each looping
``get -> executor.execute -> add_after / forget -> done``.

Usage::

    stop = threading.Event()
    queue = OperationQueue(executor, workers=5)
    queue.start(stop)
    queue.add(operation.id)
    ...
    queue.stop()
"""

from __future__ import annotations

import heapq
import itertools
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import TYPE_CHECKING

from provisioner.core.logging import bind_context, get_logger
from provisioner.core.metrics import MetricsSink, NoopMetrics
from provisioner.operations.retry import ExponentialBackoff, RetryStrategy

if TYPE_CHECKING:
    from provisioner.core.config.settings import ProvisionerSettings
    from provisioner.operations.executor import StagedOperationExecutor

logger = get_logger(__name__)

MAX_RATE_LIMIT_DELAY = 1000.0


def default_rate_limiter() -> ExponentialBackoff:
    """Per-item backoff of the kubernetes default controller rate limiter (5ms .. 1000s)."""
    return ExponentialBackoff(
        max_attempts=0,
        base_delay=0.005,
        max_delay=MAX_RATE_LIMIT_DELAY,
        multiplier=2.0,
        jitter=False,
    )


class DelayingQueue:
    """Thread-safe de-duplicating queue with delayed and rate-limited adds.

    Args:
        rate_limiter: Backoff used by :meth:`add_rate_limited`; only its
            ``next_delay`` is consulted.
        clock: Monotonic clock in seconds.
    """

    def __init__(
        self,
        *,
        rate_limiter: RetryStrategy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cond = threading.Condition()
        self._queue: deque[str] = deque()
        self._dirty: set[str] = set()
        self._processing: set[str] = set()
        self._waiting: list[tuple[float, int, str]] = []
        self._waiting_ready_at: dict[str, float] = {}
        self._sequence = itertools.count()
        self._failures: dict[str, int] = {}
        self._rate_limiter = rate_limiter if rate_limiter is not None else default_rate_limiter()
        self._clock = clock
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    @property
    def waiting(self) -> int:
        """Number of items scheduled for a later add."""
        with self._cond:
            return len(self._waiting_ready_at)

    def add(self, item: str) -> None:
        with self._cond:
            if self._shutting_down:
                return
            self._add_locked(item)

    def add_after(self, item: str, delay: float) -> None:
        """Add *item* once *delay* seconds have passed.

        If the item is already waiting, the earlier of the two ready times wins.
        """
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = self._clock() + delay
            current = self._waiting_ready_at.get(item)
            if current is not None and current <= ready_at:
                return
            self._waiting_ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._sequence), item))
            self._cond.notify_all()

    def add_rate_limited(self, item: str) -> None:
        """Add *item* after a backoff that grows with its consecutive failures."""
        with self._cond:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        try:
            delay = self._rate_limiter.next_delay(failures)
        except ArithmeticError:
            logger.warning("rate_limit_delay_failed", item=item, failures=failures + 1, delay=MAX_RATE_LIMIT_DELAY)
            delay = MAX_RATE_LIMIT_DELAY
        self.add_after(item, delay)

    def forget(self, item: str) -> None:
        """Reset the failure count used by :meth:`add_rate_limited`."""
        with self._cond:
            self._failures.pop(item, None)

    def num_requeues(self, item: str) -> int:
        with self._cond:
            return self._failures.get(item, 0)

    def get(self) -> tuple[str | None, bool]:
        """Block until an item is available.

        Returns:
            ``(item, False)``, or ``(None, True)`` once the queue is shut down
            and drained.
        """
        with self._cond:
            while True:
                self._promote_ready_locked()
                if self._queue:
                    item = self._queue.popleft()
                    self._processing.add(item)
                    self._dirty.discard(item)
                    return item, False
                if self._shutting_down:
                    return None, True
                self._cond.wait(self._next_wait_locked())

    def done(self, item: str) -> None:
        """Mark *item* as processed; requeue it if it was re-added meanwhile."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop accepting items and wake every blocked :meth:`get`."""
        with self._cond:
            self._shutting_down = True
            self._waiting.clear()
            self._waiting_ready_at.clear()
            self._cond.notify_all()

    def _add_locked(self, item: str) -> None:
        if item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._cond.notify()

    def _promote_ready_locked(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            ready_at, _, item = heapq.heappop(self._waiting)
            # superseded by an earlier add_after
            if self._waiting_ready_at.get(item) != ready_at:
                continue
            del self._waiting_ready_at[item]
            self._add_locked(item)

    def _next_wait_locked(self) -> float | None:
        if not self._waiting:
            return None
        return max(0.0, self._waiting[0][0] - self._clock())


class OperationQueue:
    """Fixed-size worker pool feeding operation ids to one executor.

    Args:
        executor: Executor for the operation type this queue serves.
        workers: Number of worker threads.
        queue: Underlying :class:`DelayingQueue`; a new one if omitted.
        metrics: Metrics sink.
        name: Prefix for worker thread names and log context.
    """

    def __init__(
        self,
        executor: StagedOperationExecutor,
        *,
        workers: int = 5,
        queue: DelayingQueue | None = None,
        metrics: MetricsSink | None = None,
        name: str | None = None,
    ):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._executor = executor
        self._workers = workers
        self._queue = queue if queue is not None else DelayingQueue()
        self._metrics = metrics if metrics is not None else NoopMetrics()
        self._name = name or f"{executor.operation_type.value.lower()}-queue"
        self._threads: list[threading.Thread] = []
        self._watcher: threading.Thread | None = None
        self._stop_event: threading.Event | None = None

    @classmethod
    def from_settings(
        cls,
        settings: ProvisionerSettings,
        executor: StagedOperationExecutor,
        *,
        metrics: MetricsSink | None = None,
    ) -> OperationQueue:
        """Build a queue sized by ``settings.worker_count``."""
        return cls(executor, workers=settings.worker_count, metrics=metrics)

    @property
    def queue(self) -> DelayingQueue:
        return self._queue

    @property
    def executor(self) -> StagedOperationExecutor:
        return self._executor

    @property
    def name(self) -> str:
        return self._name

    def add(self, operation_id: str) -> None:
        """Schedule *operation_id* for processing."""
        self._queue.add(operation_id)
        self._report_depth()

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def run(self, stop_event: threading.Event) -> None:
        """Start the workers and block until *stop_event* is set."""
        self.start(stop_event)
        stop_event.wait()
        self.stop()

    def start(self, stop_event: threading.Event | None = None) -> None:
        """Start the workers in the background.

        When *stop_event* is given, setting it shuts the queue down.
        """
        if self._threads:
            raise RuntimeError(f"{self._name} is already running")

        logger.info("operation_queue_starting", queue=self._name, workers=self._workers)
        self._stop_event = stop_event or threading.Event()
        for index in range(self._workers):
            thread = threading.Thread(
                target=self._worker_loop,
                args=(f"{self._name}-{index}",),
                name=f"{self._name}-{index}",
                daemon=True,
            )
            thread.start()
            self._threads.append(thread)

        if stop_event is not None:
            self._watcher = threading.Thread(
                target=self._watch_stop,
                args=(stop_event,),
                name=f"{self._name}-stop",
                daemon=True,
            )
            self._watcher.start()

    def stop(self, timeout: float | None = None) -> None:
        """Shut the queue down and wait for in-flight operations to finish.

        Running ``Stage.run`` calls are not interrupted.
        """
        if self._stop_event is not None:
            self._stop_event.set()
        self._queue.shut_down()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("operation_queue_stopped", queue=self._name)

    def _watch_stop(self, stop_event: threading.Event) -> None:
        stop_event.wait()
        self._queue.shut_down()

    # ------------------------------------------------------------------ #
    # Worker
    # ------------------------------------------------------------------ #

    def _worker_loop(self, worker_name: str) -> None:
        bind_context(worker=worker_name)
        while True:
            item, shutdown = self._queue.get()
            if shutdown or item is None:
                logger.debug("operation_worker_exiting")
                return
            try:
                self._process(item)
            except Exception:
                # the worker outlives any single operation
                logger.exception("operation_worker_error", operation_id=item)
            finally:
                self._queue.done(item)
                self._report_depth()

    def _process(self, operation_id: str) -> None:
        try:
            result = self._executor.execute(operation_id)
        except Exception:
            logger.exception("operation_processing_crashed", operation_id=operation_id)
            self._metrics.inc("queue_worker_errors_total", {"queue": self._name})
            self._queue.add_rate_limited(operation_id)
            return

        self._metrics.inc("queue_items_processed_total", {"queue": self._name})
        if result.requeue:
            self._queue.add_after(operation_id, result.delay)
        else:
            self._queue.forget(operation_id)

    def _report_depth(self) -> None:
        self._metrics.set_gauge("queue_depth", float(len(self._queue)), {"queue": self._name})


__all__ = ["DelayingQueue", "OperationQueue", "default_rate_limiter"]
