"""Staged operation executor - drives one operation through its stage map.

WHY
───
Provisioning, upgrading and deprovisioning a cluster are long chains of
slow, fallible calls. The executor turns such a chain into a crash-resumable
state machine: every stage boundary is a persisted checkpoint, waits are
expressed as requeue delays instead of sleeps, and each stage is bounded by
a wall-clock budget measured from the operation's last transition.

ARCHITECTURE
────────────
::

    StagedOperationExecutor(session, type, stages, failure_handler, reporter)
      └── .execute(operation_id) -> ProcessingResult
            1. load operation      (terminal / wrong type -> done)
            2. load cluster
            3. loop until stage == Finished:
                 unknown stage          -> fail (non-recoverable)
                 time limit exceeded    -> fail (non-recoverable)
                 stage.run(...)
                   NonRecoverableError  -> fail
                   other exception      -> requeue(default_delay)
                   new stage            -> persist transition, keep looping
                   same stage, delay    -> requeue(delay)
                   same stage, no delay -> requeue(default_delay)
            4. persist Succeeded

    fail = persist Failed -> FailureHandler -> runtime status FAILED,
           each under the write retry policy.

No exception raised by a stage escapes ``execute``; every path ends in a
:class:`ProcessingResult` plus the persisted operation state.

Related modules:
    stage.py   Stage contract and stage-map wiring
    queue.py   worker pool that calls ``execute``
    retry.py   write retry policy
"""

from __future__ import annotations

import dataclasses
import time
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from provisioner.core.errors import (
    ConfigError,
    ErrorCategory,
    NonRecoverable,
    NonRecoverableError,
    NotFoundError,
    Recoverable,
    classify_error,
)
from provisioner.core.logging import get_logger
from provisioner.core.metrics import MetricsSink, NoopMetrics
from provisioner.operations.failure import FailureHandler
from provisioner.operations.models import (
    FINISHED_STAGE,
    Cluster,
    Operation,
    OperationState,
    OperationType,
    ProcessingResult,
    utcnow,
)
from provisioner.operations.retry import DEFAULT_RETRY, RetryStrategy, retry_on_error
from provisioner.operations.runtime_status import RuntimeCondition, RuntimeStatusReporter
from provisioner.operations.stage import Stage

if TYPE_CHECKING:
    from provisioner.core.config.settings import ProvisionerSettings
    from provisioner.persistence.session import Session

logger = get_logger(__name__)

DEFAULT_REQUEUE_DELAY = 20.0

SUCCEEDED_MESSAGE = "Operation succeeded"

_MIN_TRANSITION_STEP = timedelta(microseconds=1)


def _in_progress_message(stage: str) -> str:
    return f"Operation in progress. Stage {stage}"


def _checked_stage_map(stages: Mapping[str, Stage]) -> Mapping[str, Stage]:
    """Copy *stages* into a read-only mapping, rejecting miswired entries.

    Raises:
        ConfigError: On a ``Finished`` entry or a key that is not the stage's name.
    """
    for key, stage in stages.items():
        if key == FINISHED_STAGE:
            raise ConfigError(f"stage name {FINISHED_STAGE!r} is reserved")
        if stage.name() != key:
            raise ConfigError(f"stage {stage.name()!r} registered under {key!r}")
    return MappingProxyType(dict(stages))


class StagedOperationExecutor:
    """Runs operations of one type through an immutable stage map.

    Args:
        session: Operation/cluster persistence.
        operation_type: The only operation type this executor processes.
        stages: ``stage name -> Stage``; checked and copied into a read-only mapping.
        failure_handler: Invoked once per terminal failure.
        status_reporter: Told about terminal failures.
        default_delay: Requeue delay (seconds) after a recoverable error.
        write_retry: Retry policy for persisted writes and failure side effects.
        metrics: Metrics sink.
        clock: Returns the current time (timezone-aware UTC).
        sleep: Used between retry attempts.
    """

    def __init__(
        self,
        session: Session,
        operation_type: OperationType,
        stages: Mapping[str, Stage],
        failure_handler: FailureHandler,
        status_reporter: RuntimeStatusReporter,
        *,
        default_delay: float = DEFAULT_REQUEUE_DELAY,
        write_retry: RetryStrategy | None = None,
        metrics: MetricsSink | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if default_delay <= 0:
            raise ValueError("default_delay must be positive")
        self._session = session
        self._type = operation_type
        self._stages: Mapping[str, Stage] = _checked_stage_map(stages)
        self._failure_handler = failure_handler
        self._status_reporter = status_reporter
        self._default_delay = default_delay
        self._write_retry = write_retry if write_retry is not None else DEFAULT_RETRY
        self._metrics = metrics if metrics is not None else NoopMetrics()
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: ProvisionerSettings,
        session: Session,
        operation_type: OperationType,
        stages: Mapping[str, Stage],
        failure_handler: FailureHandler,
        status_reporter: RuntimeStatusReporter,
        *,
        metrics: MetricsSink | None = None,
    ) -> StagedOperationExecutor:
        """Build an executor with delay and retry policy taken from *settings*."""
        return cls(
            session,
            operation_type,
            stages,
            failure_handler,
            status_reporter,
            default_delay=settings.default_requeue_delay,
            write_retry=settings.write_retry_strategy(),
            metrics=metrics,
        )

    @property
    def operation_type(self) -> OperationType:
        return self._type

    @property
    def stages(self) -> Mapping[str, Stage]:
        return self._stages

    @property
    def default_delay(self) -> float:
        return self._default_delay

    # ------------------------------------------------------------------ #
    # Entry point
    # ------------------------------------------------------------------ #

    def execute(self, operation_id: str) -> ProcessingResult:
        """Advance *operation_id* as far as it can go right now."""
        log = logger.bind(operation_id=operation_id, operation_type=self._type.value)

        try:
            operation = self._session.get_operation(operation_id)
        except NotFoundError as exc:
            log.error("operation_not_found", error=str(exc))
            return ProcessingResult.done()
        except Exception as exc:
            log.error("operation_load_failed", error=str(exc))
            return self._requeue_default()

        if operation.state is not OperationState.IN_PROGRESS:
            log.info("operation_not_in_progress", state=operation.state.value)
            return ProcessingResult.done()

        try:
            cluster = self._session.get_cluster(operation.cluster_id)
        except NotFoundError as exc:
            log.error("cluster_not_found", cluster_id=operation.cluster_id, error=str(exc))
            return ProcessingResult.done()
        except Exception as exc:
            log.error("cluster_load_failed", cluster_id=operation.cluster_id, error=str(exc))
            return self._requeue_default()

        if operation.type is not self._type:
            log.warning("operation_type_mismatch", actual_type=operation.type.value)
            return ProcessingResult.done()

        return self._process(operation, cluster, log.bind(cluster_id=cluster.id))

    # ------------------------------------------------------------------ #
    # Stage loop
    # ------------------------------------------------------------------ #

    def _process(self, operation: Operation, cluster: Cluster, log: Any) -> ProcessingResult:
        while operation.stage != FINISHED_STAGE:
            stage_log = log.bind(stage=operation.stage)

            stage = self._stages.get(operation.stage)
            if stage is None:
                return self._fail(
                    operation,
                    cluster,
                    NonRecoverableError(f"unknown stage: {operation.stage}"),
                    stage_log,
                )

            if self._timed_out(operation, stage):
                return self._fail(
                    operation,
                    cluster,
                    NonRecoverableError(
                        f"timeout while processing operation: stage {operation.stage} "
                        f"exceeded its time limit of {stage.time_limit()}",
                        category=ErrorCategory.TIMEOUT,
                    ),
                    stage_log,
                )

            started = time.perf_counter()
            try:
                result = stage.run(cluster, operation, stage_log)
            except Exception as exc:
                match classify_error(exc):
                    case NonRecoverable(error=error):
                        self._count_stage_error(operation.stage, "non_recoverable")
                        return self._fail(operation, cluster, error, stage_log)
                    case Recoverable(error=error):
                        self._count_stage_error(operation.stage, "recoverable")
                        stage_log.warning(
                            "stage_failed_will_retry",
                            error=f"{type(error).__name__}: {error}",
                            retry_in=self._default_delay,
                        )
                        return self._requeue_default()
            finally:
                self._metrics.observe(
                    "stage_run_duration_seconds",
                    time.perf_counter() - started,
                    {"type": self._type.value, "stage": operation.stage},
                )

            if result.stage != operation.stage:
                try:
                    operation = self._transition(operation, result.stage)
                except Exception as exc:
                    stage_log.error("stage_transition_failed", next_stage=result.stage, error=str(exc))
                    return self._requeue_default()
                stage_log.info("stage_transitioned", next_stage=result.stage)
                if result.delay > 0:
                    # A changed stage is entered right away; a delay only applies
                    # when a stage re-schedules itself.
                    stage_log.warning("stage_delay_ignored", next_stage=result.stage, delay=result.delay)
                continue

            if result.delay > 0:
                stage_log.debug("stage_waiting", delay=result.delay)
                return self._requeue(result.delay)

            # Same stage, no delay, no error: looping again would spin.
            stage_log.warning("stage_returned_no_progress", retry_in=self._default_delay)
            return self._requeue_default()

        return self._succeed(operation, log)

    def _timed_out(self, operation: Operation, stage: Stage) -> bool:
        return self._clock() - operation.transition_started_at > stage.time_limit()

    # ------------------------------------------------------------------ #
    # Persisted writes
    # ------------------------------------------------------------------ #

    def _retry(self, func: Callable[..., Any], *args: Any) -> Any:
        return retry_on_error(func, *args, strategy=self._write_retry, sleep=self._sleep)

    def _transition(self, operation: Operation, next_stage: str) -> Operation:
        # last_transition must strictly increase, even for chained transitions
        # within one tick or a clock that stepped back
        now = max(self._clock(), operation.transition_started_at + _MIN_TRANSITION_STEP)
        message = _in_progress_message(next_stage)
        self._retry(self._session.transition_operation, operation.id, message, next_stage, now)
        self._metrics.inc("stage_transitions_total", {"type": self._type.value, "stage": next_stage})
        return dataclasses.replace(operation, stage=next_stage, message=message, last_transition=now)

    def _succeed(self, operation: Operation, log: Any) -> ProcessingResult:
        try:
            self._retry(
                self._session.update_operation_state,
                operation.id,
                SUCCEEDED_MESSAGE,
                OperationState.SUCCEEDED,
                self._clock(),
            )
        except Exception as exc:
            log.error("operation_success_not_persisted", error=str(exc))
            return self._requeue_default()

        log.info("operation_succeeded")
        self._metrics.inc("operations_total", {"type": self._type.value, "state": OperationState.SUCCEEDED.value})
        return ProcessingResult.done()

    def _fail(self, operation: Operation, cluster: Cluster, error: BaseException, log: Any) -> ProcessingResult:
        message = str(error)
        log.error("operation_failed", error=message)

        try:
            self._retry(
                self._session.update_operation_state,
                operation.id,
                message,
                OperationState.FAILED,
                self._clock(),
            )
        except Exception as exc:
            # Still InProgress; the next attempt reaches the same failure.
            log.error("operation_failure_not_persisted", error=str(exc))
            return self._requeue_default()

        self._metrics.inc("operations_total", {"type": self._type.value, "state": OperationState.FAILED.value})

        try:
            self._retry(self._failure_handler.handle_failure, operation, cluster)
        except Exception as exc:
            log.error("failure_handler_failed", error=str(exc))

        try:
            self._retry(
                self._status_reporter.set_runtime_status_condition,
                cluster.id,
                RuntimeCondition.FAILED,
                cluster.tenant,
            )
        except Exception as exc:
            log.error("runtime_status_update_failed", error=str(exc))

        return ProcessingResult.done()

    # ------------------------------------------------------------------ #
    # Results
    # ------------------------------------------------------------------ #

    def _requeue(self, delay: float) -> ProcessingResult:
        self._metrics.inc("operation_requeues_total", {"type": self._type.value})
        return ProcessingResult.requeue_after(delay)

    def _requeue_default(self) -> ProcessingResult:
        return self._requeue(self._default_delay)

    def _count_stage_error(self, stage: str, kind: str) -> None:
        self._metrics.inc("stage_errors_total", {"type": self._type.value, "stage": stage, "kind": kind})


__all__ = [
    "DEFAULT_REQUEUE_DELAY",
    "SUCCEEDED_MESSAGE",
    "StagedOperationExecutor",
]
