"""Staged operation engine.

An operation (provision, deprovision, upgrade, reconnect) is a chain of
named stages. The executor drives one operation through its stage map,
persisting every stage boundary; the queue runs executors on a worker pool
and schedules polling waits.

Modules:
    models          Operation, Cluster, StageResult, ProcessingResult
    stage           Stage contract, build_stage_map
    executor        StagedOperationExecutor
    queue           DelayingQueue, OperationQueue
    bootstrap       OperationRouter, resume_in_progress
    failure         FailureHandler implementations
    runtime_status  RuntimeStatusReporter implementations
    retry           write retry strategies
"""

from provisioner.operations.bootstrap import OperationRouter, resume_in_progress
from provisioner.operations.executor import StagedOperationExecutor
from provisioner.operations.failure import FailureHandler, NoopFailureHandler, UpgradeFailureHandler
from provisioner.operations.models import (
    FINISHED_STAGE,
    Cluster,
    Operation,
    OperationState,
    OperationType,
    ProcessingResult,
    StageName,
    StageResult,
)
from provisioner.operations.queue import DelayingQueue, OperationQueue
from provisioner.operations.runtime_status import (
    LoggingRuntimeStatusReporter,
    NoopRuntimeStatusReporter,
    RuntimeCondition,
    RuntimeStatusReporter,
)
from provisioner.operations.stage import CallableStage, Stage, build_stage_map

__all__ = [
    "FINISHED_STAGE",
    "CallableStage",
    "Cluster",
    "DelayingQueue",
    "FailureHandler",
    "LoggingRuntimeStatusReporter",
    "NoopFailureHandler",
    "NoopRuntimeStatusReporter",
    "Operation",
    "OperationQueue",
    "OperationRouter",
    "OperationState",
    "OperationType",
    "ProcessingResult",
    "RuntimeCondition",
    "RuntimeStatusReporter",
    "Stage",
    "StageName",
    "StageResult",
    "StagedOperationExecutor",
    "UpgradeFailureHandler",
    "build_stage_map",
    "resume_in_progress",
]
