"""Stage contract and stage-map wiring.

A stage is one named, idempotent unit of work inside a workflow. The
executor owns an immutable ``name -> Stage`` map per operation type and
drives an operation through it.

Contract for implementers:

- ``run`` must be safe to re-invoke. It is called again after a transient
  error, after a process restart, and on every poll while waiting.
- Return ``StageResult(next_stage)`` to continue immediately.
- Return ``StageResult(self.name(), delay=seconds)`` to pause the operation
  and be re-checked later. Never sleep inside ``run``: a sleeping stage pins
  a worker thread.
- Raise :class:`~provisioner.core.errors.NonRecoverableError` to fail the
  operation for good; any other exception is retried.

Example::

    class WaitForInstallation(Stage):
        def name(self) -> str:
            return StageName.WAITING_FOR_INSTALLATION

        def time_limit(self) -> timedelta:
            return timedelta(minutes=60)

        def run(self, cluster, operation, logger) -> StageResult:
            if not installer.is_done(cluster.id):
                return StageResult(self.name(), delay=20)
            return StageResult(StageName.CONNECT_RUNTIME_AGENT)

    stages = build_stage_map([StartInstallation(...), WaitForInstallation()])
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping
from datetime import timedelta
from types import MappingProxyType
from typing import Any

from provisioner.core.errors import ConfigError
from provisioner.operations.models import FINISHED_STAGE, Cluster, Operation, StageResult


class Stage(ABC):
    """One step of a workflow."""

    @abstractmethod
    def name(self) -> str:
        """Identifier this stage is registered under."""
        ...

    @abstractmethod
    def time_limit(self) -> timedelta:
        """Longest time an operation may stay on this stage, from its last transition."""
        ...

    @abstractmethod
    def run(self, cluster: Cluster, operation: Operation, logger: Any) -> StageResult:
        """Perform one increment of work and say what happens next."""
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name()!r})"


StageFunc = Callable[[Cluster, Operation, Any], StageResult]


class CallableStage(Stage):
    """Adapts a plain function to the :class:`Stage` contract."""

    def __init__(self, name: str, time_limit: timedelta, func: StageFunc):
        self._name = name
        self._time_limit = time_limit
        self._func = func

    def name(self) -> str:
        return self._name

    def time_limit(self) -> timedelta:
        return self._time_limit

    def run(self, cluster: Cluster, operation: Operation, logger: Any) -> StageResult:
        return self._func(cluster, operation, logger)


StageMap = Mapping[str, Stage]


def build_stage_map(stages: Iterable[Stage]) -> StageMap:
    """Index *stages* by name into a read-only mapping.

    Raises:
        ConfigError: On duplicate names or a stage registered as ``Finished``.
    """
    index: dict[str, Stage] = {}
    for stage in stages:
        stage_name = stage.name()
        if stage_name == FINISHED_STAGE:
            raise ConfigError(f"stage name {FINISHED_STAGE!r} is reserved")
        if stage_name in index:
            raise ConfigError(f"stage already registered: {stage_name}")
        index[stage_name] = stage
    return MappingProxyType(index)


__all__ = [
    "Stage",
    "StageFunc",
    "CallableStage",
    "StageMap",
    "build_stage_map",
]
