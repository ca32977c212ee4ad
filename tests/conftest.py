"""
Shared pytest fixtures for provisioner tests.

This module provides:
- A controllable UTC clock
- An in-memory session pre-loaded with a cluster
- Recording failure handler / runtime status reporter
- A scripted Stage whose results are queued up by the test
- An executor factory wiring all of the above together
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

# Ensure provisioner package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from provisioner.core.config import clear_settings_cache
from provisioner.core.metrics import InMemoryMetrics
from provisioner.operations.executor import StagedOperationExecutor
from provisioner.operations.models import (
    Cluster,
    GardenerConfig,
    Operation,
    OperationType,
    StageResult,
)
from provisioner.operations.runtime_status import RuntimeCondition
from provisioner.operations.stage import Stage, build_stage_map
from provisioner.persistence.memory import InMemorySession

T0 = datetime(2024, 1, 15, 10, 0, 0, tzinfo=UTC)


# =============================================================================
# Test doubles
# =============================================================================


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class ScriptedStage(Stage):
    """Stage that replays queued results (or raises queued exceptions).

    Once the script is exhausted the last entry repeats.
    """

    def __init__(self, name: str, *script: StageResult | BaseException, limit: timedelta = timedelta(minutes=60)):
        self._name = name
        self._limit = limit
        self._script = list(script)
        self.calls: list[tuple[Cluster, Operation, Any]] = []

    def name(self) -> str:
        return self._name

    def time_limit(self) -> timedelta:
        return self._limit

    def run(self, cluster: Cluster, operation: Operation, logger: Any) -> StageResult:
        self.calls.append((cluster, operation, logger))
        step = self._script.pop(0) if len(self._script) > 1 else self._script[0]
        if isinstance(step, BaseException):
            raise step
        return step


class RecordingFailureHandler:
    """Records calls; raises *errors* in order before succeeding."""

    def __init__(self, *errors: Exception):
        self._errors = list(errors)
        self.calls: list[tuple[Operation, Cluster]] = []

    def handle_failure(self, operation: Operation, cluster: Cluster) -> None:
        self.calls.append((operation, cluster))
        if self._errors:
            raise self._errors.pop(0)


class RecordingStatusReporter:
    """Records runtime status updates; raises *errors* in order before succeeding."""

    def __init__(self, *errors: Exception):
        self._errors = list(errors)
        self.calls: list[tuple[str, RuntimeCondition, str]] = []

    def set_runtime_status_condition(self, cluster_id: str, condition: RuntimeCondition, tenant: str) -> None:
        self.calls.append((cluster_id, condition, tenant))
        if self._errors:
            raise self._errors.pop(0)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def _reset_settings(monkeypatch: pytest.MonkeyPatch):
    """Isolate tests from PROVISIONER_* variables and the settings cache."""
    import os

    for key in list(os.environ):
        if key.startswith("PROVISIONER_"):
            monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cluster() -> Cluster:
    return Cluster(
        id="c-1",
        tenant="tenant-1",
        cluster_config=GardenerConfig(
            name="shoot-1",
            project_name="kyma",
            kubernetes_version="1.27.4",
            region="eu-west-1",
            provider="aws",
            machine_type="m5.xlarge",
        ),
        creation_timestamp=T0,
    )


@pytest.fixture
def session(cluster: Cluster) -> InMemorySession:
    s = InMemorySession()
    s.insert_cluster(cluster)
    return s


@pytest.fixture
def failure_handler() -> RecordingFailureHandler:
    return RecordingFailureHandler()


@pytest.fixture
def status_reporter() -> RecordingStatusReporter:
    return RecordingStatusReporter()


@pytest.fixture
def metrics() -> InMemoryMetrics:
    return InMemoryMetrics()


@pytest.fixture
def insert_operation(session: InMemorySession, clock: FakeClock) -> Callable[..., Operation]:
    """Insert an in-progress operation for cluster ``c-1`` and return it."""

    def _insert(
        stage: str,
        *,
        operation_id: str = "op-1",
        operation_type: OperationType = OperationType.PROVISION,
        **overrides: Any,
    ) -> Operation:
        operation = Operation.create(
            operation_type,
            "c-1",
            stage,
            operation_id=operation_id,
            start_timestamp=clock(),
        )
        for key, value in overrides.items():
            setattr(operation, key, value)
        session.insert_operation(operation)
        return operation

    return _insert


@pytest.fixture
def make_executor(
    session: InMemorySession,
    failure_handler: RecordingFailureHandler,
    status_reporter: RecordingStatusReporter,
    metrics: InMemoryMetrics,
    clock: FakeClock,
) -> Callable[..., StagedOperationExecutor]:
    """Build an executor over the shared fixtures; retries never sleep."""

    def _make(*stages: Stage, **kwargs: Any) -> StagedOperationExecutor:
        kwargs.setdefault("default_delay", 5.0)
        kwargs.setdefault("metrics", metrics)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("sleep", lambda _delay: None)
        return StagedOperationExecutor(
            kwargs.pop("session", session),
            kwargs.pop("operation_type", OperationType.PROVISION),
            build_stage_map(stages),
            kwargs.pop("failure_handler", failure_handler),
            kwargs.pop("status_reporter", status_reporter),
            **kwargs,
        )

    return _make
