"""Thread-safe in-memory Session.

Backs tests and embedders that keep operation state elsewhere. Records are
copied on the way in and out, so callers can never mutate stored state by
accident.
"""

from __future__ import annotations

import copy
import threading
from datetime import datetime

from provisioner.core.errors import NotFoundError
from provisioner.operations.models import (
    Cluster,
    Operation,
    OperationState,
    RuntimeUpgrade,
    UpgradeState,
)


class InMemorySession:
    """Dict-backed implementation of :class:`~provisioner.persistence.session.Session`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._operations: dict[str, Operation] = {}
        self._clusters: dict[str, Cluster] = {}
        self._upgrades: dict[str, RuntimeUpgrade] = {}

    # ── Read ────────────────────────────────────────────────────

    def get_operation(self, operation_id: str) -> Operation:
        with self._lock:
            operation = self._operations.get(operation_id)
            if operation is None:
                raise NotFoundError(f"Operation not found for id: {operation_id}")
            return copy.deepcopy(operation)

    def get_cluster(self, cluster_id: str) -> Cluster:
        with self._lock:
            cluster = self._clusters.get(cluster_id)
            if cluster is None:
                raise NotFoundError(f"Cluster not found for id: {cluster_id}")
            return copy.deepcopy(cluster)

    def get_last_operation(self, cluster_id: str) -> Operation:
        with self._lock:
            candidates = [op for op in self._operations.values() if op.cluster_id == cluster_id]
            if not candidates:
                raise NotFoundError(f"Last operation not found for runtime: {cluster_id}")
            return copy.deepcopy(max(candidates, key=lambda op: op.start_timestamp))

    def list_in_progress_operations(self) -> list[Operation]:
        with self._lock:
            return [
                copy.deepcopy(op)
                for op in self._operations.values()
                if op.state is OperationState.IN_PROGRESS
            ]

    def get_runtime_upgrade(self, operation_id: str) -> RuntimeUpgrade:
        with self._lock:
            upgrade = self._upgrades.get(operation_id)
            if upgrade is None:
                raise NotFoundError(f"Runtime upgrade not found for operation with {operation_id} id")
            return copy.deepcopy(upgrade)

    # ── Write ───────────────────────────────────────────────────

    def insert_cluster(self, cluster: Cluster) -> None:
        with self._lock:
            self._clusters[cluster.id] = copy.deepcopy(cluster)

    def insert_operation(self, operation: Operation) -> None:
        with self._lock:
            self._operations[operation.id] = copy.deepcopy(operation)

    def update_operation_state(
        self, operation_id: str, message: str, state: OperationState, timestamp: datetime
    ) -> None:
        with self._lock:
            operation = self._require_operation(operation_id)
            if operation.state is not OperationState.IN_PROGRESS:
                return
            operation.state = state
            operation.message = message
            operation.end_timestamp = timestamp

    def transition_operation(self, operation_id: str, message: str, stage: str, timestamp: datetime) -> None:
        with self._lock:
            operation = self._require_operation(operation_id)
            if operation.state is not OperationState.IN_PROGRESS:
                return
            operation.stage = stage
            operation.message = message
            operation.last_transition = timestamp

    def update_kubeconfig(self, cluster_id: str, kubeconfig: str) -> None:
        with self._lock:
            cluster = self._clusters.get(cluster_id)
            if cluster is None:
                raise NotFoundError(f"Cluster not found for id: {cluster_id}")
            cluster.kubeconfig = kubeconfig

    def insert_runtime_upgrade(self, upgrade: RuntimeUpgrade) -> None:
        with self._lock:
            self._upgrades[upgrade.operation_id] = copy.deepcopy(upgrade)

    def update_upgrade_state(self, operation_id: str, state: UpgradeState) -> None:
        with self._lock:
            upgrade = self._upgrades.get(operation_id)
            if upgrade is None:
                raise NotFoundError(f"Runtime upgrade not found for operation with {operation_id} id")
            upgrade.state = state

    def _require_operation(self, operation_id: str) -> Operation:
        operation = self._operations.get(operation_id)
        if operation is None:
            raise NotFoundError(f"Operation not found for id: {operation_id}")
        return operation
