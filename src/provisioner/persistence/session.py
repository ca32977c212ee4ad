"""Session contract consumed by the operation engine.

The executor needs only four calls (``get_operation``, ``get_cluster``,
``update_operation_state``, ``transition_operation``); the rest serve the
bootstrap reconciliation, stages that persist their outputs, the upgrade
failure handler and the CLI.

Write semantics every implementation must honour:

- ``update_operation_state`` and ``transition_operation`` only touch an
  operation that is still ``InProgress``. Calling them again is harmless
  and a terminal state is never reverted.
- A missing record raises :class:`~provisioner.core.errors.NotFoundError`;
  any other backend failure raises
  :class:`~provisioner.core.errors.InternalDBError`.

There is no locking around these calls: the queue guarantees that only
one worker processes a given operation id at a time.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from provisioner.operations.models import (
    Cluster,
    Operation,
    OperationState,
    RuntimeUpgrade,
    UpgradeState,
)


@runtime_checkable
class ReadSession(Protocol):
    """Read side of the persistence contract."""

    def get_operation(self, operation_id: str) -> Operation: ...

    def get_cluster(self, cluster_id: str) -> Cluster: ...

    def get_last_operation(self, cluster_id: str) -> Operation: ...

    def list_in_progress_operations(self) -> list[Operation]: ...

    def get_runtime_upgrade(self, operation_id: str) -> RuntimeUpgrade: ...


@runtime_checkable
class WriteSession(Protocol):
    """Write side of the persistence contract."""

    def insert_cluster(self, cluster: Cluster) -> None: ...

    def insert_operation(self, operation: Operation) -> None: ...

    def update_operation_state(
        self, operation_id: str, message: str, state: OperationState, timestamp: datetime
    ) -> None: ...

    def transition_operation(
        self, operation_id: str, message: str, stage: str, timestamp: datetime
    ) -> None: ...

    def update_kubeconfig(self, cluster_id: str, kubeconfig: str) -> None: ...

    def insert_runtime_upgrade(self, upgrade: RuntimeUpgrade) -> None: ...

    def update_upgrade_state(self, operation_id: str, state: UpgradeState) -> None: ...


@runtime_checkable
class Session(ReadSession, WriteSession, Protocol):
    """Full read/write session."""


__all__ = ["ReadSession", "WriteSession", "Session"]
