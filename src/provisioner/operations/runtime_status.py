"""Runtime registry status reporting.

When an operation fails for good, the runtime registry is told so that
the status surfaced to users matches the provisioner's view. The executor
calls :meth:`RuntimeStatusReporter.set_runtime_status_condition` only on
terminal failure, wrapped in the write retry policy.
"""

from __future__ import annotations

from enum import Enum
from typing import Protocol, runtime_checkable

from provisioner.core.logging import get_logger

logger = get_logger(__name__)


class RuntimeCondition(str, Enum):
    """Runtime status conditions known to the registry."""

    INITIAL = "INITIAL"
    PROVISIONING = "PROVISIONING"
    CONNECTED = "CONNECTED"
    UPGRADING = "UPGRADING"
    DEPROVISIONING = "DEPROVISIONING"
    FAILED = "FAILED"


@runtime_checkable
class RuntimeStatusReporter(Protocol):
    """Registry-status collaborator."""

    def set_runtime_status_condition(self, cluster_id: str, condition: RuntimeCondition, tenant: str) -> None: ...


class NoopRuntimeStatusReporter:
    """Reporter for deployments without a runtime registry."""

    def set_runtime_status_condition(self, cluster_id: str, condition: RuntimeCondition, tenant: str) -> None:
        pass


class LoggingRuntimeStatusReporter:
    """Reporter that only records the condition change in the log."""

    def set_runtime_status_condition(self, cluster_id: str, condition: RuntimeCondition, tenant: str) -> None:
        logger.info(
            "runtime_status_condition_set",
            cluster_id=cluster_id,
            condition=condition.value,
            tenant=tenant,
        )


__all__ = [
    "RuntimeCondition",
    "RuntimeStatusReporter",
    "NoopRuntimeStatusReporter",
    "LoggingRuntimeStatusReporter",
]
