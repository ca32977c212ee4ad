"""Failure handlers - side effects run once when an operation fails for good.

The executor invokes the handler after the ``Failed`` state is persisted,
under the write retry policy, so a dropped call cannot leave external
bookkeeping (such as an in-progress upgrade flag) inconsistent.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from provisioner.core.logging import get_logger
from provisioner.operations.models import Cluster, Operation, UpgradeState

if TYPE_CHECKING:
    from provisioner.persistence.session import WriteSession

logger = get_logger(__name__)


@runtime_checkable
class FailureHandler(Protocol):
    """Cleanup / bookkeeping invoked on terminal failure."""

    def handle_failure(self, operation: Operation, cluster: Cluster) -> None: ...


class NoopFailureHandler:
    """For workflows with nothing to clean up."""

    def handle_failure(self, operation: Operation, cluster: Cluster) -> None:
        pass


class UpgradeFailureHandler:
    """Flips the operation's runtime upgrade to ``Failed``."""

    def __init__(self, session: WriteSession):
        self._session = session

    def handle_failure(self, operation: Operation, cluster: Cluster) -> None:
        logger.info(
            "marking_upgrade_failed",
            operation_id=operation.id,
            cluster_id=cluster.id,
        )
        self._session.update_upgrade_state(operation.id, UpgradeState.FAILED)


__all__ = [
    "FailureHandler",
    "NoopFailureHandler",
    "UpgradeFailureHandler",
]
