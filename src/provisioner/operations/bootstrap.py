"""Restart reconciliation: put every in-progress operation back on a queue.

The executor resumes from the persisted stage on its own, but nothing
schedules it after a process restart. Call :func:`resume_in_progress` once
at startup, after the queues are running.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING

from provisioner.core.logging import get_logger
from provisioner.operations.models import Operation, OperationType

if TYPE_CHECKING:
    from provisioner.operations.queue import OperationQueue
    from provisioner.persistence.session import ReadSession

logger = get_logger(__name__)


class OperationRouter:
    """Routes operation ids to the queue serving their operation type."""

    def __init__(self, queues: Mapping[OperationType, OperationQueue] | None = None):
        self._queues: dict[OperationType, OperationQueue] = dict(queues or {})

    def register(self, operation_type: OperationType, queue: OperationQueue) -> None:
        if operation_type in self._queues:
            raise ValueError(f"Queue already registered for operation type: {operation_type.value}")
        self._queues[operation_type] = queue

    def queue_for(self, operation_type: OperationType) -> OperationQueue | None:
        return self._queues.get(operation_type)

    @property
    def operation_types(self) -> list[OperationType]:
        return list(self._queues)

    def add(self, operation: Operation) -> bool:
        """Enqueue *operation*; ``False`` when no queue serves its type."""
        queue = self._queues.get(operation.type)
        if queue is None:
            return False
        queue.add(operation.id)
        return True


def resume_in_progress(session: ReadSession, router: OperationRouter) -> int:
    """Enqueue every ``InProgress`` operation. Returns how many were enqueued."""
    resumed = 0
    for operation in session.list_in_progress_operations():
        if router.add(operation):
            resumed += 1
            logger.info(
                "operation_resumed",
                operation_id=operation.id,
                operation_type=operation.type.value,
                stage=operation.stage,
            )
        else:
            logger.warning(
                "operation_resume_skipped",
                operation_id=operation.id,
                operation_type=operation.type.value,
                reason="no queue for operation type",
            )
    logger.info("in_progress_operations_resumed", count=resumed)
    return resumed


__all__ = ["OperationRouter", "resume_in_progress"]
