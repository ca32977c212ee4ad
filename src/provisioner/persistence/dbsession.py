"""SQLAlchemy-backed Session.

Each call runs in its own short transaction. Operation writes are
conditional ``UPDATE ... WHERE id = :id AND state = 'InProgress'`` so that
repeating them is safe and a terminal state is never overwritten.

Usage::

    from provisioner.core.orm import create_provisioner_engine
    from provisioner.persistence.dbsession import DBSession

    session = DBSession.from_url("sqlite:///provisioner.db", create_schema=True)
    operation = session.get_operation("op-1")
"""

from __future__ import annotations

import functools
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from provisioner.core.errors import InternalDBError, NotFoundError
from provisioner.core.logging import get_logger
from provisioner.core.orm.base import ProvisionerBase
from provisioner.core.orm.session import create_provisioner_engine, provisioner_session_factory
from provisioner.operations.models import (
    Cluster,
    KymaConfig,
    Operation,
    OperationState,
    OperationType,
    RuntimeUpgrade,
    UpgradeState,
    cluster_config_from_dict,
)
from provisioner.persistence.tables import ClusterTable, OperationTable, RuntimeUpgradeTable

logger = get_logger(__name__)

T = TypeVar("T")


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo; every stored timestamp is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def _db_errors(action: str) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Translate SQLAlchemy failures into :class:`InternalDBError`."""

    def decorator(fn: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return fn(*args, **kwargs)
            except SQLAlchemyError as exc:
                raise InternalDBError(f"Failed to {action}: {exc}", cause=exc) from exc

        return wrapper

    return decorator


def _operation_from_row(row: OperationTable) -> Operation:
    return Operation(
        id=row.id,
        type=OperationType(row.type),
        state=OperationState(row.state),
        stage=row.stage,
        cluster_id=row.cluster_id,
        start_timestamp=_as_utc(row.start_timestamp),
        message=row.message,
        last_transition=_as_utc(row.last_transition),
        end_timestamp=_as_utc(row.end_timestamp),
    )


def _cluster_from_row(row: ClusterTable) -> Cluster:
    return Cluster(
        id=row.id,
        tenant=row.tenant,
        cluster_config=cluster_config_from_dict(row.cluster_config),
        kubeconfig=row.kubeconfig,
        kyma_config=KymaConfig.from_dict(row.kyma_config) if row.kyma_config else None,
        creation_timestamp=_as_utc(row.creation_timestamp),
        deleted=bool(row.deleted),
    )


class DBSession:
    """Relational implementation of :class:`~provisioner.persistence.session.Session`."""

    def __init__(self, engine: Engine):
        self._engine = engine
        self._factory = provisioner_session_factory(engine)

    @classmethod
    def from_url(cls, url: str, *, echo: bool = False, create_schema: bool = False) -> DBSession:
        session = cls(create_provisioner_engine(url, echo=echo))
        if create_schema:
            session.create_schema()
        return session

    @property
    def engine(self) -> Engine:
        return self._engine

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        ProvisionerBase.metadata.create_all(self._engine)

    # ── Read ────────────────────────────────────────────────────

    @_db_errors("get operation")
    def get_operation(self, operation_id: str) -> Operation:
        with self._factory() as s:
            row = s.get(OperationTable, operation_id)
            if row is None:
                raise NotFoundError(f"Operation not found for id: {operation_id}")
            return _operation_from_row(row)

    @_db_errors("get cluster")
    def get_cluster(self, cluster_id: str) -> Cluster:
        with self._factory() as s:
            row = s.get(ClusterTable, cluster_id)
            if row is None:
                raise NotFoundError(f"Cluster not found for id: {cluster_id}")
            return _cluster_from_row(row)

    @_db_errors("get last operation")
    def get_last_operation(self, cluster_id: str) -> Operation:
        latest = (
            select(func.max(OperationTable.start_timestamp))
            .where(OperationTable.cluster_id == cluster_id)
            .scalar_subquery()
        )
        stmt = select(OperationTable).where(
            OperationTable.cluster_id == cluster_id,
            OperationTable.start_timestamp == latest,
        )
        with self._factory() as s:
            row = s.scalars(stmt).first()
            if row is None:
                raise NotFoundError(f"Last operation not found for runtime: {cluster_id}")
            return _operation_from_row(row)

    @_db_errors("list in progress operations")
    def list_in_progress_operations(self) -> list[Operation]:
        stmt = (
            select(OperationTable)
            .where(OperationTable.state == OperationState.IN_PROGRESS.value)
            .order_by(OperationTable.start_timestamp)
        )
        with self._factory() as s:
            return [_operation_from_row(row) for row in s.scalars(stmt)]

    @_db_errors("get runtime upgrade")
    def get_runtime_upgrade(self, operation_id: str) -> RuntimeUpgrade:
        stmt = select(RuntimeUpgradeTable).where(RuntimeUpgradeTable.operation_id == operation_id)
        with self._factory() as s:
            row = s.scalars(stmt).first()
            if row is None:
                raise NotFoundError(f"Runtime upgrade not found for operation with {operation_id} id")
            return RuntimeUpgrade(
                id=row.id,
                operation_id=row.operation_id,
                state=UpgradeState(row.state),
                pre_upgrade_kyma_config=(
                    KymaConfig.from_dict(row.pre_upgrade_kyma_config) if row.pre_upgrade_kyma_config else None
                ),
                post_upgrade_kyma_config=(
                    KymaConfig.from_dict(row.post_upgrade_kyma_config) if row.post_upgrade_kyma_config else None
                ),
            )

    # ── Write ───────────────────────────────────────────────────

    @_db_errors("insert cluster")
    def insert_cluster(self, cluster: Cluster) -> None:
        with self._factory.begin() as s:
            s.add(
                ClusterTable(
                    id=cluster.id,
                    tenant=cluster.tenant,
                    kubeconfig=cluster.kubeconfig,
                    cluster_config=cluster.cluster_config.to_dict(),
                    kyma_config=cluster.kyma_config.to_dict() if cluster.kyma_config else None,
                    creation_timestamp=cluster.creation_timestamp,
                    deleted=cluster.deleted,
                )
            )

    @_db_errors("insert operation")
    def insert_operation(self, operation: Operation) -> None:
        with self._factory.begin() as s:
            s.add(
                OperationTable(
                    id=operation.id,
                    type=operation.type.value,
                    state=operation.state.value,
                    stage=operation.stage,
                    message=operation.message,
                    cluster_id=operation.cluster_id,
                    start_timestamp=operation.start_timestamp,
                    last_transition=operation.last_transition,
                    end_timestamp=operation.end_timestamp,
                )
            )

    @_db_errors("update operation state")
    def update_operation_state(
        self, operation_id: str, message: str, state: OperationState, timestamp: datetime
    ) -> None:
        self._update_in_progress(
            operation_id,
            {"state": state.value, "message": message, "end_timestamp": timestamp},
        )

    @_db_errors("transition operation")
    def transition_operation(self, operation_id: str, message: str, stage: str, timestamp: datetime) -> None:
        self._update_in_progress(
            operation_id,
            {"stage": stage, "message": message, "last_transition": timestamp},
        )

    @_db_errors("update kubeconfig")
    def update_kubeconfig(self, cluster_id: str, kubeconfig: str) -> None:
        with self._factory.begin() as s:
            result = s.execute(
                update(ClusterTable).where(ClusterTable.id == cluster_id).values(kubeconfig=kubeconfig)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Cluster not found for id: {cluster_id}")

    @_db_errors("insert runtime upgrade")
    def insert_runtime_upgrade(self, upgrade: RuntimeUpgrade) -> None:
        with self._factory.begin() as s:
            s.add(
                RuntimeUpgradeTable(
                    id=upgrade.id,
                    operation_id=upgrade.operation_id,
                    state=upgrade.state.value,
                    pre_upgrade_kyma_config=(
                        upgrade.pre_upgrade_kyma_config.to_dict() if upgrade.pre_upgrade_kyma_config else None
                    ),
                    post_upgrade_kyma_config=(
                        upgrade.post_upgrade_kyma_config.to_dict() if upgrade.post_upgrade_kyma_config else None
                    ),
                )
            )

    @_db_errors("update upgrade state")
    def update_upgrade_state(self, operation_id: str, state: UpgradeState) -> None:
        with self._factory.begin() as s:
            result = s.execute(
                update(RuntimeUpgradeTable)
                .where(RuntimeUpgradeTable.operation_id == operation_id)
                .values(state=state.value)
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Runtime upgrade not found for operation with {operation_id} id")

    def _update_in_progress(self, operation_id: str, values: dict[str, Any]) -> None:
        with self._factory.begin() as s:
            result = s.execute(
                update(OperationTable)
                .where(
                    OperationTable.id == operation_id,
                    OperationTable.state == OperationState.IN_PROGRESS.value,
                )
                .values(**values)
            )
            if result.rowcount:
                return
            if s.get(OperationTable, operation_id) is None:
                raise NotFoundError(f"Operation not found for id: {operation_id}")
            logger.debug("operation_already_terminal", operation_id=operation_id)


__all__ = ["DBSession"]
