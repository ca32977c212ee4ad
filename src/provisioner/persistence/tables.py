"""Table definitions - cluster, operation, runtime_upgrade.

Tags:
    provisioner, orm, sqlalchemy, tables
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Text
from sqlalchemy.orm import Mapped, mapped_column

from provisioner.core.orm.base import ProvisionerBase


class ClusterTable(ProvisionerBase):
    __tablename__ = "cluster"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    tenant: Mapped[str] = mapped_column(Text, nullable=False)
    kubeconfig: Mapped[str | None] = mapped_column(Text)
    # GardenerConfig / GCPConfig ``to_dict()`` form
    cluster_config: Mapped[dict] = mapped_column(JSON, nullable=False)
    kyma_config: Mapped[dict | None] = mapped_column(JSON)
    creation_timestamp: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)


class OperationTable(ProvisionerBase):
    __tablename__ = "operation"
    __table_args__ = (
        Index("ix_operation_state", "state"),
        Index("ix_operation_cluster_id", "cluster_id"),
    )

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    type: Mapped[str] = mapped_column(Text, nullable=False)
    state: Mapped[str] = mapped_column(Text, nullable=False)
    stage: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, default="", nullable=False)
    cluster_id: Mapped[str] = mapped_column(Text, ForeignKey("cluster.id"), nullable=False)
    start_timestamp: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_transition: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))
    end_timestamp: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True))


class RuntimeUpgradeTable(ProvisionerBase):
    __tablename__ = "runtime_upgrade"

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    operation_id: Mapped[str] = mapped_column(Text, ForeignKey("operation.id"), unique=True, nullable=False)
    state: Mapped[str] = mapped_column(Text, nullable=False)
    pre_upgrade_kyma_config: Mapped[dict | None] = mapped_column(JSON)
    post_upgrade_kyma_config: Mapped[dict | None] = mapped_column(JSON)
