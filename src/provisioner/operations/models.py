"""Operation domain models.

Defines the core data structures of the operation engine:
- Operation: one persisted lifecycle action (provision, deprovision, upgrade)
- Cluster: the target of an operation, with provider-shaped configuration
- RuntimeUpgrade: bookkeeping row flipped by the upgrade failure handler
- StageResult: what a stage asks for next
- ProcessingResult: what the executor asks of the queue

These models are shared by the Executor, the Session implementations and
the CLI.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


# Distinguished terminal stage: returning it as the next stage ends the
# workflow successfully.
FINISHED_STAGE = "Finished"


class StageName:
    """Well-known stage names of the built-in workflows."""

    # Provisioning
    START_PROVISIONING = "StartingProvisioning"
    WAITING_FOR_CLUSTER_DOMAIN = "WaitingForClusterDomain"
    WAITING_FOR_CLUSTER_CREATION = "WaitingForClusterCreation"
    STARTING_INSTALLATION = "StartingInstallation"
    WAITING_FOR_INSTALLATION = "WaitingForInstallation"
    CONNECT_RUNTIME_AGENT = "ConnectRuntimeAgent"

    # Upgrade
    STARTING_UPGRADE = "StartingUpgrade"
    UPDATING_UPGRADE_STATE = "UpdatingUpgradeState"

    # Deprovisioning
    CLEANUP_CLUSTER = "CleanupCluster"
    DEPROVISIONING = "Deprovisioning"
    WAITING_FOR_CLUSTER_DELETION = "WaitingForClusterDeletion"
    DEPROVISIONING_FINISHED = "DeprovisioningFinished"

    FINISHED = FINISHED_STAGE


class OperationType(str, Enum):
    """Kind of lifecycle action. Each type is owned by exactly one executor."""

    PROVISION = "Provision"
    DEPROVISION = "Deprovision"
    UPGRADE = "Upgrade"
    RECONNECT_RUNTIME = "ReconnectRuntime"


class OperationState(str, Enum):
    """State of an operation. SUCCEEDED and FAILED are terminal."""

    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self is not OperationState.IN_PROGRESS


class UpgradeState(str, Enum):
    """State of a runtime upgrade bookkeeping row."""

    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


@dataclass
class Operation:
    """One persisted lifecycle action and its current stage/state.

    ``stage`` only changes through a persisted transition. Timeouts are
    measured from :attr:`transition_started_at`.

    Example:
        >>> op = Operation.create(OperationType.PROVISION, "c-1", StageName.START_PROVISIONING)
        >>> op.state
        <OperationState.IN_PROGRESS: 'InProgress'>
    """

    id: str
    type: OperationType
    state: OperationState
    stage: str
    cluster_id: str
    start_timestamp: datetime
    message: str = ""
    last_transition: datetime | None = None
    end_timestamp: datetime | None = None

    @classmethod
    def create(
        cls,
        operation_type: OperationType,
        cluster_id: str,
        stage: str,
        *,
        message: str = "Operation started",
        operation_id: str | None = None,
        start_timestamp: datetime | None = None,
    ) -> Operation:
        """Create a new in-progress operation."""
        return cls(
            id=operation_id or str(uuid.uuid4()),
            type=operation_type,
            state=OperationState.IN_PROGRESS,
            stage=stage,
            cluster_id=cluster_id,
            start_timestamp=start_timestamp or utcnow(),
            message=message,
        )

    @property
    def transition_started_at(self) -> datetime:
        """When the current stage was entered."""
        return self.last_transition or self.start_timestamp

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "state": self.state.value,
            "stage": self.stage,
            "cluster_id": self.cluster_id,
            "start_timestamp": self.start_timestamp.isoformat(),
            "last_transition": self.last_transition.isoformat() if self.last_transition else None,
            "end_timestamp": self.end_timestamp.isoformat() if self.end_timestamp else None,
            "message": self.message,
        }


# ---------------------------------------------------------------------------
# Cluster configuration
# ---------------------------------------------------------------------------


@dataclass
class GardenerConfig:
    """Cluster shaped for a Gardener-managed shoot."""

    name: str
    project_name: str
    kubernetes_version: str
    region: str
    provider: str
    machine_type: str
    target_secret: str = ""
    disk_type: str = ""
    volume_size_gb: int = 0
    auto_scaler_min: int = 1
    auto_scaler_max: int = 3
    provider_specific: dict[str, Any] = field(default_factory=dict)

    provider_type = "gardener"

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_type": self.provider_type,
            "name": self.name,
            "project_name": self.project_name,
            "kubernetes_version": self.kubernetes_version,
            "region": self.region,
            "provider": self.provider,
            "machine_type": self.machine_type,
            "target_secret": self.target_secret,
            "disk_type": self.disk_type,
            "volume_size_gb": self.volume_size_gb,
            "auto_scaler_min": self.auto_scaler_min,
            "auto_scaler_max": self.auto_scaler_max,
            "provider_specific": dict(self.provider_specific),
        }


@dataclass
class GCPConfig:
    """Cluster shaped for a plain GKE cluster."""

    name: str
    project_name: str
    kubernetes_version: str
    number_of_nodes: int
    boot_disk_size_gb: int
    machine_type: str
    region: str
    zone: str = ""

    provider_type = "gcp"

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_type": self.provider_type,
            "name": self.name,
            "project_name": self.project_name,
            "kubernetes_version": self.kubernetes_version,
            "number_of_nodes": self.number_of_nodes,
            "boot_disk_size_gb": self.boot_disk_size_gb,
            "machine_type": self.machine_type,
            "region": self.region,
            "zone": self.zone,
        }


ClusterConfig = GardenerConfig | GCPConfig

_CLUSTER_CONFIG_TYPES: dict[str, type[GardenerConfig] | type[GCPConfig]] = {
    GardenerConfig.provider_type: GardenerConfig,
    GCPConfig.provider_type: GCPConfig,
}


def cluster_config_from_dict(data: dict[str, Any]) -> ClusterConfig:
    """Rebuild a provider config from its ``to_dict()`` form."""
    values = dict(data)
    provider_type = values.pop("provider_type", None)
    config_cls = _CLUSTER_CONFIG_TYPES.get(provider_type or "")
    if config_cls is None:
        raise ValueError(f"unknown cluster provider type: {provider_type!r}")
    return config_cls(**values)


@dataclass
class KymaComponentConfig:
    """One component of the runtime installation."""

    component: str
    namespace: str
    source_url: str | None = None
    configuration: dict[str, Any] = field(default_factory=dict)


@dataclass
class KymaConfig:
    """Runtime installation configuration."""

    release_version: str
    components: list[KymaComponentConfig] = field(default_factory=list)
    global_configuration: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "release_version": self.release_version,
            "components": [
                {
                    "component": c.component,
                    "namespace": c.namespace,
                    "source_url": c.source_url,
                    "configuration": dict(c.configuration),
                }
                for c in self.components
            ],
            "global_configuration": dict(self.global_configuration),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> KymaConfig:
        return cls(
            release_version=data["release_version"],
            components=[KymaComponentConfig(**c) for c in data.get("components", [])],
            global_configuration=dict(data.get("global_configuration", {})),
        )


@dataclass
class Cluster:
    """Target of an operation.

    Read-only from the executor's point of view; stages persist what they
    produce (e.g. kubeconfig) through the Session.
    """

    id: str
    tenant: str
    cluster_config: ClusterConfig
    kubeconfig: str | None = None
    kyma_config: KymaConfig | None = None
    creation_timestamp: datetime = field(default_factory=utcnow)
    deleted: bool = False


@dataclass
class RuntimeUpgrade:
    """Bookkeeping for an upgrade operation."""

    id: str
    operation_id: str
    state: UpgradeState
    pre_upgrade_kyma_config: KymaConfig | None = None
    post_upgrade_kyma_config: KymaConfig | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operation_id": self.operation_id,
            "state": self.state.value,
            "pre_upgrade_release": (
                self.pre_upgrade_kyma_config.release_version if self.pre_upgrade_kyma_config else None
            ),
            "post_upgrade_release": (
                self.post_upgrade_kyma_config.release_version if self.post_upgrade_kyma_config else None
            ),
        }


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StageResult:
    """What a stage declares should happen next.

    ``delay == 0``: advance to ``stage`` now.
    ``delay > 0``: keep ``stage`` (normally unchanged) and re-run it later.
    """

    stage: str
    delay: float = 0.0

    def __post_init__(self) -> None:
        if self.delay < 0:
            raise ValueError(f"StageResult delay must be >= 0, got {self.delay}")


@dataclass(frozen=True)
class ProcessingResult:
    """What the executor returns to the queue."""

    requeue: bool
    delay: float = 0.0

    @classmethod
    def done(cls) -> ProcessingResult:
        return cls(requeue=False)

    @classmethod
    def requeue_after(cls, delay: float) -> ProcessingResult:
        return cls(requeue=True, delay=delay)


__all__ = [
    "utcnow",
    "FINISHED_STAGE",
    "StageName",
    "OperationType",
    "OperationState",
    "UpgradeState",
    "Operation",
    "GardenerConfig",
    "GCPConfig",
    "ClusterConfig",
    "cluster_config_from_dict",
    "KymaComponentConfig",
    "KymaConfig",
    "Cluster",
    "RuntimeUpgrade",
    "StageResult",
    "ProcessingResult",
]
