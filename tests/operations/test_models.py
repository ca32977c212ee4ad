"""Tests for the operation data model."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from provisioner.operations.models import (
    GardenerConfig,
    GCPConfig,
    KymaComponentConfig,
    KymaConfig,
    Operation,
    OperationState,
    OperationType,
    ProcessingResult,
    RuntimeUpgrade,
    StageName,
    UpgradeState,
    cluster_config_from_dict,
)

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


class TestOperation:
    def test_create_defaults(self):
        op = Operation.create(OperationType.PROVISION, "c-1", StageName.START_PROVISIONING)
        assert op.state is OperationState.IN_PROGRESS
        assert op.stage == "StartingProvisioning"
        assert op.message == "Operation started"
        assert op.last_transition is None
        assert op.end_timestamp is None
        assert op.id
        assert op.start_timestamp.tzinfo is not None

    def test_create_generates_unique_ids(self):
        a = Operation.create(OperationType.PROVISION, "c-1", "A")
        b = Operation.create(OperationType.PROVISION, "c-1", "A")
        assert a.id != b.id

    def test_transition_started_at_prefers_last_transition(self):
        op = Operation.create(OperationType.PROVISION, "c-1", "A", start_timestamp=T0)
        assert op.transition_started_at == T0
        op.last_transition = T0 + timedelta(minutes=3)
        assert op.transition_started_at == T0 + timedelta(minutes=3)

    @pytest.mark.parametrize(
        ("state", "terminal"),
        [
            (OperationState.IN_PROGRESS, False),
            (OperationState.SUCCEEDED, True),
            (OperationState.FAILED, True),
        ],
    )
    def test_terminal_states(self, state, terminal):
        op = Operation.create(OperationType.DEPROVISION, "c-1", "A")
        op.state = state
        assert op.is_terminal is terminal
        assert state.is_terminal is terminal

    def test_to_dict(self):
        op = Operation.create(OperationType.UPGRADE, "c-1", "A", operation_id="op-9", start_timestamp=T0)
        data = op.to_dict()
        assert data["id"] == "op-9"
        assert data["type"] == "Upgrade"
        assert data["state"] == "InProgress"
        assert data["start_timestamp"] == T0.isoformat()
        assert data["last_transition"] is None


class TestClusterConfig:
    def test_gardener_config_roundtrip(self):
        config = GardenerConfig(
            name="shoot",
            project_name="proj",
            kubernetes_version="1.27",
            region="eu",
            provider="gcp",
            machine_type="n1-standard-4",
            provider_specific={"zones": ["eu-a"]},
        )
        assert cluster_config_from_dict(config.to_dict()) == config

    def test_gcp_config_roundtrip(self):
        config = GCPConfig(
            name="gke",
            project_name="proj",
            kubernetes_version="1.27",
            number_of_nodes=3,
            boot_disk_size_gb=30,
            machine_type="n1-standard-4",
            region="europe-west3",
        )
        assert cluster_config_from_dict(config.to_dict()) == config

    def test_unknown_provider_type(self):
        with pytest.raises(ValueError, match="unknown cluster provider type"):
            cluster_config_from_dict({"provider_type": "azure"})


class TestKymaConfig:
    def test_from_dict(self):
        config = KymaConfig.from_dict(
            {
                "release_version": "2.0.0",
                "components": [{"component": "istio", "namespace": "istio-system"}],
            }
        )
        assert config.components == [KymaComponentConfig(component="istio", namespace="istio-system")]
        assert config.global_configuration == {}
        assert KymaConfig.from_dict(config.to_dict()) == config


class TestRuntimeUpgrade:
    def test_to_dict_reports_releases(self):
        upgrade = RuntimeUpgrade(
            id="ru-1",
            operation_id="op-1",
            state=UpgradeState.ROLLED_BACK,
            pre_upgrade_kyma_config=KymaConfig(release_version="1.9"),
            post_upgrade_kyma_config=KymaConfig(release_version="2.0"),
        )
        assert upgrade.to_dict() == {
            "id": "ru-1",
            "operation_id": "op-1",
            "state": "RolledBack",
            "pre_upgrade_release": "1.9",
            "post_upgrade_release": "2.0",
        }


class TestProcessingResult:
    def test_done(self):
        assert ProcessingResult.done() == ProcessingResult(requeue=False, delay=0.0)

    def test_requeue_after(self):
        result = ProcessingResult.requeue_after(20)
        assert result.requeue is True
        assert result.delay == 20
