"""Tests for the Stage contract and stage-map wiring."""

from __future__ import annotations

from datetime import timedelta

import pytest

from provisioner.core.errors import ConfigError
from provisioner.operations.models import FINISHED_STAGE, StageName, StageResult
from provisioner.operations.stage import CallableStage, build_stage_map


def _stage(name: str, next_stage: str = FINISHED_STAGE) -> CallableStage:
    return CallableStage(name, timedelta(minutes=5), lambda cluster, operation, logger: StageResult(next_stage))


class TestCallableStage:
    def test_delegates_to_function(self, cluster):
        """run() passes cluster, operation and logger through."""
        seen = []

        def connect(cluster, operation, logger):
            seen.append((cluster.id, operation, logger))
            return StageResult(FINISHED_STAGE)

        stage = CallableStage(StageName.CONNECT_RUNTIME_AGENT, timedelta(minutes=10), connect)
        result = stage.run(cluster, "op", "log")

        assert result == StageResult(FINISHED_STAGE)
        assert seen == [("c-1", "op", "log")]
        assert stage.name() == "ConnectRuntimeAgent"
        assert stage.time_limit() == timedelta(minutes=10)

    def test_repr(self):
        assert repr(_stage("A")) == "CallableStage('A')"


class TestBuildStageMap:
    def test_indexes_by_name(self):
        stages = build_stage_map([_stage("A", "B"), _stage("B")])
        assert list(stages) == ["A", "B"]
        assert stages["B"].name() == "B"

    def test_result_is_read_only(self):
        stages = build_stage_map([_stage("A")])
        with pytest.raises(TypeError):
            stages["B"] = _stage("B")  # type: ignore[index]

    def test_duplicate_names_rejected(self):
        with pytest.raises(ConfigError, match="already registered"):
            build_stage_map([_stage("A"), _stage("A")])

    def test_finished_is_reserved(self):
        with pytest.raises(ConfigError, match="reserved"):
            build_stage_map([_stage(FINISHED_STAGE)])


class TestStageResult:
    def test_negative_delay_rejected(self):
        with pytest.raises(ValueError):
            StageResult("A", delay=-1)

    def test_defaults_to_no_delay(self):
        assert StageResult("A").delay == 0.0
