"""Tests for the Pydantic data models: validation, immutability, defaults."""

from __future__ import annotations

import pytest
from pydantic import SecretStr, ValidationError

from longhaul.models.chunks import (
    Chunk,
    Manifest,
    manifest_blob_name,
    volume_blob_name,
)
from longhaul.models.config import CheckpointSettings, RunResult
from longhaul.models.stages import (
    VALID_TRANSITIONS,
    BuildMode,
    BuildStage,
    StageOutcome,
    StageResult,
    stage_sequence,
)


def _chunks(base: str, count: int) -> list[Chunk]:
    return [
        Chunk(sequence=n, blob_name=volume_blob_name(base, n), size=100, stored_size=40)
        for n in range(1, count + 1)
    ]


class TestBlobNaming:
    def test_volume_names_are_zero_padded(self):
        assert volume_blob_name("build-artifact-linux-x64", 1) == "build-artifact-linux-x64-vol001"
        assert volume_blob_name("a", 40) == "a-vol040"

    def test_manifest_name(self):
        assert manifest_blob_name("a") == "a-manifest"


class TestManifest:
    def test_from_chunks(self):
        manifest = Manifest.from_chunks(
            base_name="build-state",
            artifact_base="a",
            chunks=_chunks("a", 3),
            chunk_size=100,
            total_bytes=300,
        )
        assert manifest.volume_count == 3
        assert manifest.total_bytes == 300
        assert manifest.volumes == ["a-vol001", "a-vol002", "a-vol003"]
        assert manifest.stored_bytes == 120
        assert not manifest.encrypted
        assert manifest.chunk(2).blob_name == "a-vol002"
        assert manifest.chunk(4) is None

    def test_encrypted_if_any_chunk_is(self):
        chunks = _chunks("a", 2)
        chunks[1] = chunks[1].model_copy(update={"encrypted": True})
        manifest = Manifest.from_chunks(
            base_name="b", artifact_base="a", chunks=chunks, chunk_size=1
        )
        assert manifest.encrypted

    def test_count_mismatch_rejected(self):
        with pytest.raises(ValidationError):
            Manifest(base_name="b", artifact_base="a", volume_count=2, volumes=["a-vol001"])

    def test_misnamed_volume_rejected(self):
        with pytest.raises(ValidationError):
            Manifest(base_name="b", artifact_base="a", volume_count=1, volumes=["other-vol001"])

    def test_zero_volumes_rejected(self):
        with pytest.raises(ValidationError):
            Manifest(base_name="b", artifact_base="a", volume_count=0, volumes=[])

    def test_json_round_trip_drops_local_path(self, tmp_path):
        chunk = Chunk(sequence=1, blob_name="a-vol001", size=1, local_path=tmp_path / "x")
        manifest = Manifest.from_chunks(
            base_name="b", artifact_base="a", chunks=[chunk], chunk_size=1
        )
        loaded = Manifest.model_validate_json(manifest.model_dump_json())
        assert loaded.chunks[0].local_path is None
        assert loaded.volumes == manifest.volumes
        assert loaded.timestamp == manifest.timestamp
        assert "local_path" not in manifest.model_dump_json()

    def test_frozen(self):
        manifest = Manifest(base_name="b", artifact_base="a", volume_count=1, volumes=["a-vol001"])
        with pytest.raises(ValidationError):
            manifest.volume_count = 2


class TestStageModels:
    def test_stage_values(self):
        assert BuildStage.INIT == "init"
        assert BuildStage.BUILD_DIST == "build_dist"

    def test_package_is_terminal(self):
        assert VALID_TRANSITIONS[BuildStage.PACKAGE] == set()

    def test_sequences(self):
        assert BuildStage.BUILD_DIST not in stage_sequence(BuildMode.COMPONENT)
        assert stage_sequence(BuildMode.FULL)[-1] == BuildStage.PACKAGE

    def test_stage_result(self):
        assert StageResult(stage=BuildStage.BUILD, outcome=StageOutcome.SUCCESS).succeeded
        assert not StageResult(stage=BuildStage.BUILD, outcome=StageOutcome.TIMED_OUT).succeeded


class TestConfigModels:
    def test_secret_value(self):
        assert CheckpointSettings().secret_value is None
        assert CheckpointSettings(secret=SecretStr("")).secret_value is None
        assert CheckpointSettings(secret=SecretStr("pw")).secret_value == "pw"

    def test_settings_bounds(self):
        with pytest.raises(ValidationError):
            CheckpointSettings(chunk_size=0)
        with pytest.raises(ValidationError):
            CheckpointSettings(compression_level=23)

    def test_run_result_fatal(self):
        assert not RunResult(finished=False).fatal
        assert RunResult(finished=False, exit_code=1).fatal
