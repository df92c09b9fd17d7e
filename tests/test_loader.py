"""Tests for pipeline JSON files."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from cdflow.common.constants import PipelineRole, StageKind
from cdflow.integrations.registry import InMemoryArtifactRegistry
from cdflow.integrations.platform import ScriptedPlatform
from cdflow.pipeline.actions import CommandAction, DeployAction, PublishAction, VerifyAction
from cdflow.pipeline.loader import load_pipeline_file


def _write(tmp_path, data) -> str:
    path = tmp_path / "pipeline.json"
    path.write_text(json.dumps(data))
    return str(path)


def test_load_pipeline_file(tmp_path):
    path = _write(tmp_path, {
        "name": "ci",
        "version": "3",
        "role": "upstream",
        "stages": [
            {"name": "build", "command": ["make", "build"]},
            {"name": "test", "kind": "test", "command": ["make", "test"],
             "depends_on": ["build"], "retries": 2, "timeout_seconds": 60},
            {"name": "publish", "kind": "publish", "depends_on": ["test"],
             "publish": {"artifact": "web"}},
        ],
    })
    definition = load_pipeline_file(path, InMemoryArtifactRegistry())
    assert definition.name == "ci"
    assert definition.version == "3"
    assert definition.role is PipelineRole.UPSTREAM
    assert definition.stage("test").retries == 2
    assert definition.stage("test").kind is StageKind.TEST
    assert isinstance(definition.stage("build").action, CommandAction)
    assert isinstance(definition.stage("publish").action, PublishAction)
    assert definition.validate().order == ("build", "test", "publish")


def test_stage_needs_exactly_one_action(tmp_path):
    path = _write(tmp_path, {"name": "ci", "stages": [
        {"name": "both", "command": ["true"], "publish": {"artifact": "web"}},
    ]})
    with pytest.raises(ValidationError):
        load_pipeline_file(path)


def test_publish_requires_registry(tmp_path):
    path = _write(tmp_path, {"name": "ci", "stages": [
        {"name": "publish", "kind": "publish", "publish": {"artifact": "web"}},
    ]})
    with pytest.raises(ValueError, match="no registry"):
        load_pipeline_file(path)


_DELIVERY = {"name": "cd", "role": "downstream", "stages": [
    {"name": "deploy", "kind": "deploy",
     "deploy": {"workload": "web", "replicas": 3, "env": {"RELEASE": "{revision}"},
                "health": {"max_attempts": 5, "success_threshold": 1}}},
    {"name": "verify", "kind": "verify", "depends_on": ["deploy"],
     "verify": {"selector": "app=web", "interval_seconds": 0, "max_attempts": 4}},
]}


def test_deploy_and_verify_stages(tmp_path):
    definition = load_pipeline_file(_write(tmp_path, _DELIVERY), platform=ScriptedPlatform())
    assert isinstance(definition.stage("deploy").action, DeployAction)
    assert isinstance(definition.stage("verify").action, VerifyAction)
    assert definition.stage("verify").kind is StageKind.VERIFY
    assert definition.validate().order == ("deploy", "verify")


def test_deploy_requires_platform(tmp_path):
    with pytest.raises(ValueError, match="deployment platform"):
        load_pipeline_file(_write(tmp_path, _DELIVERY))
