"""Load pipeline definitions from JSON files."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from cdflow.common.clock import Clock
from cdflow.common.schemas import HealthBlock, PipelineFileSpec, StageFileSpec
from cdflow.delivery.health import HealthCheckPolicy, HealthGate
from cdflow.integrations.platform import DeploymentPlatform
from cdflow.integrations.registry import ArtifactRegistry
from cdflow.integrations.telemetry import TelemetrySink
from cdflow.pipeline.actions import (
    Action,
    CommandAction,
    DeployAction,
    PublishAction,
    VerifyAction,
)
from cdflow.pipeline.definition import PipelineDefinition, StageSpec

logger = logging.getLogger(__name__)


def _policy(block: HealthBlock, selector: str) -> HealthCheckPolicy:
    return HealthCheckPolicy(
        selector=block.selector or selector,
        interval_seconds=block.interval_seconds,
        max_attempts=block.max_attempts,
        success_threshold=block.success_threshold,
        timeout_seconds=block.timeout_seconds,
    )


def _action(
    stage: StageFileSpec,
    registry: ArtifactRegistry | None,
    gate: HealthGate | None,
    cwd: str | None,
) -> Action:
    if stage.publish is not None:
        if registry is None:
            raise ValueError(f"Stage '{stage.name}' publishes but no registry was given")
        return PublishAction(
            registry,
            artifact=stage.publish.artifact,
            version=stage.publish.version,
            payload=stage.publish.payload,
        )
    if stage.deploy is None and stage.verify is None:
        return CommandAction(stage.command, cwd=cwd)
    if gate is None:
        raise ValueError(f"Stage '{stage.name}' needs a deployment platform")
    if stage.deploy is not None:
        block = stage.deploy
        selector = block.selector or f"app={block.workload}"
        health = block.health
        return DeployAction(
            gate.platform,
            block.workload,
            replicas=block.replicas,
            selector=block.selector,
            env=block.env,
            gate=gate if health is not None else None,
            policy=_policy(health, selector) if health is not None else None,
        )
    verify = stage.verify
    return VerifyAction(gate, _policy(verify, verify.selector))


def definition_from_spec(
    spec: PipelineFileSpec,
    registry: ArtifactRegistry | None = None,
    cwd: str | None = None,
    platform: DeploymentPlatform | None = None,
    clock: Clock | None = None,
    sink: TelemetrySink | None = None,
) -> PipelineDefinition:
    """Build a PipelineDefinition from a validated pipeline file.

    Deploy and verify stages share one HealthGate on ``platform``.
    """
    gate = HealthGate(platform, clock=clock, sink=sink) if platform is not None else None
    stages = [
        StageSpec(
            name=stage.name,
            action=_action(stage, registry, gate, cwd),
            kind=stage.kind,
            depends_on=tuple(stage.depends_on),
            timeout_seconds=stage.timeout_seconds,
            retries=stage.retries,
        )
        for stage in spec.stages
    ]
    return PipelineDefinition(name=spec.name, stages=tuple(stages),
                              version=spec.version, role=spec.role)


def load_pipeline_file(
    path: str | Path,
    registry: ArtifactRegistry | None = None,
    platform: DeploymentPlatform | None = None,
    clock: Clock | None = None,
    sink: TelemetrySink | None = None,
) -> PipelineDefinition:
    """Read and validate a pipeline JSON file. Commands run from the file's directory."""
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    spec = PipelineFileSpec.model_validate(data)
    logger.debug("Loaded pipeline %s v%s from %s", spec.name, spec.version, path)
    return definition_from_spec(spec, registry, cwd=str(path.resolve().parent),
                                platform=platform, clock=clock, sink=sink)


__all__ = ["definition_from_spec", "load_pipeline_file"]
