#!/usr/bin/env python3
"""
cdflow Demo Script.

This script walks through a full delivery using in-memory collaborators:
1. A CI pipeline (build -> test -> scan -> publish) publishing to a registry.
2. The trigger bridge starting the CD pipeline (deploy -> verify).
3. The health gate polling a simulated platform until the rollout is healthy.

Usage:
    python demo.py
"""

import os
import sys
import time

# Ensure src is in python path
sys.path.append(os.path.join(os.getcwd(), "src"))

from cdflow.common.constants import PipelineRole, StageKind
from cdflow.common.schemas import RunContext
from cdflow.delivery.health import HealthCheckPolicy, HealthGate
from cdflow.delivery.trigger import TriggerBridge, TriggerConfig
from cdflow.integrations.platform import ScriptedPlatform
from cdflow.integrations.registry import InMemoryArtifactRegistry
from cdflow.integrations.telemetry import InMemorySink
from cdflow.ledger.status import StatusService
from cdflow.pipeline.actions import CallableAction, DeployAction, PublishAction, VerifyAction
from cdflow.pipeline.coordinator import RunCoordinator
from cdflow.pipeline.definition import PipelineDefinition, StageSpec


def _step(label):
    def action(ctx):
        time.sleep(0.05)
        print(f"    [{ctx.stage}] {label} (revision {ctx.context.revision})")
    return CallableAction(action, name=label)


def run_demo():
    print("========================================")
    print("   cdflow Delivery Demo")
    print("========================================")

    # 1. Collaborators
    print("\n[1] Initializing registry, platform and telemetry sink...")
    registry = InMemoryArtifactRegistry()
    # Rollout: 3 polls not ready, then ready
    platform = ScriptedPlatform([False, False, False, True])
    sink = InMemorySink()
    coordinator = RunCoordinator(sink=sink)
    gate = HealthGate(platform, sink=sink)

    # 2. Pipelines
    print("\n[2] Defining CI and CD pipelines...")
    ci = PipelineDefinition.chain("ci", [
        StageSpec("build", _step("compile"), kind=StageKind.BUILD),
        StageSpec("test", _step("unit tests"), kind=StageKind.TEST, retries=1),
        StageSpec("scan", _step("dependency audit"), kind=StageKind.SECURITY),
        StageSpec("publish", PublishAction(registry, "web"), kind=StageKind.PUBLISH),
    ], role=PipelineRole.UPSTREAM)
    policy = HealthCheckPolicy(selector="app=web", interval_seconds=0.1,
                               max_attempts=10, success_threshold=2)
    cd = PipelineDefinition.chain("cd", [
        StageSpec("deploy", DeployAction(platform, "web", replicas=3, selector="app=web"),
                  kind=StageKind.DEPLOY),
        StageSpec("verify", VerifyAction(gate, policy), kind=StageKind.VERIFY),
    ], role=PipelineRole.DOWNSTREAM)
    bridge = TriggerBridge(coordinator, TriggerConfig(routes={"ci": cd})).attach()

    # 3. Run CI
    print("\n[3] Running CI...")
    ci_entry = coordinator.run(ci, RunContext(revision="1.4.2"))
    print(f"    -> CI {ci_entry.run_id}: {ci_entry.outcome}")
    print(f"    -> Artifact: {ci_entry.stage('publish').artifact}")

    # 4. Await triggered CD
    print("\n[4] Awaiting triggered CD run...")
    for triggered in bridge.triggered:
        cd_entry = coordinator.wait(triggered.handle)
        print(f"    -> CD {cd_entry.run_id}: {cd_entry.outcome}")
        for stage in cd_entry.stages:
            print(f"       {stage.name}: {stage.state} - {stage.output}")

    # 5. Status
    print("\n[5] Ledger status...")
    status = StatusService(coordinator.ledger, coordinator)
    for entry in status.list_runs():
        view = status.get_run(entry.run_id)
        print(f"    {view.pipeline:<4} {view.run_id} {view.state} stages={view.counts}")
    print(f"    Telemetry samples: {len(sink.samples)}, log lines: {len(sink.lines)}")

    coordinator.shutdown()
    print("\n========================================")
    print("Demo complete.")


if __name__ == "__main__":
    run_demo()
