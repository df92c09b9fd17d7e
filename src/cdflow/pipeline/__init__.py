"""Pipeline definitions, stage execution and run coordination."""

from __future__ import annotations

from cdflow.pipeline.actions import (
    Action,
    ActionContext,
    ActionResult,
    CallableAction,
    CommandAction,
    DeployAction,
    PublishAction,
    VerifyAction,
)
from cdflow.pipeline.coordinator import (
    CoordinatorConfig,
    RunCompleted,
    RunCoordinator,
    RunHandle,
)
from cdflow.pipeline.definition import DependencyGraph, PipelineDefinition, StageSpec
from cdflow.pipeline.executor import BackoffPolicy, StageExecutor, StageResult
from cdflow.pipeline.run import Run, Stage

__all__ = [
    "Action",
    "ActionContext",
    "ActionResult",
    "CallableAction",
    "CommandAction",
    "DeployAction",
    "PublishAction",
    "VerifyAction",
    "CoordinatorConfig",
    "RunCompleted",
    "RunCoordinator",
    "RunHandle",
    "DependencyGraph",
    "PipelineDefinition",
    "StageSpec",
    "BackoffPolicy",
    "StageExecutor",
    "StageResult",
    "Run",
    "Stage",
]
