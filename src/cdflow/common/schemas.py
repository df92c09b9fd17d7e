"""Pydantic v2 schemas for artifacts, run context and ledger snapshots."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator

from cdflow.common.constants import (
    DEFAULT_HEALTH_INTERVAL_SECONDS,
    DEFAULT_HEALTH_MAX_ATTEMPTS,
    DEFAULT_HEALTH_SUCCESS_THRESHOLD,
    DEFAULT_STAGE_TIMEOUT_SECONDS,
    TERMINAL_RUN_STATES,
    TERMINAL_STAGE_STATES,
    PipelineRole,
    RunState,
    StageKind,
    StageState,
)


class ArtifactReference(BaseModel):
    """Versioned build output produced by a publish stage."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    version: str = Field(min_length=1)
    location: str = ""

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


class RunContext(BaseModel):
    """Input context of a run."""

    model_config = ConfigDict(frozen=True)

    revision: str = ""
    artifact: ArtifactReference | None = None
    parent_run_id: str | None = None
    params: dict[str, str] = Field(default_factory=dict)


class StageSnapshot(BaseModel):
    """Read-only copy of a stage's final state."""

    model_config = ConfigDict(frozen=True)

    name: str
    kind: StageKind
    state: StageState
    attempts: int = Field(default=0, ge=0)
    started_at: float | None = None
    finished_at: float | None = None
    exit_code: int | None = None
    output: str = ""
    artifact: ArtifactReference | None = None
    outputs: dict[str, str] = Field(default_factory=dict)

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at


class LedgerEntry(BaseModel):
    """Immutable snapshot of a completed run."""

    model_config = ConfigDict(frozen=True)

    run_id: str = Field(min_length=1)
    pipeline: str
    pipeline_version: str
    role: PipelineRole = PipelineRole.STANDALONE
    context: RunContext = Field(default_factory=RunContext)
    outcome: RunState
    stages: tuple[StageSnapshot, ...] = ()
    started_at: float
    completed_at: float

    @model_validator(mode="after")
    def check_terminal(self) -> LedgerEntry:
        """Only terminal runs with terminal stages may be recorded."""
        if self.outcome not in TERMINAL_RUN_STATES:
            raise ValueError(f"Run outcome must be terminal, got {self.outcome}")
        open_stages = [s.name for s in self.stages if s.state not in TERMINAL_STAGE_STATES]
        if open_stages:
            raise ValueError(f"Stages not terminal: {open_stages}")
        return self

    @property
    def duration_seconds(self) -> float:
        return self.completed_at - self.started_at

    def stage(self, name: str) -> StageSnapshot:
        for snapshot in self.stages:
            if snapshot.name == name:
                return snapshot
        raise KeyError(name)

    def stages_of_kind(self, kind: StageKind) -> list[StageSnapshot]:
        return [s for s in self.stages if s.kind == kind]


# --- Pipeline file schema (CLI) ---


class PublishBlock(BaseModel):
    """Registry publish declared on a pipeline-file stage."""

    artifact: str
    version: str = "{revision}"
    payload: str = ""


class HealthBlock(BaseModel):
    """Health-gate settings declared on a deploy or verify stage."""

    selector: str = ""
    interval_seconds: float = Field(default=DEFAULT_HEALTH_INTERVAL_SECONDS, ge=0.0)
    max_attempts: int = Field(default=DEFAULT_HEALTH_MAX_ATTEMPTS, ge=1)
    success_threshold: int = Field(default=DEFAULT_HEALTH_SUCCESS_THRESHOLD, ge=1)
    timeout_seconds: float | None = Field(default=None, gt=0.0)


class DeployBlock(BaseModel):
    """Platform rollout of the run's artifact, optionally health-gated."""

    workload: str = Field(min_length=1)
    replicas: int = Field(default=1, ge=1)
    selector: str = ""
    env: dict[str, str] = Field(default_factory=dict)
    health: HealthBlock | None = None


class StageFileSpec(BaseModel):
    """One stage as written in a pipeline JSON file."""

    name: str = Field(min_length=1)
    kind: StageKind = StageKind.BUILD
    command: list[str] = Field(default_factory=list)
    depends_on: list[str] = Field(default_factory=list)
    timeout_seconds: float = Field(default=DEFAULT_STAGE_TIMEOUT_SECONDS, gt=0.0)
    retries: int = Field(default=0, ge=0)
    publish: PublishBlock | None = None
    deploy: DeployBlock | None = None
    verify: HealthBlock | None = None

    @model_validator(mode="after")
    def require_one_action(self) -> StageFileSpec:
        """A stage runs exactly one of command, publish, deploy or verify."""
        declared = [bool(self.command), self.publish is not None,
                    self.deploy is not None, self.verify is not None]
        if declared.count(True) != 1:
            raise ValueError(
                f"Stage '{self.name}' must declare exactly one of "
                "command, publish, deploy or verify"
            )
        if self.verify is not None and not self.verify.selector:
            raise ValueError(f"Stage '{self.name}': verify needs a selector")
        return self


class PipelineFileSpec(BaseModel):
    """A pipeline JSON file."""

    name: str = Field(min_length=1)
    version: str = "1"
    role: PipelineRole = PipelineRole.STANDALONE
    stages: list[StageFileSpec]


__all__ = [
    "ArtifactReference",
    "RunContext",
    "StageSnapshot",
    "LedgerEntry",
    "PublishBlock",
    "HealthBlock",
    "DeployBlock",
    "StageFileSpec",
    "PipelineFileSpec",
]
