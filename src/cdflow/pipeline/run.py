"""Run and Stage state owned by the run coordinator.

Only the coordinator's driver thread mutates these objects. The lock lets
status readers take consistent snapshots while a run is in flight.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field

from cdflow.common.constants import (
    TERMINAL_RUN_STATES,
    TERMINAL_STAGE_STATES,
    RunState,
    StageState,
)
from cdflow.common.schemas import ArtifactReference, LedgerEntry, RunContext, StageSnapshot
from cdflow.pipeline.definition import DependencyGraph, PipelineDefinition, StageSpec

# Legal stage transitions
_TRANSITIONS: dict[StageState, frozenset[StageState]] = {
    StageState.PENDING: frozenset({StageState.RUNNING, StageState.SKIPPED}),
    StageState.RUNNING: frozenset({
        StageState.SUCCEEDED, StageState.FAILED, StageState.TIMED_OUT, StageState.SKIPPED,
    }),
}


@dataclass
class Stage:
    """One execution instance of a StageSpec within a run."""

    spec: StageSpec
    state: StageState = StageState.PENDING
    started_at: float | None = None
    finished_at: float | None = None
    exit_code: int | None = None
    output: str = ""
    artifact: ArtifactReference | None = None
    outputs: dict[str, str] = field(default_factory=dict)
    attempts: int = 0

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STAGE_STATES

    def transition(self, new_state: StageState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise ValueError(f"Illegal stage transition {self.name}: {self.state} -> {new_state}")
        self.state = new_state

    def snapshot(self) -> StageSnapshot:
        return StageSnapshot(
            name=self.spec.name,
            kind=self.spec.kind,
            state=self.state,
            attempts=self.attempts,
            started_at=self.started_at,
            finished_at=self.finished_at,
            exit_code=self.exit_code,
            output=self.output,
            artifact=self.artifact,
            outputs=dict(self.outputs),
        )


@dataclass
class Run:
    """Instantiation of a pipeline definition."""

    run_id: str
    definition: PipelineDefinition
    graph: DependencyGraph
    context: RunContext
    created_at: float
    stages: dict[str, Stage] = field(default_factory=dict)
    state: RunState = RunState.PENDING
    started_at: float | None = None
    completed_at: float | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @classmethod
    def create(
        cls,
        run_id: str,
        definition: PipelineDefinition,
        graph: DependencyGraph,
        context: RunContext,
        now: float,
    ) -> Run:
        stages = {name: Stage(spec=definition.stage(name)) for name in graph.order}
        return cls(run_id=run_id, definition=definition, graph=graph,
                   context=context, created_at=now, stages=stages)

    @property
    def pipeline(self) -> str:
        return self.definition.name

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_RUN_STATES

    @property
    def lock(self) -> threading.Lock:
        return self._lock

    def stage_snapshots(self) -> tuple[StageSnapshot, ...]:
        with self._lock:
            return tuple(self.stages[name].snapshot() for name in self.graph.order)

    def to_ledger_entry(self) -> LedgerEntry:
        """Immutable ledger snapshot; only valid once the run is terminal."""
        if not self.is_terminal or self.completed_at is None:
            raise ValueError(f"Run {self.run_id} is not terminal ({self.state})")
        return LedgerEntry(
            run_id=self.run_id,
            pipeline=self.definition.name,
            pipeline_version=self.definition.version,
            role=self.definition.role,
            context=self.context,
            outcome=self.state,
            stages=self.stage_snapshots(),
            started_at=self.started_at if self.started_at is not None else self.created_at,
            completed_at=self.completed_at,
        )


__all__ = ["Stage", "Run"]
