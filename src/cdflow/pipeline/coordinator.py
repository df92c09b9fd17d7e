"""Run coordinator: drives a pipeline run through its dependency graph.

Each run gets one driver thread, the only writer of the run's stage map.
Stages whose dependencies have all succeeded are handed to a per-run
worker pool; workers return ``StageResult``s that the driver applies.
Failed, timed-out or skipped stages propagate ``skipped`` to everything
downstream of them. When the run is terminal it is recorded in the ledger,
telemetry is emitted and a ``RunCompleted`` event goes to subscribers.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from cdflow.common.clock import Clock, SystemClock
from cdflow.common.config import CDFlowSettings
from cdflow.common.constants import (
    DEFAULT_MAX_CONCURRENT_RUNS,
    DEFAULT_MAX_PARALLEL_STAGES,
    DEFAULT_SCHEDULING_QUANTUM_SECONDS,
    RunState,
    StageState,
)
from cdflow.common.schemas import LedgerEntry, RunContext
from cdflow.integrations.telemetry import LogLine, MetricSample, TelemetrySink
from cdflow.ledger.status import RunStatusView, StatusService
from cdflow.ledger.store import RunLedger
from cdflow.pipeline.definition import PipelineDefinition
from cdflow.pipeline.executor import BackoffPolicy, StageExecutor, StageResult
from cdflow.pipeline.run import Run

logger = logging.getLogger(__name__)

_BLOCKING_STATES = frozenset({StageState.FAILED, StageState.TIMED_OUT, StageState.SKIPPED})


# --- Data Classes ---


@dataclass(frozen=True)
class CoordinatorConfig:
    """Explicit run configuration handed to the coordinator."""

    max_parallel_stages: int = DEFAULT_MAX_PARALLEL_STAGES
    max_concurrent_runs: int = DEFAULT_MAX_CONCURRENT_RUNS
    scheduling_quantum_seconds: float = DEFAULT_SCHEDULING_QUANTUM_SECONDS
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)

    def __post_init__(self) -> None:
        if self.max_parallel_stages < 1 or self.max_concurrent_runs < 1:
            raise ValueError("parallelism limits must be >= 1")
        if self.scheduling_quantum_seconds <= 0:
            raise ValueError("scheduling_quantum_seconds must be positive")

    @classmethod
    def from_settings(cls, settings: CDFlowSettings) -> CoordinatorConfig:
        return cls(
            max_parallel_stages=settings.max_parallel_stages,
            max_concurrent_runs=settings.max_concurrent_runs,
            scheduling_quantum_seconds=settings.scheduling_quantum_seconds,
            backoff=BackoffPolicy.from_settings(settings),
        )


@dataclass(frozen=True)
class RunHandle:
    """Reference to a started run."""

    run_id: str
    pipeline: str
    future: Future[LedgerEntry] = field(repr=False, compare=False)

    def done(self) -> bool:
        return self.future.done()


@dataclass(frozen=True)
class RunCompleted:
    """Event published once a run's outcome is recorded."""

    entry: LedgerEntry
    definition: PipelineDefinition


RunListener = Callable[[RunCompleted], Any]


# --- Run Coordinator ---


class RunCoordinator:
    """Starts, drives, cancels and awaits pipeline runs."""

    def __init__(
        self,
        config: CoordinatorConfig | None = None,
        ledger: RunLedger | None = None,
        clock: Clock | None = None,
        sink: TelemetrySink | None = None,
    ) -> None:
        self._config = config or CoordinatorConfig()
        self._ledger = ledger if ledger is not None else RunLedger()
        self._clock = clock or SystemClock()
        self._sink = sink
        self._executor = self._make_executor(self._config)
        self._drivers = ThreadPoolExecutor(
            max_workers=self._config.max_concurrent_runs,
            thread_name_prefix="cdflow-run",
        )
        self._listeners: list[RunListener] = []
        self._runs: dict[str, Run] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> CoordinatorConfig:
        return self._config

    @property
    def ledger(self) -> RunLedger:
        return self._ledger

    @property
    def clock(self) -> Clock:
        return self._clock

    def subscribe(self, listener: RunListener) -> None:
        """Register a RunCompleted listener (e.g. the trigger bridge)."""
        self._listeners.append(listener)

    # --- public API ---

    def start(
        self,
        definition: PipelineDefinition,
        context: RunContext | None = None,
        config: CoordinatorConfig | None = None,
    ) -> RunHandle:
        """Validate ``definition`` and start a run; raises DefinitionInvalidError."""
        graph = definition.validate()
        run = Run.create(
            run_id=uuid.uuid4().hex,
            definition=definition,
            graph=graph,
            context=context or RunContext(),
            now=self._clock.now(),
        )
        run_config = config or self._config
        executor = self._executor if config is None else self._make_executor(config)
        with self._lock:
            self._runs[run.run_id] = run
        logger.info("Starting run %s of %s v%s (%d stages)", run.run_id,
                    definition.name, definition.version, len(graph.order))
        future = self._drivers.submit(self._drive_and_finish, run, run_config, executor)
        return RunHandle(run_id=run.run_id, pipeline=definition.name, future=future)

    def wait(self, handle: RunHandle, timeout: float | None = None) -> LedgerEntry:
        """Block until the run is terminal and return its ledger entry."""
        return handle.future.result(timeout=timeout)

    def run(
        self,
        definition: PipelineDefinition,
        context: RunContext | None = None,
        config: CoordinatorConfig | None = None,
    ) -> LedgerEntry:
        return self.wait(self.start(definition, context, config))

    def cancel(self, handle: RunHandle | str) -> bool:
        """Request cancellation. Returns False if the run is no longer active."""
        run_id = handle if isinstance(handle, str) else handle.run_id
        with self._lock:
            run = self._runs.get(run_id)
        if run is None or run.is_terminal:
            return False
        logger.info("Cancelling run %s", run_id)
        run.cancel_event.set()
        return True

    def active_run(self, run_id: str) -> Run | None:
        """In-flight run, for read-only status views."""
        with self._lock:
            return self._runs.get(run_id)

    def active_runs(self) -> list[Run]:
        with self._lock:
            return list(self._runs.values())

    def snapshot(self, run_id: str) -> RunStatusView:
        """Status of a finished or in-flight run; raises RunNotFoundError."""
        return StatusService(self._ledger, self).get_run(run_id)

    def shutdown(self, wait: bool = True) -> None:
        self._drivers.shutdown(wait=wait)

    # --- driver ---

    def _make_executor(self, config: CoordinatorConfig) -> StageExecutor:
        return StageExecutor(
            clock=self._clock,
            backoff=config.backoff,
            quantum_seconds=config.scheduling_quantum_seconds,
        )

    def _drive_and_finish(
        self,
        run: Run,
        config: CoordinatorConfig,
        executor: StageExecutor,
    ) -> LedgerEntry:
        try:
            outcome = self._drive(run, config, executor)
        except Exception as exc:
            logger.exception("Run %s aborted by internal error", run.run_id)
            self._close_open_stages(run, f"internal error: {exc}")
            outcome = RunState.FAILED
        try:
            return self._finish(run, outcome)
        finally:
            with self._lock:
                self._runs.pop(run.run_id, None)

    def _drive(self, run: Run, config: CoordinatorConfig, executor: StageExecutor) -> RunState:
        with run.lock:
            run.state = RunState.RUNNING
            run.started_at = self._clock.now()

        in_flight: dict[Future[StageResult], str] = {}
        with ThreadPoolExecutor(
            max_workers=config.max_parallel_stages,
            thread_name_prefix=f"cdflow-{run.pipeline}",
        ) as workers:
            while True:
                cancelled = run.cancel_event.is_set()
                if cancelled:
                    self._skip_pending(run, run.graph.order, "cancelled")
                else:
                    capacity = config.max_parallel_stages - len(in_flight)
                    for name in self._runnable(run)[:max(capacity, 0)]:
                        self._mark_running(run, name)
                        future = workers.submit(
                            executor.execute, run.stages[name].spec, run.context,
                            run.run_id, run.cancel_event,
                        )
                        in_flight[future] = name
                if not in_flight:
                    break
                done, _ = wait(in_flight, timeout=config.scheduling_quantum_seconds,
                               return_when=FIRST_COMPLETED)
                for future in done:
                    name = in_flight.pop(future)
                    self._apply(run, name, self._result_of(future, name))

        if run.cancel_event.is_set():
            return RunState.CANCELLED
        if all(s.state == StageState.SUCCEEDED for s in run.stages.values()):
            return RunState.SUCCEEDED
        return RunState.FAILED

    def _runnable(self, run: Run) -> list[str]:
        """Pending stages whose dependencies have all succeeded, in topological order."""
        ready = []
        for name in run.graph.order:
            stage = run.stages[name]
            if stage.state != StageState.PENDING:
                continue
            deps = run.graph.upstream[name]
            if all(run.stages[d].state == StageState.SUCCEEDED for d in deps):
                ready.append(name)
        return ready

    def _skip_pending(self, run: Run, names: Iterable[str], reason: str) -> None:
        for name in names:
            stage = run.stages[name]
            if stage.state != StageState.PENDING:
                continue
            with run.lock:
                stage.transition(StageState.SKIPPED)
                stage.finished_at = self._clock.now()
                stage.output = f"skipped: {reason}"
            logger.info("[%s/%s] skipped: %s", run.pipeline, name, reason)

    def _mark_running(self, run: Run, name: str) -> None:
        stage = run.stages[name]
        with run.lock:
            stage.transition(StageState.RUNNING)
            stage.started_at = self._clock.now()
        logger.info("[%s/%s] running (%s)", run.pipeline, name, stage.spec.action.describe())

    def _result_of(self, future: Future[StageResult], name: str) -> StageResult:
        try:
            return future.result()
        except Exception as exc:
            logger.exception("Stage %s worker crashed", name)
            now = self._clock.now()
            return StageResult(stage_name=name, state=StageState.FAILED, attempts=1,
                               started_at=now, finished_at=now, exit_code=None,
                               output=f"executor error: {exc}")

    def _apply(self, run: Run, name: str, result: StageResult) -> None:
        stage = run.stages[name]
        with run.lock:
            stage.transition(result.state)
            stage.finished_at = result.finished_at
            stage.exit_code = result.exit_code
            stage.output = result.output
            stage.artifact = result.artifact
            stage.outputs = dict(result.outputs)
            stage.attempts = result.attempts
        logger.info("[%s/%s] %s after %d attempt(s)", run.pipeline, name,
                    result.state, result.attempts)
        if result.state in _BLOCKING_STATES:
            blocked = run.graph.descendants(name)
            reason = (
                "cancelled" if run.cancel_event.is_set()
                else f"upstream '{name}' {result.state}"
            )
            self._skip_pending(run, [n for n in run.graph.order if n in blocked], reason)

    def _close_open_stages(self, run: Run, reason: str) -> None:
        now = self._clock.now()
        with run.lock:
            for stage in run.stages.values():
                if stage.is_terminal:
                    continue
                stage.state = StageState.SKIPPED
                stage.finished_at = now
                stage.output = f"skipped: {reason}"

    # --- completion ---

    def _finish(self, run: Run, outcome: RunState) -> LedgerEntry:
        with run.lock:
            run.state = outcome
            run.completed_at = self._clock.now()
        entry = run.to_ledger_entry()
        logger.info("Run %s of %s finished: %s in %.2fs", run.run_id, run.pipeline,
                    outcome, entry.duration_seconds)
        self._ledger.record(entry)
        self._emit(entry)
        event = RunCompleted(entry=entry, definition=run.definition)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:
                logger.error("RunCompleted listener failed for run %s: %s",
                             run.run_id, exc, exc_info=True)
                self._ingest([LogLine(
                    message=f"run-completed listener failed: {exc}",
                    level="ERROR",
                    timestamp=self._clock.now(),
                    attributes={"run_id": run.run_id, "error": type(exc).__name__},
                )])
        return entry

    def _emit(self, entry: LedgerEntry) -> None:
        if self._sink is None:
            return
        dims = {"pipeline": entry.pipeline, "outcome": entry.outcome.value}
        records: list[MetricSample | LogLine] = [
            MetricSample("run_duration_seconds", entry.duration_seconds,
                         entry.completed_at, dims, "Seconds"),
        ]
        for stage in entry.stages:
            stage_dims = {"pipeline": entry.pipeline, "stage": stage.name,
                          "state": stage.state.value}
            records.append(MetricSample("stage_duration_seconds", stage.duration_seconds,
                                        entry.completed_at, stage_dims, "Seconds"))
            records.append(MetricSample("stage_attempts", float(stage.attempts),
                                        entry.completed_at, stage_dims, "Count"))
        records.append(LogLine(
            message=f"run {entry.run_id} of {entry.pipeline} {entry.outcome}",
            level="INFO" if entry.outcome == RunState.SUCCEEDED else "WARNING",
            timestamp=entry.completed_at,
            attributes={"run_id": entry.run_id, "pipeline": entry.pipeline},
        ))
        self._ingest(records)

    def _ingest(self, records: list[MetricSample | LogLine]) -> None:
        if self._sink is None:
            return
        try:
            self._sink.ingest(records)
        except Exception as exc:
            logger.warning("Telemetry sink rejected %d record(s): %s", len(records), exc)


__all__ = [
    "CoordinatorConfig",
    "RunHandle",
    "RunCompleted",
    "RunListener",
    "RunCoordinator",
]
