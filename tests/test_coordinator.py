"""Tests for the run coordinator: scheduling, propagation, cancellation and completion."""

from __future__ import annotations

import threading
import time

import pytest

from cdflow.common.clock import ManualClock
from cdflow.common.constants import RunState, StageKind, StageState
from cdflow.common.errors import DefinitionInvalidError, RunNotFoundError
from cdflow.common.schemas import RunContext
from cdflow.integrations.telemetry import InMemorySink
from cdflow.ledger.store import RunLedger
from cdflow.pipeline.actions import ActionResult, CallableAction
from cdflow.pipeline.coordinator import CoordinatorConfig, RunCompleted, RunCoordinator
from cdflow.pipeline.definition import PipelineDefinition, StageSpec
from cdflow.pipeline.executor import BackoffPolicy


# --- Helpers ---


def _ok(ctx):
    return None


def _fail(ctx):
    return ActionResult(exit_code=1, output="failed on purpose")


def _stage(name: str, fn=_ok, *deps: str, **kwargs) -> StageSpec:
    return StageSpec(name, CallableAction(fn, name=name), depends_on=deps, **kwargs)


def _coordinator(**kwargs) -> RunCoordinator:
    kwargs.setdefault("config", CoordinatorConfig(scheduling_quantum_seconds=0.01))
    return RunCoordinator(**kwargs)


@pytest.fixture
def coordinator():
    coord = _coordinator()
    yield coord
    coord.shutdown()


# --- Config Tests ---


def test_config_rejects_zero_parallelism():
    with pytest.raises(ValueError):
        CoordinatorConfig(max_parallel_stages=0)


# --- Happy Path ---


def test_linear_pipeline_succeeds(coordinator):
    definition = PipelineDefinition.chain("ci", [_stage("build"), _stage("test"),
                                                 _stage("scan")])
    entry = coordinator.run(definition)
    assert entry.outcome == RunState.SUCCEEDED
    assert [s.name for s in entry.stages] == ["build", "test", "scan"]
    assert all(s.state == StageState.SUCCEEDED for s in entry.stages)
    assert all(s.attempts == 1 for s in entry.stages)
    assert coordinator.ledger.get(entry.run_id) == entry


def test_stage_starts_after_dependencies_succeed(coordinator):
    events: list[str] = []
    lock = threading.Lock()

    def record(name):
        def action(ctx):
            with lock:
                events.append(f"start:{name}")
            time.sleep(0.01)
            with lock:
                events.append(f"end:{name}")
        return action

    definition = PipelineDefinition("diamond", (
        _stage("a", record("a")),
        _stage("b", record("b"), "a"),
        _stage("c", record("c"), "a"),
        _stage("d", record("d"), "b", "c"),
    ))
    entry = coordinator.run(definition)
    assert entry.outcome == RunState.SUCCEEDED
    assert events.index("end:a") < events.index("start:b")
    assert events.index("end:a") < events.index("start:c")
    assert events.index("end:b") < events.index("start:d")
    assert events.index("end:c") < events.index("start:d")


def test_independent_stages_run_in_parallel(coordinator):
    barrier = threading.Barrier(2, timeout=5)

    def meet(ctx):
        barrier.wait()

    definition = PipelineDefinition("fanout", (_stage("x", meet), _stage("y", meet)))
    entry = coordinator.run(definition)
    assert entry.outcome == RunState.SUCCEEDED


def test_per_start_config_limits_parallelism(coordinator):
    lock = threading.Lock()
    state = {"running": 0, "peak": 0}

    def busy(ctx):
        with lock:
            state["running"] += 1
            state["peak"] = max(state["peak"], state["running"])
        time.sleep(0.02)
        with lock:
            state["running"] -= 1

    definition = PipelineDefinition("serial", tuple(_stage(n, busy) for n in "abcd"))
    config = CoordinatorConfig(max_parallel_stages=1, scheduling_quantum_seconds=0.01)
    entry = coordinator.run(definition, config=config)
    assert entry.outcome == RunState.SUCCEEDED
    assert state["peak"] == 1


def test_context_reaches_stages(coordinator):
    seen = {}

    def capture(ctx):
        seen["revision"] = ctx.context.revision
        seen["run_id"] = ctx.run_id

    entry = coordinator.run(PipelineDefinition("ctx", (_stage("only", capture),)),
                            RunContext(revision="deadbeef"))
    assert seen == {"revision": "deadbeef", "run_id": entry.run_id}
    assert entry.context.revision == "deadbeef"


# --- Failure Propagation ---


def test_failure_skips_descendants(coordinator):
    definition = PipelineDefinition.chain(
        "ci", [_stage("build"), _stage("test", _fail), _stage("scan"), _stage("publish")],
    )
    entry = coordinator.run(definition)
    assert entry.outcome == RunState.FAILED
    assert entry.stage("build").state == StageState.SUCCEEDED
    assert entry.stage("test").state == StageState.FAILED
    assert entry.stage("scan").state == StageState.SKIPPED
    assert entry.stage("publish").state == StageState.SKIPPED
    assert entry.stage("scan").attempts == 0
    assert "upstream 'test'" in entry.stage("scan").output
    assert "upstream 'test'" in entry.stage("publish").output


def test_failure_does_not_block_independent_branch(coordinator):
    ran = threading.Event()

    def lint(ctx):
        ran.set()

    definition = PipelineDefinition("branches", (
        _stage("build"),
        _stage("test", _fail, "build"),
        _stage("package", _ok, "test"),
        _stage("lint", lint, "build"),
    ))
    entry = coordinator.run(definition)
    assert entry.outcome == RunState.FAILED
    assert ran.is_set()
    assert entry.stage("lint").state == StageState.SUCCEEDED
    assert entry.stage("package").state == StageState.SKIPPED


def test_exception_in_stage_fails_run(coordinator):
    def explode(ctx):
        raise RuntimeError("disk full")

    entry = coordinator.run(PipelineDefinition("boom", (_stage("build", explode),)))
    assert entry.outcome == RunState.FAILED
    assert "disk full" in entry.stage("build").output


def test_timeout_with_retry_then_skip():
    clock = ManualClock()
    coord = _coordinator(clock=clock)

    def hang(ctx):
        clock.advance(ctx.timeout_seconds + 1)

    definition = PipelineDefinition.chain("ci", [
        _stage("build"),
        _stage("test", hang, timeout_seconds=10, retries=1),
        _stage("scan", kind=StageKind.SECURITY),
        _stage("publish", kind=StageKind.PUBLISH),
    ])
    try:
        entry = coord.run(definition)
    finally:
        coord.shutdown()
    assert entry.outcome == RunState.FAILED
    assert entry.stage("test").state == StageState.TIMED_OUT
    assert entry.stage("test").attempts == 2
    assert entry.stage("scan").state == StageState.SKIPPED
    assert entry.stage("publish").state == StageState.SKIPPED
    assert clock.waits == [2.0]


def test_retry_backoff_uses_configured_policy():
    clock = ManualClock()
    config = CoordinatorConfig(scheduling_quantum_seconds=0.01,
                               backoff=BackoffPolicy(base_seconds=3.0, cap_seconds=5.0))
    coord = _coordinator(config=config, clock=clock)
    calls = {"n": 0}

    def flaky(ctx):
        calls["n"] += 1
        return calls["n"] >= 3

    try:
        entry = coord.run(PipelineDefinition("flaky", (_stage("test", flaky, retries=3),)))
    finally:
        coord.shutdown()
    assert entry.outcome == RunState.SUCCEEDED
    assert entry.stage("test").attempts == 3
    assert clock.waits == [3.0, 5.0]


# --- Validation ---


def test_invalid_definition_creates_no_run(coordinator):
    definition = PipelineDefinition("cyclic", (
        _stage("a", _ok, "b"),
        _stage("b", _ok, "a"),
    ))
    with pytest.raises(DefinitionInvalidError):
        coordinator.start(definition)
    assert len(coordinator.ledger) == 0
    assert coordinator.active_runs() == []


# --- Cancellation ---


def test_cancel_running_pipeline(coordinator):
    started = threading.Event()

    def block(ctx):
        started.set()
        ctx.cancel.wait(5)
        return ActionResult(exit_code=1, output="interrupted")

    definition = PipelineDefinition.chain(
        "deploy", [_stage("build", block), _stage("test"), _stage("publish")],
    )
    handle = coordinator.start(definition)
    assert started.wait(5)
    assert coordinator.cancel(handle)
    entry = coordinator.wait(handle, timeout=5)
    assert entry.outcome == RunState.CANCELLED
    assert all(s.state == StageState.SKIPPED for s in entry.stages)
    assert entry.stage("test").output == "skipped: cancelled"


def test_cancel_finished_run_returns_false(coordinator):
    handle = coordinator.start(PipelineDefinition("quick", (_stage("build"),)))
    coordinator.wait(handle, timeout=5)
    assert handle.done()
    assert not coordinator.cancel(handle)
    assert not coordinator.cancel("no-such-run")


# --- Completion ---


def test_listener_sees_recorded_entry(coordinator):
    seen: list[tuple[RunCompleted, bool]] = []
    coordinator.subscribe(lambda event: seen.append(
        (event, event.entry.run_id in coordinator.ledger),
    ))
    entry = coordinator.run(PipelineDefinition("ci", (_stage("build"),)))
    assert len(seen) == 1
    event, recorded_first = seen[0]
    assert event.entry == entry
    assert event.definition.name == "ci"
    assert recorded_first


def test_listener_error_goes_to_sink():
    sink = InMemorySink()
    coord = _coordinator(sink=sink)

    def broken(event):
        raise RuntimeError("listener exploded")

    coord.subscribe(broken)
    try:
        entry = coord.run(PipelineDefinition("ci", (_stage("build"),)))
    finally:
        coord.shutdown()
    assert entry.outcome == RunState.SUCCEEDED
    errors = [line for line in sink.lines if line.level == "ERROR"]
    assert len(errors) == 1
    assert "listener exploded" in errors[0].message
    assert coord.ledger.get(entry.run_id).outcome == RunState.SUCCEEDED


def test_telemetry_emitted_per_run_and_stage():
    sink = InMemorySink()
    coord = _coordinator(sink=sink)
    definition = PipelineDefinition.chain("ci", [_stage("build"), _stage("test", _fail)])
    try:
        entry = coord.run(definition)
    finally:
        coord.shutdown()
    runs = sink.samples_named("run_duration_seconds")
    assert len(runs) == 1
    assert runs[0].dimensions == {"pipeline": "ci", "outcome": "failed"}
    attempts = {s.dimensions["stage"]: s.value for s in sink.samples_named("stage_attempts")}
    assert attempts == {"build": 1.0, "test": 1.0}
    assert any(entry.run_id in line.message for line in sink.lines)


def test_shared_ledger_persists_runs(tmp_path):
    ledger = RunLedger(tmp_path / "ledger.jsonl")
    coord = _coordinator(ledger=ledger)
    try:
        entry = coord.run(PipelineDefinition("ci", (_stage("build"),)))
    finally:
        coord.shutdown()
    reloaded = RunLedger(tmp_path / "ledger.jsonl")
    assert reloaded.get(entry.run_id) == entry


def test_snapshot_of_finished_and_unknown_runs(coordinator):
    entry = coordinator.run(PipelineDefinition("ci", (_stage("build"),)))
    view = coordinator.snapshot(entry.run_id)
    assert view.state == RunState.SUCCEEDED
    assert not view.live
    with pytest.raises(RunNotFoundError):
        coordinator.snapshot("missing")
