"""Tests for the status query surface."""

from __future__ import annotations

import threading

import pytest

from cdflow.common.constants import RunState, StageState
from cdflow.common.errors import RunNotFoundError
from cdflow.ledger.status import RunStatusView, StatusService
from cdflow.pipeline.actions import CallableAction
from cdflow.pipeline.coordinator import CoordinatorConfig, RunCoordinator
from cdflow.pipeline.definition import PipelineDefinition, StageSpec


@pytest.fixture
def coordinator():
    coord = RunCoordinator(config=CoordinatorConfig(scheduling_quantum_seconds=0.01))
    yield coord
    coord.shutdown()


def _pipeline(name: str, fn=lambda ctx: None) -> PipelineDefinition:
    return PipelineDefinition.chain(name, [
        StageSpec("build", CallableAction(fn)),
        StageSpec("test", CallableAction(lambda ctx: None)),
    ])


def test_get_run_from_ledger(coordinator):
    entry = coordinator.run(_pipeline("ci"))
    view = StatusService(coordinator.ledger, coordinator).get_run(entry.run_id)
    assert isinstance(view, RunStatusView)
    assert view.state == RunState.SUCCEEDED
    assert not view.live
    assert [s.name for s in view.stages] == ["build", "test"]
    assert view.counts["succeeded"] == 2


def test_get_unknown_run(coordinator):
    service = StatusService(coordinator.ledger, coordinator)
    with pytest.raises(RunNotFoundError) as excinfo:
        service.get_run("nope")
    assert isinstance(excinfo.value, KeyError)
    assert str(excinfo.value) == "Run not found: nope"


def test_get_live_run(coordinator):
    started = threading.Event()
    release = threading.Event()

    def hold(ctx):
        started.set()
        release.wait(5)

    handle = coordinator.start(_pipeline("ci", hold))
    try:
        assert started.wait(5)
        view = StatusService(coordinator.ledger, coordinator).get_run(handle.run_id)
        assert view.live
        assert view.state == RunState.RUNNING
        assert view.stages[0].state == StageState.RUNNING
        assert view.stages[1].state == StageState.PENDING
    finally:
        release.set()
    coordinator.wait(handle, timeout=5)


def test_list_runs(coordinator):
    first = coordinator.run(_pipeline("ci"))
    coordinator.run(_pipeline("cd"))
    third = coordinator.run(_pipeline("ci"))
    service = StatusService(coordinator.ledger)
    assert {e.run_id for e in service.list_runs(pipeline="ci")} == {first.run_id, third.run_id}
    assert len(service.list_runs(limit=1)) == 1
    assert service.list_runs(pipeline="nightly") == []
