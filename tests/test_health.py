"""Tests for the deployment health gate."""

from __future__ import annotations

import threading

import pytest

from cdflow.common.clock import ManualClock
from cdflow.common.config import CDFlowSettings
from cdflow.common.constants import HealthOutcome
from cdflow.delivery.health import HealthCheckPolicy, HealthGate
from cdflow.integrations.platform import ScriptedPlatform, WorkloadStatus
from cdflow.integrations.telemetry import InMemorySink


# --- Helpers ---


def _policy(**overrides) -> HealthCheckPolicy:
    params = dict(selector="app=web", interval_seconds=5.0, max_attempts=10,
                  success_threshold=2)
    params.update(overrides)
    return HealthCheckPolicy(**params)


def _gate(script, clock: ManualClock | None = None, **kwargs) -> HealthGate:
    return HealthGate(ScriptedPlatform(script), clock=clock or ManualClock(), **kwargs)


# --- Policy Tests ---


@pytest.mark.parametrize("overrides", [
    {"interval_seconds": -1.0},
    {"interval_seconds": float("inf")},
    {"max_attempts": 0},
    {"success_threshold": 0},
    {"timeout_seconds": 0.0},
    {"timeout_seconds": float("nan")},
])
def test_policy_rejects_unbounded_or_invalid(overrides):
    with pytest.raises(ValueError):
        _policy(**overrides)


def test_policy_deadline_is_bounded():
    assert _policy().deadline_seconds == 50.0
    assert _policy(timeout_seconds=12.0).deadline_seconds == 12.0


def test_policy_from_settings():
    settings = CDFlowSettings(health_interval_seconds=2.5, health_max_attempts=7,
                              health_success_threshold=4)
    policy = HealthCheckPolicy.from_settings("app=api", settings)
    assert policy.selector == "app=api"
    assert policy.interval_seconds == 2.5
    assert policy.max_attempts == 7
    assert policy.success_threshold == 4


# --- Gate Tests ---


@pytest.mark.parametrize("unhealthy, threshold", [(0, 1), (0, 3), (2, 2), (4, 3)])
def test_healthy_after_k_unhealthy_polls(unhealthy, threshold):
    script = [False] * unhealthy + [True]
    report = _gate(script).verify(_policy(success_threshold=threshold))
    assert report.outcome == HealthOutcome.HEALTHY
    assert report.polls == unhealthy + threshold
    assert report.consecutive_healthy == threshold


def test_unhealthy_when_attempts_exhausted():
    report = _gate([False, False, False, True]).verify(
        _policy(max_attempts=4, success_threshold=2),
    )
    assert report.outcome == HealthOutcome.UNHEALTHY
    assert report.polls == 4
    assert not report.healthy


def test_poll_interval_respected():
    clock = ManualClock()
    _gate([False, False, True], clock).verify(_policy(success_threshold=1))
    assert clock.waits == [5.0, 5.0]


def test_platform_error_resets_consecutive_count():
    clock = ManualClock()
    script = [True, RuntimeError("connection refused"), True, True]
    report = _gate(script, clock).verify(_policy(success_threshold=2))
    assert report.outcome == HealthOutcome.HEALTHY
    assert report.polls == 4


def test_platform_error_reported_as_diagnostic():
    report = _gate([RuntimeError("connection refused")]).verify(_policy(max_attempts=2))
    assert report.outcome == HealthOutcome.UNHEALTHY
    assert "platform unreachable: connection refused" in report.last_diagnostic


def test_explicit_timeout_stops_polling():
    clock = ManualClock()
    report = _gate([False], clock).verify(
        _policy(interval_seconds=10.0, max_attempts=30, timeout_seconds=25.0),
    )
    assert report.outcome == HealthOutcome.UNHEALTHY
    assert report.polls == 3


def test_partially_ready_is_unhealthy():
    script = [WorkloadStatus(desired_replicas=3, ready_replicas=2)]
    report = _gate(script).verify(_policy(max_attempts=3, success_threshold=1))
    assert report.outcome == HealthOutcome.UNHEALTHY
    assert report.last_diagnostic == "ready 2/3"


def test_custom_predicate():
    script = [WorkloadStatus(desired_replicas=3, ready_replicas=2)]
    gate = _gate(script, predicate=lambda status: status.ready_replicas >= 2)
    report = gate.verify(_policy(success_threshold=1))
    assert report.outcome == HealthOutcome.HEALTHY


def test_deployment_ref_overrides_selector():
    report = _gate([True]).verify(_policy(success_threshold=1), deployment_ref="app=canary")
    assert report.selector == "app=canary"


def test_cancel_stops_gate():
    cancel = threading.Event()
    cancel.set()
    report = _gate([False]).verify(_policy(), cancel=cancel)
    assert report.outcome == HealthOutcome.UNHEALTHY
    assert report.cancelled
    assert report.polls == 0


def test_each_poll_emits_sample():
    sink = InMemorySink()
    _gate([False, True], sink=sink).verify(_policy(success_threshold=1))
    values = [s.value for s in sink.samples_named("health_poll")]
    assert values == [0.0, 1.0]


def test_deadline_bounds_polling():
    clock = ManualClock()
    platform = ScriptedPlatform([False])
    gate = HealthGate(platform, clock=clock)
    report = gate.verify(_policy(max_attempts=100), deadline=clock.now() + 12.0)
    assert report.outcome == HealthOutcome.UNHEALTHY
    assert report.deadline_exceeded
    assert platform.polls == 3
    assert clock.waits == [5.0, 5.0]
    assert "deadline reached" in report.describe()


def test_healthy_before_deadline_is_not_cut_short():
    clock = ManualClock()
    report = _gate([False, True], clock).verify(
        _policy(success_threshold=1), deadline=clock.now() + 5.0,
    )
    assert report.outcome == HealthOutcome.HEALTHY
    assert not report.deadline_exceeded


class _BrokenSink(InMemorySink):
    def ingest(self, records):
        raise RuntimeError("sink down")


def test_failing_sink_does_not_change_outcome():
    report = _gate([True], sink=_BrokenSink()).verify(_policy(success_threshold=1))
    assert report.outcome == HealthOutcome.HEALTHY
    assert report.polls == 1
