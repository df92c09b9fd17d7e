"""Deployment health gate.

Polls the deployment platform on a bounded schedule until the workload has
been healthy for a number of consecutive polls, or the attempt budget (or
explicit wall-clock bound) runs out.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable
from dataclasses import dataclass

from cdflow.common.clock import Clock, SystemClock
from cdflow.common.config import CDFlowSettings
from cdflow.common.constants import (
    DEFAULT_HEALTH_INTERVAL_SECONDS,
    DEFAULT_HEALTH_MAX_ATTEMPTS,
    DEFAULT_HEALTH_SUCCESS_THRESHOLD,
    HealthOutcome,
)
from cdflow.integrations.platform import DeploymentPlatform, WorkloadStatus
from cdflow.integrations.telemetry import MetricSample, TelemetrySink

logger = logging.getLogger(__name__)

HealthPredicate = Callable[[WorkloadStatus], bool]


# --- Data Classes ---


@dataclass(frozen=True)
class HealthCheckPolicy:
    """How to decide that a deployment is healthy. The wait is always finite."""

    selector: str
    interval_seconds: float = DEFAULT_HEALTH_INTERVAL_SECONDS
    max_attempts: int = DEFAULT_HEALTH_MAX_ATTEMPTS
    success_threshold: int = DEFAULT_HEALTH_SUCCESS_THRESHOLD
    timeout_seconds: float | None = None

    def __post_init__(self) -> None:
        if not math.isfinite(self.interval_seconds) or self.interval_seconds < 0:
            raise ValueError("interval_seconds must be finite and >= 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.timeout_seconds is not None and (
            not math.isfinite(self.timeout_seconds) or self.timeout_seconds <= 0
        ):
            raise ValueError("timeout_seconds must be finite and positive")

    @property
    def deadline_seconds(self) -> float:
        """Upper bound on the time spent polling."""
        budget = self.interval_seconds * self.max_attempts
        if self.timeout_seconds is None:
            return budget
        return min(budget, self.timeout_seconds)

    @classmethod
    def from_settings(cls, selector: str, settings: CDFlowSettings) -> HealthCheckPolicy:
        return cls(
            selector=selector,
            interval_seconds=settings.health_interval_seconds,
            max_attempts=settings.health_max_attempts,
            success_threshold=settings.health_success_threshold,
        )


@dataclass(frozen=True)
class HealthReport:
    """Outcome of one ``verify`` call."""

    outcome: HealthOutcome
    selector: str
    polls: int
    consecutive_healthy: int
    elapsed_seconds: float
    last_diagnostic: str = ""
    cancelled: bool = False
    deadline_exceeded: bool = False

    @property
    def healthy(self) -> bool:
        return self.outcome == HealthOutcome.HEALTHY

    def describe(self) -> str:
        text = (
            f"{self.selector}: {self.outcome} after {self.polls} poll(s) "
            f"in {self.elapsed_seconds:.1f}s"
        )
        if self.last_diagnostic:
            text += f"; last: {self.last_diagnostic}"
        if self.cancelled:
            text += " (cancelled)"
        if self.deadline_exceeded:
            text += " (deadline reached)"
        return text


# --- Health Gate ---


class HealthGate:
    """Bounded polling of platform health."""

    def __init__(
        self,
        platform: DeploymentPlatform,
        clock: Clock | None = None,
        predicate: HealthPredicate | None = None,
        sink: TelemetrySink | None = None,
    ) -> None:
        self._platform = platform
        self._clock = clock or SystemClock()
        self._predicate = predicate or (lambda status: status.is_healthy)
        self._sink = sink

    @property
    def platform(self) -> DeploymentPlatform:
        return self._platform

    def verify(
        self,
        policy: HealthCheckPolicy,
        deployment_ref: str | None = None,
        cancel: threading.Event | None = None,
        deadline: float | None = None,
    ) -> HealthReport:
        """Poll until ``success_threshold`` consecutive healthy polls or budget exhaustion.

        ``deadline`` is an absolute clock time, typically the owning stage's.
        No poll is taken after it; a report cut short by it has
        ``deadline_exceeded`` set.
        """
        selector = deployment_ref or policy.selector
        start = self._clock.now()
        consecutive = 0
        polls = 0
        diagnostic = ""

        while polls < policy.max_attempts:
            if deadline is not None and (
                self._clock.now() + (policy.interval_seconds if polls else 0.0) > deadline
            ):
                report = self._report(HealthOutcome.UNHEALTHY, selector, polls, consecutive,
                                      start, diagnostic, deadline_exceeded=True)
                logger.warning("Health gate stopped at deadline: %s", report.describe())
                return report
            if polls > 0 and self._clock.wait(policy.interval_seconds, cancel):
                return self._report(HealthOutcome.UNHEALTHY, selector, polls, consecutive,
                                    start, diagnostic, cancelled=True)
            if cancel is not None and cancel.is_set():
                return self._report(HealthOutcome.UNHEALTHY, selector, polls, consecutive,
                                    start, diagnostic, cancelled=True)
            if (
                policy.timeout_seconds is not None
                and self._clock.now() - start > policy.timeout_seconds
            ):
                logger.info("Health deadline of %.1fs elapsed for %s",
                            policy.timeout_seconds, selector)
                break

            polls += 1
            healthy, diagnostic = self._poll(selector)
            self._emit(selector, healthy)
            if healthy:
                consecutive += 1
                logger.debug("%s healthy (%d/%d)", selector, consecutive,
                             policy.success_threshold)
                if consecutive >= policy.success_threshold:
                    report = self._report(HealthOutcome.HEALTHY, selector, polls,
                                          consecutive, start, diagnostic)
                    logger.info("Health gate passed: %s", report.describe())
                    return report
            else:
                consecutive = 0

        report = self._report(HealthOutcome.UNHEALTHY, selector, polls, consecutive,
                              start, diagnostic)
        logger.warning("Health gate failed: %s", report.describe())
        return report

    def _poll(self, selector: str) -> tuple[bool, str]:
        """One observation; platform errors count as not healthy."""
        try:
            status = self._platform.status(selector)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Health poll for %s failed: %s", selector, exc)
            return False, f"platform unreachable: {exc}"
        return bool(self._predicate(status)), status.describe()

    def _emit(self, selector: str, healthy: bool) -> None:
        if self._sink is None:
            return
        try:
            self._sink.ingest([MetricSample(
                metric_name="health_poll",
                value=1.0 if healthy else 0.0,
                timestamp=self._clock.now(),
                dimensions={"selector": selector},
            )])
        except Exception as exc:
            logger.warning("Telemetry sink rejected health sample for %s: %s", selector, exc)

    def _report(
        self,
        outcome: HealthOutcome,
        selector: str,
        polls: int,
        consecutive: int,
        start: float,
        diagnostic: str,
        cancelled: bool = False,
        deadline_exceeded: bool = False,
    ) -> HealthReport:
        return HealthReport(
            outcome=outcome,
            selector=selector,
            polls=polls,
            consecutive_healthy=consecutive,
            elapsed_seconds=self._clock.now() - start,
            last_diagnostic=diagnostic,
            cancelled=cancelled,
            deadline_exceeded=deadline_exceeded,
        )


__all__ = ["HealthCheckPolicy", "HealthReport", "HealthGate", "HealthPredicate"]
