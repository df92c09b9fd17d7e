"""Deployment target platform interface and a scripted simulator.

The platform accepts a desired workload specification and reports replica
health for a selector. ``ScriptedPlatform`` replays a fixed sequence of
status observations so health polling can be exercised deterministically.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkloadSpec:
    """Desired state of a deployed workload."""

    name: str
    image: str
    replicas: int = 1
    selector: str = ""
    env: dict[str, str] = field(default_factory=dict)

    @property
    def effective_selector(self) -> str:
        return self.selector or f"app={self.name}"


@dataclass(frozen=True)
class ApplyReceipt:
    accepted: bool
    reason: str = ""


@dataclass(frozen=True)
class WorkloadStatus:
    """Replica health reported for a selector."""

    desired_replicas: int
    ready_replicas: int
    last_error: str | None = None

    @property
    def is_healthy(self) -> bool:
        return (
            self.desired_replicas > 0
            and self.ready_replicas >= self.desired_replicas
            and not self.last_error
        )

    def describe(self) -> str:
        text = f"ready {self.ready_replicas}/{self.desired_replicas}"
        if self.last_error:
            text += f" ({self.last_error})"
        return text


class DeploymentPlatform(ABC):
    """Target platform that runs workloads."""

    @abstractmethod
    def apply(self, spec: WorkloadSpec) -> ApplyReceipt:
        """Submit a desired workload specification."""

    @abstractmethod
    def status(self, selector: str) -> WorkloadStatus:
        """Report replica health; may raise when the platform is unreachable."""


ScriptStep = WorkloadStatus | bool | Exception


class ScriptedPlatform(DeploymentPlatform):
    """Platform simulator replaying scripted status observations.

    Each ``status`` call consumes the next script step: a ``WorkloadStatus``
    is returned as-is, ``True``/``False`` become fully ready / not ready
    statuses for the applied replica count, and an exception instance is
    raised to simulate an unreachable platform. Once the script is exhausted
    the last step repeats.
    """

    def __init__(
        self,
        script: Iterable[ScriptStep] = (),
        reject_reason: str | None = None,
    ) -> None:
        self._script = list(script)
        self._reject_reason = reject_reason
        self._applied: list[WorkloadSpec] = []
        self._replicas: dict[str, int] = {}
        self._polls = 0
        self._lock = threading.Lock()

    def apply(self, spec: WorkloadSpec) -> ApplyReceipt:
        if self._reject_reason:
            logger.warning("Platform rejected %s: %s", spec.name, self._reject_reason)
            return ApplyReceipt(accepted=False, reason=self._reject_reason)
        with self._lock:
            self._applied.append(spec)
            self._replicas[spec.effective_selector] = spec.replicas
        logger.info("Applied workload %s (%s x%d)", spec.name, spec.image, spec.replicas)
        return ApplyReceipt(accepted=True)

    def status(self, selector: str) -> WorkloadStatus:
        with self._lock:
            desired = self._replicas.get(selector, 1)
            if not self._script:
                step: ScriptStep = True
            else:
                step = self._script[min(self._polls, len(self._script) - 1)]
            self._polls += 1
        if isinstance(step, Exception):
            raise step
        if isinstance(step, WorkloadStatus):
            return step
        return WorkloadStatus(
            desired_replicas=desired,
            ready_replicas=desired if step else 0,
        )

    @property
    def applied(self) -> list[WorkloadSpec]:
        with self._lock:
            return list(self._applied)

    @property
    def polls(self) -> int:
        with self._lock:
            return self._polls


__all__ = [
    "WorkloadSpec",
    "ApplyReceipt",
    "WorkloadStatus",
    "DeploymentPlatform",
    "ScriptedPlatform",
]
