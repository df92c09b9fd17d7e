"""Stage actions: the units of work a stage runs.

Actions honour the deadline and cancellation flag carried in their
``ActionContext``. A command action kills its process on timeout or
cancellation; in-process actions are expected to return promptly.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from cdflow.common.clock import Clock
from cdflow.common.constants import StageKind
from cdflow.common.errors import StageTimeoutError
from cdflow.common.schemas import ArtifactReference, RunContext
from cdflow.integrations.platform import DeploymentPlatform, WorkloadSpec
from cdflow.integrations.registry import ArtifactRegistry

if TYPE_CHECKING:
    from cdflow.delivery.health import HealthCheckPolicy, HealthGate, HealthReport

logger = logging.getLogger(__name__)


# --- Data Classes ---


@dataclass(frozen=True)
class ActionContext:
    """Everything an action may read while it runs."""

    run_id: str
    stage: str
    kind: StageKind
    attempt: int
    context: RunContext
    timeout_seconds: float
    deadline: float
    clock: Clock
    cancel: threading.Event = field(default_factory=threading.Event)
    quantum_seconds: float = 0.05

    def remaining(self) -> float:
        return self.deadline - self.clock.now()

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()

    def render(self, template: str) -> str:
        """Substitute ``{revision}``, ``{artifact}``, ``{run_id}``, ``{stage}`` and params."""
        values: dict[str, str] = dict(self.context.params)
        values.update(
            revision=self.context.revision,
            artifact=str(self.context.artifact) if self.context.artifact else "",
            run_id=self.run_id,
            stage=self.stage,
        )
        return template.format_map(_KeepMissing(values))


@dataclass(frozen=True)
class ActionResult:
    """What an action reports back: exit signal, diagnostics and outputs."""

    exit_code: int | None = 0
    output: str = ""
    artifact: ArtifactReference | None = None
    outputs: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class _KeepMissing(dict[str, str]):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


# --- Actions ---


class Action(ABC):
    """A stage's command/action descriptor.

    Actions that kill their own work at the deadline set ``handles_deadline``;
    the executor runs all others on a watched worker thread.
    """

    handles_deadline: bool = False

    @abstractmethod
    def run(self, ctx: ActionContext) -> ActionResult:
        """Run once; raise StageTimeoutError when the deadline is exceeded."""

    def describe(self) -> str:
        return type(self).__name__


class CommandAction(Action):
    """Run an external command, killing it on timeout or cancellation."""

    handles_deadline = True

    def __init__(
        self,
        argv: Sequence[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        if not argv:
            raise ValueError("CommandAction needs a non-empty argv")
        self._argv = list(argv)
        self._cwd = cwd
        self._env = dict(env or {})

    @property
    def argv(self) -> list[str]:
        return list(self._argv)

    def describe(self) -> str:
        return " ".join(self._argv)

    def run(self, ctx: ActionContext) -> ActionResult:
        argv = [ctx.render(arg) for arg in self._argv]
        env = {**os.environ, **self._env}
        env.update(
            CDFLOW_RUN_ID=ctx.run_id,
            CDFLOW_STAGE=ctx.stage,
            CDFLOW_REVISION=ctx.context.revision,
            CDFLOW_ARTIFACT=str(ctx.context.artifact) if ctx.context.artifact else "",
        )
        logger.debug("[%s] exec %s", ctx.stage, argv)
        try:
            proc = subprocess.Popen(
                argv,
                cwd=self._cwd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
            )
        except OSError as exc:
            return ActionResult(exit_code=127, output=f"failed to launch {argv[0]}: {exc}")

        while True:
            try:
                output, _ = proc.communicate(timeout=ctx.quantum_seconds)
                break
            except subprocess.TimeoutExpired:
                if ctx.cancelled:
                    output = _kill(proc)
                    return ActionResult(exit_code=-9, output=output + "\ncancelled")
                if ctx.remaining() <= 0:
                    output = _kill(proc)
                    raise StageTimeoutError(ctx.stage, ctx.timeout_seconds, output)

        return ActionResult(exit_code=proc.returncode, output=output or "")


def _kill(proc: subprocess.Popen[str]) -> str:
    proc.kill()
    output, _ = proc.communicate()
    return output or ""


ActionFunction = Callable[[ActionContext], Any]


class CallableAction(Action):
    """Wrap an in-process callable.

    The callable may return ``None`` (success), an ``ActionResult``, an
    ``ArtifactReference`` (success with that artifact) or a bool.
    Exceptions propagate to the executor, which records them as failures.
    """

    def __init__(self, fn: ActionFunction, name: str | None = None) -> None:
        self._fn = fn
        self._name = name or getattr(fn, "__name__", "callable")

    def describe(self) -> str:
        return self._name

    def run(self, ctx: ActionContext) -> ActionResult:
        result = self._fn(ctx)
        if result is None or result is True:
            return ActionResult()
        if result is False:
            return ActionResult(exit_code=1, output=f"{self._name} returned False")
        if isinstance(result, ActionResult):
            return result
        if isinstance(result, ArtifactReference):
            return ActionResult(artifact=result, output=f"produced {result}")
        raise TypeError(f"{self._name} returned unsupported {type(result).__name__}")


class PublishAction(Action):
    """Publish a build artifact to the registry."""

    def __init__(
        self,
        registry: ArtifactRegistry,
        artifact: str,
        version: str = "{revision}",
        payload: str = "",
    ) -> None:
        self._registry = registry
        self._artifact = artifact
        self._version = version
        self._payload = payload

    def describe(self) -> str:
        return f"publish {self._artifact}:{self._version}"

    def run(self, ctx: ActionContext) -> ActionResult:
        version = ctx.render(self._version)
        if not version or "{" in version:
            return ActionResult(exit_code=1, output=f"unresolved artifact version '{version}'")
        payload = ctx.render(self._payload) or f"run://{ctx.run_id}/{ctx.stage}"
        receipt = self._registry.publish(self._artifact, version, payload)
        if not receipt.accepted:
            return ActionResult(exit_code=1, output=f"registry rejected: {receipt.reason}")
        ref = ArtifactReference(name=self._artifact, version=version, location=receipt.location)
        return ActionResult(output=f"published {ref}", artifact=ref,
                            outputs={"location": receipt.location})


class DeployAction(Action):
    """Apply the run's artifact to the platform, optionally gated on health."""

    def __init__(
        self,
        platform: DeploymentPlatform,
        workload: str,
        replicas: int = 1,
        selector: str = "",
        gate: HealthGate | None = None,
        policy: HealthCheckPolicy | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        if (gate is None) != (policy is None):
            raise ValueError("gate and policy must be given together")
        self._platform = platform
        self._workload = workload
        self._replicas = replicas
        self._selector = selector
        self._gate = gate
        self._policy = policy
        self._env = dict(env or {})

    def describe(self) -> str:
        return f"deploy {self._workload}"

    def run(self, ctx: ActionContext) -> ActionResult:
        artifact = ctx.context.artifact
        if artifact is None:
            return ActionResult(exit_code=1, output="no artifact in run context")
        spec = WorkloadSpec(
            name=self._workload,
            image=artifact.location or str(artifact),
            replicas=self._replicas,
            selector=self._selector,
            env={key: ctx.render(value) for key, value in self._env.items()},
        )
        receipt = self._platform.apply(spec)
        if not receipt.accepted:
            return ActionResult(exit_code=1, output=f"platform rejected: {receipt.reason}")
        outputs = {"selector": spec.effective_selector, "image": spec.image}
        if self._gate is None or self._policy is None:
            return ActionResult(output=f"applied {spec.name} ({spec.image})", outputs=outputs)
        report = self._gate.verify(self._policy, spec.effective_selector, cancel=ctx.cancel,
                                   deadline=ctx.deadline)
        _raise_on_deadline(ctx, report)
        return ActionResult(exit_code=0 if report.healthy else 1,
                            output=report.describe(), outputs=outputs)


class VerifyAction(Action):
    """Run the health gate against an existing deployment."""

    def __init__(self, gate: HealthGate, policy: HealthCheckPolicy) -> None:
        self._gate = gate
        self._policy = policy

    def describe(self) -> str:
        return f"verify {self._policy.selector}"

    def run(self, ctx: ActionContext) -> ActionResult:
        report = self._gate.verify(self._policy, cancel=ctx.cancel, deadline=ctx.deadline)
        _raise_on_deadline(ctx, report)
        return ActionResult(
            exit_code=0 if report.healthy else 1,
            output=report.describe(),
            outputs={"polls": str(report.polls), "outcome": str(report.outcome)},
        )



def _raise_on_deadline(ctx: ActionContext, report: HealthReport) -> None:
    if report.deadline_exceeded:
        raise StageTimeoutError(ctx.stage, ctx.timeout_seconds, report.describe())

__all__ = [
    "ActionContext",
    "ActionResult",
    "Action",
    "ActionFunction",
    "CommandAction",
    "CallableAction",
    "PublishAction",
    "DeployAction",
    "VerifyAction",
]
