"""Stage executor: runs one stage with timeout and retry/backoff."""

from __future__ import annotations

import logging
import threading
import traceback
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field

import numpy as np

from cdflow.common.clock import Clock, SystemClock
from cdflow.common.config import CDFlowSettings
from cdflow.common.constants import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_CAP_SECONDS,
    DEFAULT_SCHEDULING_QUANTUM_SECONDS,
    RANDOM_STATE,
    StageState,
)
from cdflow.common.errors import StageTimeoutError
from cdflow.common.schemas import ArtifactReference, RunContext
from cdflow.pipeline.actions import Action, ActionContext, ActionResult
from cdflow.pipeline.definition import StageSpec

logger = logging.getLogger(__name__)

_MAX_OUTPUT_CHARS = 8_000


# --- Data Classes ---


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff: base delay doubling per attempt, capped."""

    base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    cap_seconds: float = DEFAULT_BACKOFF_CAP_SECONDS
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.base_seconds < 0 or self.cap_seconds < 0:
            raise ValueError("Backoff delays must be >= 0")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be within [0, 1]")

    def delay(self, attempt: int) -> float:
        """Delay after the given (1-based) failed attempt, before jitter."""
        return min(self.cap_seconds, self.base_seconds * (2 ** max(attempt - 1, 0)))

    @classmethod
    def from_settings(cls, settings: CDFlowSettings) -> BackoffPolicy:
        return cls(
            base_seconds=settings.backoff_base_seconds,
            cap_seconds=settings.backoff_cap_seconds,
            jitter=settings.backoff_jitter,
        )


@dataclass(frozen=True)
class StageResult:
    """Terminal result of a stage, after any retries."""

    stage_name: str
    state: StageState
    attempts: int
    started_at: float
    finished_at: float
    exit_code: int | None = None
    output: str = ""
    artifact: ArtifactReference | None = None
    outputs: dict[str, str] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.state == StageState.SUCCEEDED

    @property
    def duration_seconds(self) -> float:
        return self.finished_at - self.started_at


# --- Stage Executor ---


class StageExecutor:
    """Runs a stage's action under its timeout, retrying with backoff.

    The executor never touches run state; it returns a ``StageResult``
    and leaves state transitions to the coordinator.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        backoff: BackoffPolicy | None = None,
        quantum_seconds: float = DEFAULT_SCHEDULING_QUANTUM_SECONDS,
    ) -> None:
        self._clock = clock or SystemClock()
        self._backoff = backoff or BackoffPolicy()
        self._quantum = quantum_seconds
        self._rng = np.random.RandomState(RANDOM_STATE)
        self._rng_lock = threading.Lock()

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def backoff(self) -> BackoffPolicy:
        return self._backoff

    def execute(
        self,
        spec: StageSpec,
        context: RunContext,
        run_id: str = "",
        cancel: threading.Event | None = None,
    ) -> StageResult:
        """Run ``spec`` up to ``1 + spec.retries`` times; return the final attempt."""
        cancel = cancel or threading.Event()
        started_at = self._clock.now()
        max_attempts = spec.retries + 1
        attempt = 0
        state = StageState.FAILED
        result = ActionResult(exit_code=None)

        while attempt < max_attempts:
            attempt += 1
            state, result = self._attempt(spec, context, run_id, attempt, cancel)
            if state in (StageState.SUCCEEDED, StageState.SKIPPED):
                break
            if attempt >= max_attempts:
                break
            delay = self._next_delay(attempt)
            logger.info(
                "[%s] attempt %d/%d %s; retrying in %.1fs",
                spec.name, attempt, max_attempts, state, delay,
            )
            if self._clock.wait(delay, cancel):
                state = StageState.SKIPPED
                result = ActionResult(exit_code=result.exit_code,
                                      output=_join(result.output, "cancelled during backoff"))
                break

        finished_at = self._clock.now()
        if state != StageState.SUCCEEDED:
            logger.warning("[%s] %s after %d attempt(s): %s",
                           spec.name, state, attempt, _tail(result.output, 200))
        return StageResult(
            stage_name=spec.name,
            state=state,
            attempts=attempt,
            started_at=started_at,
            finished_at=finished_at,
            exit_code=result.exit_code,
            output=_tail(result.output, _MAX_OUTPUT_CHARS),
            artifact=result.artifact if state == StageState.SUCCEEDED else None,
            outputs=dict(result.outputs),
        )

    def _attempt(
        self,
        spec: StageSpec,
        context: RunContext,
        run_id: str,
        attempt: int,
        cancel: threading.Event,
    ) -> tuple[StageState, ActionResult]:
        if cancel.is_set():
            return StageState.SKIPPED, ActionResult(exit_code=None, output="cancelled")

        now = self._clock.now()
        ctx = ActionContext(
            run_id=run_id,
            stage=spec.name,
            kind=spec.kind,
            attempt=attempt,
            context=context,
            timeout_seconds=spec.timeout_seconds,
            deadline=now + spec.timeout_seconds,
            clock=self._clock,
            cancel=cancel,
            quantum_seconds=self._quantum,
        )
        try:
            result = self._call(spec.action, ctx)
        except StageTimeoutError as exc:
            return StageState.TIMED_OUT, ActionResult(
                exit_code=None, output=_join(exc.output, str(exc)),
            )
        except Exception as exc:  # noqa: BLE001
            logger.debug("[%s] action raised", spec.name, exc_info=True)
            return StageState.FAILED, ActionResult(
                exit_code=1,
                output=f"{type(exc).__name__}: {exc}\n{traceback.format_exc(limit=5)}",
            )

        if cancel.is_set():
            return StageState.SKIPPED, ActionResult(exit_code=result.exit_code,
                                                    output=_join(result.output, "cancelled"))
        if ctx.remaining() < 0:
            message = f"Stage '{spec.name}' exceeded timeout of {spec.timeout_seconds:.1f}s"
            return StageState.TIMED_OUT, ActionResult(exit_code=result.exit_code,
                                                      output=_join(result.output, message))
        if not result.ok:
            return StageState.FAILED, result
        return StageState.SUCCEEDED, result

    def _call(self, action: Action, ctx: ActionContext) -> ActionResult:
        """Run ``action``, abandoning it once the deadline passes or the run is cancelled.

        Python threads cannot be killed, so an abandoned action keeps its
        worker thread until it returns; its result is discarded.
        """
        if action.handles_deadline:
            return action.run(ctx)
        worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"cdflow-{ctx.stage}")
        future = worker.submit(action.run, ctx)
        try:
            while True:
                done, _ = wait([future], timeout=self._quantum)
                if done:
                    return future.result()
                if ctx.cancelled:
                    logger.warning("[%s] abandoning action after cancellation", ctx.stage)
                    return ActionResult(exit_code=None, output="cancelled")
                if ctx.remaining() < 0:
                    logger.warning("[%s] abandoning action at deadline", ctx.stage)
                    raise StageTimeoutError(ctx.stage, ctx.timeout_seconds)
        finally:
            worker.shutdown(wait=False)

    def _next_delay(self, attempt: int) -> float:
        delay = self._backoff.delay(attempt)
        if self._backoff.jitter > 0 and delay > 0:
            with self._rng_lock:
                factor = self._rng.uniform(1.0 - self._backoff.jitter, 1.0)
            delay *= float(factor)
        return delay


# --- Helpers ---


def _join(*parts: str) -> str:
    return "\n".join(p for p in parts if p)


def _tail(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return "..." + text[-limit:]


__all__ = ["BackoffPolicy", "StageResult", "StageExecutor"]
