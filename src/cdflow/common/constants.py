"""Constants and enums for cdflow."""

from enum import StrEnum
from typing import Final


class StageKind(StrEnum):
    """Classification of a pipeline stage."""

    BUILD = "build"
    TEST = "test"
    SECURITY = "security"
    PUBLISH = "publish"
    DEPLOY = "deploy"
    VERIFY = "verify"


class StageState(StrEnum):
    """Stage execution state (pending -> running -> terminal)."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SKIPPED = "skipped"


class RunState(StrEnum):
    """Run lifecycle state."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PipelineRole(StrEnum):
    """Position of a pipeline in the delivery chain."""

    UPSTREAM = "upstream"  # CI
    DOWNSTREAM = "downstream"  # CD
    STANDALONE = "standalone"


class HealthOutcome(StrEnum):
    """Result of a deployment health verification."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


TERMINAL_STAGE_STATES: Final[frozenset[StageState]] = frozenset({
    StageState.SUCCEEDED,
    StageState.FAILED,
    StageState.TIMED_OUT,
    StageState.SKIPPED,
})

TERMINAL_RUN_STATES: Final[frozenset[RunState]] = frozenset({
    RunState.SUCCEEDED,
    RunState.FAILED,
    RunState.CANCELLED,
})

RANDOM_STATE: Final[int] = 42

# Backoff between stage attempts
DEFAULT_BACKOFF_BASE_SECONDS: Final[float] = 2.0
DEFAULT_BACKOFF_CAP_SECONDS: Final[float] = 60.0

# Health gate defaults: 30 polls x 10 s bounds the wait at 5 minutes
DEFAULT_HEALTH_INTERVAL_SECONDS: Final[float] = 10.0
DEFAULT_HEALTH_MAX_ATTEMPTS: Final[int] = 30
DEFAULT_HEALTH_SUCCESS_THRESHOLD: Final[int] = 3

DEFAULT_STAGE_TIMEOUT_SECONDS: Final[float] = 900.0
DEFAULT_MAX_PARALLEL_STAGES: Final[int] = 4
DEFAULT_MAX_CONCURRENT_RUNS: Final[int] = 8
DEFAULT_SCHEDULING_QUANTUM_SECONDS: Final[float] = 0.05

__all__ = [
    "StageKind",
    "StageState",
    "RunState",
    "PipelineRole",
    "HealthOutcome",
    "TERMINAL_STAGE_STATES",
    "TERMINAL_RUN_STATES",
    "RANDOM_STATE",
    "DEFAULT_BACKOFF_BASE_SECONDS",
    "DEFAULT_BACKOFF_CAP_SECONDS",
    "DEFAULT_HEALTH_INTERVAL_SECONDS",
    "DEFAULT_HEALTH_MAX_ATTEMPTS",
    "DEFAULT_HEALTH_SUCCESS_THRESHOLD",
    "DEFAULT_STAGE_TIMEOUT_SECONDS",
    "DEFAULT_MAX_PARALLEL_STAGES",
    "DEFAULT_MAX_CONCURRENT_RUNS",
    "DEFAULT_SCHEDULING_QUANTUM_SECONDS",
]
