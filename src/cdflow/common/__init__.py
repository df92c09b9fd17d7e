"""Common constants, settings, schemas and errors for cdflow."""

from cdflow.common.clock import Clock, ManualClock, SystemClock
from cdflow.common.config import CDFlowSettings
from cdflow.common.constants import (
    RANDOM_STATE,
    HealthOutcome,
    PipelineRole,
    RunState,
    StageKind,
    StageState,
)
from cdflow.common.errors import (
    AmbiguousArtifactError,
    DefinitionInvalidError,
    DeliveryError,
    LedgerConflictError,
    RunNotFoundError,
    StageTimeoutError,
)
from cdflow.common.schemas import (
    ArtifactReference,
    LedgerEntry,
    RunContext,
    StageSnapshot,
)

__all__ = [
    "Clock",
    "ManualClock",
    "SystemClock",
    "CDFlowSettings",
    "RANDOM_STATE",
    "HealthOutcome",
    "PipelineRole",
    "RunState",
    "StageKind",
    "StageState",
    "DeliveryError",
    "DefinitionInvalidError",
    "StageTimeoutError",
    "AmbiguousArtifactError",
    "LedgerConflictError",
    "RunNotFoundError",
    "ArtifactReference",
    "LedgerEntry",
    "RunContext",
    "StageSnapshot",
]
