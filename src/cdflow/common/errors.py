"""Error taxonomy for the delivery engine."""

from __future__ import annotations

from collections.abc import Sequence


class DeliveryError(Exception):
    """Base class for all cdflow errors."""


class DefinitionInvalidError(DeliveryError):
    """Raised when a pipeline definition is cyclic or references unknown stages."""

    def __init__(self, pipeline: str, problems: Sequence[str]) -> None:
        self.pipeline = pipeline
        self.problems = tuple(problems)
        super().__init__(
            f"Pipeline definition '{pipeline}' is invalid: {'; '.join(self.problems)}"
        )


class StageTimeoutError(DeliveryError):
    """Raised by a stage action that exceeded its deadline."""

    def __init__(self, stage: str, timeout_seconds: float, output: str = "") -> None:
        self.stage = stage
        self.timeout_seconds = timeout_seconds
        self.output = output
        super().__init__(f"Stage '{stage}' exceeded timeout of {timeout_seconds:.1f}s")


class AmbiguousArtifactError(DeliveryError):
    """Raised when a run does not yield exactly one publish artifact."""

    def __init__(self, run_id: str, publish_stages: Sequence[str]) -> None:
        self.run_id = run_id
        self.publish_stages = tuple(publish_stages)
        super().__init__(
            f"Run {run_id} produced {len(self.publish_stages)} publish artifact(s) "
            f"{list(self.publish_stages)}; exactly one is required to trigger"
        )


class LedgerConflictError(DeliveryError):
    """Raised when a terminal run is re-recorded with a different outcome."""

    def __init__(self, run_id: str, recorded: str, attempted: str) -> None:
        self.run_id = run_id
        self.recorded = recorded
        self.attempted = attempted
        super().__init__(
            f"Ledger conflict for run {run_id}: recorded={recorded} attempted={attempted}"
        )


class RunNotFoundError(DeliveryError, KeyError):
    """Raised when a run id is unknown to the ledger and the coordinator."""

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")

    def __str__(self) -> str:
        return self.args[0]


__all__ = [
    "DeliveryError",
    "DefinitionInvalidError",
    "StageTimeoutError",
    "AmbiguousArtifactError",
    "LedgerConflictError",
    "RunNotFoundError",
]
