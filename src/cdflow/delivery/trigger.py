"""Trigger bridge: starts the downstream (CD) run after a successful upstream (CI) run."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from dataclasses import dataclass, field

from cdflow.common.constants import PipelineRole, RunState, StageKind
from cdflow.common.errors import AmbiguousArtifactError
from cdflow.common.schemas import ArtifactReference, LedgerEntry, RunContext
from cdflow.pipeline.coordinator import RunCompleted, RunCoordinator, RunHandle
from cdflow.pipeline.definition import PipelineDefinition

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerConfig:
    """Maps upstream pipeline names to the downstream definition they trigger."""

    routes: Mapping[str, PipelineDefinition] = field(default_factory=dict)

    def downstream_for(self, pipeline: str) -> PipelineDefinition | None:
        return self.routes.get(pipeline)


@dataclass(frozen=True)
class TriggeredRun:
    upstream_run_id: str
    handle: RunHandle


@dataclass(frozen=True)
class TriggerFailure:
    upstream_run_id: str
    error: Exception


class TriggerBridge:
    """Single coordination point turning RunCompleted events into downstream runs.

    Triggering never revises the upstream run's recorded outcome.
    """

    def __init__(self, coordinator: RunCoordinator, config: TriggerConfig) -> None:
        self._coordinator = coordinator
        self._config = config
        self._triggered: list[TriggeredRun] = []
        self._failures: list[TriggerFailure] = []
        self._lock = threading.Lock()

    def attach(self) -> TriggerBridge:
        """Subscribe to the coordinator's RunCompleted events."""
        self._coordinator.subscribe(self.on_run_completed)
        return self

    @property
    def triggered(self) -> list[TriggeredRun]:
        with self._lock:
            return list(self._triggered)

    @property
    def failures(self) -> list[TriggerFailure]:
        with self._lock:
            return list(self._failures)

    def on_run_completed(self, event: RunCompleted | LedgerEntry) -> RunHandle | None:
        """Start the downstream run if ``event`` qualifies; raises AmbiguousArtifactError."""
        entry = event.entry if isinstance(event, RunCompleted) else event
        if entry.outcome != RunState.SUCCEEDED or entry.role != PipelineRole.UPSTREAM:
            return None
        downstream = self._config.downstream_for(entry.pipeline)
        if downstream is None:
            logger.debug("No downstream configured for %s", entry.pipeline)
            return None

        try:
            artifact = self._extract_artifact(entry)
        except AmbiguousArtifactError as exc:
            with self._lock:
                self._failures.append(TriggerFailure(entry.run_id, exc))
            logger.error("Not triggering %s: %s", downstream.name, exc)
            raise

        context = RunContext(
            revision=entry.context.revision,
            artifact=artifact,
            parent_run_id=entry.run_id,
            params=dict(entry.context.params),
        )
        handle = self._coordinator.start(downstream, context)
        with self._lock:
            self._triggered.append(TriggeredRun(entry.run_id, handle))
        logger.info("Run %s (%s) triggered %s run %s with %s", entry.run_id,
                    entry.pipeline, downstream.name, handle.run_id, artifact)
        return handle

    @staticmethod
    def _extract_artifact(entry: LedgerEntry) -> ArtifactReference:
        publish = entry.stages_of_kind(StageKind.PUBLISH)
        if len(publish) != 1 or publish[0].artifact is None:
            raise AmbiguousArtifactError(entry.run_id, [s.name for s in publish])
        return publish[0].artifact


__all__ = ["TriggerConfig", "TriggeredRun", "TriggerFailure", "TriggerBridge"]
