"""Status query surface for operators and CLIs."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

from cdflow.common.constants import RunState, StageState
from cdflow.common.errors import RunNotFoundError
from cdflow.common.schemas import LedgerEntry, RunContext, StageSnapshot
from cdflow.ledger.store import LedgerQuery, RunLedger

if TYPE_CHECKING:
    from cdflow.pipeline.coordinator import RunCoordinator
    from cdflow.pipeline.run import Run


class RunStatusView(BaseModel):
    """Run outcome plus per-stage breakdown."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    pipeline: str
    pipeline_version: str
    state: RunState
    context: RunContext
    stages: tuple[StageSnapshot, ...]
    started_at: float | None = None
    completed_at: float | None = None
    live: bool = False

    @property
    def counts(self) -> dict[str, int]:
        totals = {state.value: 0 for state in StageState}
        for stage in self.stages:
            totals[stage.state.value] += 1
        return totals

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> RunStatusView:
        return cls(
            run_id=entry.run_id,
            pipeline=entry.pipeline,
            pipeline_version=entry.pipeline_version,
            state=entry.outcome,
            context=entry.context,
            stages=entry.stages,
            started_at=entry.started_at,
            completed_at=entry.completed_at,
        )

    @classmethod
    def from_run(cls, run: Run) -> RunStatusView:
        return cls(
            run_id=run.run_id,
            pipeline=run.definition.name,
            pipeline_version=run.definition.version,
            state=run.state,
            context=run.context,
            stages=run.stage_snapshots(),
            started_at=run.started_at,
            completed_at=run.completed_at,
            live=True,
        )


class StatusService:
    """Answers ``get_run`` and ``list_runs`` from the ledger and live runs."""

    def __init__(self, ledger: RunLedger, coordinator: RunCoordinator | None = None) -> None:
        self._ledger = ledger
        self._coordinator = coordinator

    def get_run(self, run_id: str) -> RunStatusView:
        entry = self._ledger.get(run_id)
        if entry is not None:
            return RunStatusView.from_entry(entry)
        if self._coordinator is not None:
            run = self._coordinator.active_run(run_id)
            if run is not None:
                return RunStatusView.from_run(run)
        raise RunNotFoundError(run_id)

    def list_runs(
        self,
        pipeline: str | None = None,
        since: float | None = None,
        until: float | None = None,
        limit: int | None = None,
    ) -> list[LedgerEntry]:
        return self._ledger.query(
            LedgerQuery(pipeline=pipeline, since=since, until=until, limit=limit)
        )


__all__ = ["RunStatusView", "StatusService"]
