"""Run ledger: append-only record of terminal runs.

Entries are immutable. Recording is idempotent per run id and serialized
by a lock; conflicting outcomes for the same id are rejected. Optionally
backed by a JSON-lines file so history survives restarts.
"""

from __future__ import annotations

import bisect
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np

from cdflow.common.constants import RunState
from cdflow.common.errors import LedgerConflictError
from cdflow.common.schemas import LedgerEntry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerQuery:
    """Filter for ledger range queries. ``None`` fields match everything."""

    run_id: str | None = None
    pipeline: str | None = None
    since: float | None = None
    until: float | None = None
    outcome: RunState | None = None
    limit: int | None = None

    def matches(self, entry: LedgerEntry) -> bool:
        if self.run_id is not None and entry.run_id != self.run_id:
            return False
        if self.pipeline is not None and entry.pipeline != self.pipeline:
            return False
        if self.since is not None and entry.completed_at < self.since:
            return False
        if self.until is not None and entry.completed_at > self.until:
            return False
        if self.outcome is not None and entry.outcome != self.outcome:
            return False
        return True


class RunLedger:
    """Ordered, append-only store of LedgerEntry snapshots."""

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path) if path is not None else None
        self._lock = threading.Lock()
        self._by_id: dict[str, LedgerEntry] = {}
        self._order: list[tuple[float, str]] = []
        if self._path is not None and self._path.exists():
            self._load(self._path)

    @property
    def path(self) -> Path | None:
        return self._path

    def record(self, entry: LedgerEntry) -> bool:
        """Store ``entry``. Returns False when an identical outcome was already recorded."""
        with self._lock:
            existing = self._by_id.get(entry.run_id)
            if existing is not None:
                if existing.outcome != entry.outcome:
                    raise LedgerConflictError(entry.run_id, existing.outcome, entry.outcome)
                logger.debug("Run %s already recorded as %s", entry.run_id, entry.outcome)
                return False
            self._insert(entry)
            if self._path is not None:
                self._append(self._path, entry)
        logger.info("Recorded run %s (%s) %s", entry.run_id, entry.pipeline, entry.outcome)
        return True

    def get(self, run_id: str) -> LedgerEntry | None:
        with self._lock:
            return self._by_id.get(run_id)

    def query(self, query: LedgerQuery | None = None) -> list[LedgerEntry]:
        """Entries matching ``query`` ordered by completion time, then run id."""
        query = query or LedgerQuery()
        with self._lock:
            if query.run_id is not None:
                hit = self._by_id.get(query.run_id)
                candidates = [hit] if hit is not None else []
            else:
                lo = 0
                if query.since is not None:
                    lo = bisect.bisect_left(self._order, (query.since, ""))
                candidates = [self._by_id[run_id] for _, run_id in self._order[lo:]]
        matched = [e for e in candidates if query.matches(e)]
        if query.limit is not None:
            matched = matched[-query.limit:] if query.limit > 0 else []
        return matched

    def stats(self, pipeline: str | None = None) -> dict[str, Any]:
        """Outcome counts and duration statistics."""
        entries = self.query(LedgerQuery(pipeline=pipeline))
        counts = {state.value: 0 for state in (RunState.SUCCEEDED, RunState.FAILED,
                                               RunState.CANCELLED)}
        for entry in entries:
            counts[entry.outcome.value] += 1
        durations = np.array([e.duration_seconds for e in entries], dtype=float)
        return {
            "total_runs": len(entries),
            **counts,
            "success_rate": counts[RunState.SUCCEEDED.value] / max(len(entries), 1),
            "mean_duration_seconds": float(durations.mean()) if durations.size else 0.0,
            "p95_duration_seconds": (
                float(np.percentile(durations, 95)) if durations.size else 0.0
            ),
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)

    def __contains__(self, run_id: object) -> bool:
        with self._lock:
            return run_id in self._by_id

    # --- persistence ---

    def _insert(self, entry: LedgerEntry) -> None:
        self._by_id[entry.run_id] = entry
        bisect.insort(self._order, (entry.completed_at, entry.run_id))

    def _append(self, path: Path, entry: LedgerEntry) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")

    def _load(self, path: Path) -> None:
        with open(path, encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                entry = LedgerEntry.model_validate_json(line)
                existing = self._by_id.get(entry.run_id)
                if existing is not None:
                    if existing.outcome != entry.outcome:
                        raise LedgerConflictError(entry.run_id, existing.outcome,
                                                  entry.outcome)
                    logger.warning("Duplicate ledger line %d for run %s", lineno,
                                   entry.run_id)
                    continue
                self._insert(entry)
        logger.info("Loaded %d ledger entries from %s", len(self._by_id), path)


__all__ = ["LedgerQuery", "RunLedger"]
