"""Run ledger and status queries."""

from __future__ import annotations

from cdflow.ledger.status import RunStatusView, StatusService
from cdflow.ledger.store import LedgerQuery, RunLedger

__all__ = ["LedgerQuery", "RunLedger", "RunStatusView", "StatusService"]
