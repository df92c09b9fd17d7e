"""Delivery coordination: health gating and downstream triggering."""

from __future__ import annotations

from cdflow.delivery.health import HealthCheckPolicy, HealthGate, HealthReport
from cdflow.delivery.trigger import (
    TriggerBridge,
    TriggerConfig,
    TriggeredRun,
    TriggerFailure,
)

__all__ = [
    "HealthCheckPolicy",
    "HealthGate",
    "HealthReport",
    "TriggerBridge",
    "TriggerConfig",
    "TriggeredRun",
    "TriggerFailure",
]
