"""External collaborators: artifact registry, deployment platform, telemetry sink."""

from __future__ import annotations

from cdflow.integrations.platform import (
    ApplyReceipt,
    DeploymentPlatform,
    ScriptedPlatform,
    WorkloadSpec,
    WorkloadStatus,
)
from cdflow.integrations.registry import (
    ArtifactRegistry,
    InMemoryArtifactRegistry,
    PublishReceipt,
)
from cdflow.integrations.telemetry import (
    InMemorySink,
    LoggingSink,
    LogLine,
    MetricSample,
    TelemetrySink,
)

__all__ = [
    "ApplyReceipt",
    "DeploymentPlatform",
    "ScriptedPlatform",
    "WorkloadSpec",
    "WorkloadStatus",
    "ArtifactRegistry",
    "InMemoryArtifactRegistry",
    "PublishReceipt",
    "InMemorySink",
    "LoggingSink",
    "LogLine",
    "MetricSample",
    "TelemetrySink",
]
