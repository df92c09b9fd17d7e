"""Metrics/log sink interface.

Fire-and-forget: the engine pushes samples and log lines, never reads back.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricSample:
    """A single time-series observation."""

    metric_name: str
    value: float
    timestamp: float = field(default_factory=time.time)
    dimensions: dict[str, str] = field(default_factory=dict)
    unit: str = "None"


@dataclass(frozen=True)
class LogLine:
    message: str
    level: str = "INFO"
    timestamp: float = field(default_factory=time.time)
    attributes: dict[str, str] = field(default_factory=dict)


class TelemetrySink(ABC):
    """Accepts metric samples and log lines."""

    @abstractmethod
    def ingest(self, records: Sequence[MetricSample | LogLine]) -> bool:
        """Ingest a batch; returns the ack."""


class InMemorySink(TelemetrySink):
    """Sink that keeps everything it receives."""

    def __init__(self) -> None:
        self._samples: list[MetricSample] = []
        self._lines: list[LogLine] = []
        self._lock = threading.Lock()

    def ingest(self, records: Sequence[MetricSample | LogLine]) -> bool:
        with self._lock:
            for record in records:
                if isinstance(record, MetricSample):
                    self._samples.append(record)
                else:
                    self._lines.append(record)
        return True

    @property
    def samples(self) -> list[MetricSample]:
        with self._lock:
            return list(self._samples)

    @property
    def lines(self) -> list[LogLine]:
        with self._lock:
            return list(self._lines)

    def samples_named(self, metric_name: str) -> list[MetricSample]:
        return [s for s in self.samples if s.metric_name == metric_name]


class LoggingSink(TelemetrySink):
    """Sink that forwards records to :mod:`logging`."""

    def __init__(self, logger_name: str = "cdflow.telemetry") -> None:
        self._logger = logging.getLogger(logger_name)

    def ingest(self, records: Sequence[MetricSample | LogLine]) -> bool:
        for record in records:
            if isinstance(record, MetricSample):
                self._logger.info(
                    "metric %s=%.4f %s %s",
                    record.metric_name, record.value, record.unit, record.dimensions,
                )
            else:
                level = logging.getLevelName(record.level.upper())
                if not isinstance(level, int):
                    level = logging.INFO
                self._logger.log(level, "%s %s", record.message, record.attributes)
        return True


__all__ = [
    "MetricSample",
    "LogLine",
    "TelemetrySink",
    "InMemorySink",
    "LoggingSink",
]
