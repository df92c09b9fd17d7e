"""Clock abstraction so retry and polling loops run without real delays in tests."""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod


class Clock(ABC):
    """Source of wall-clock time and cancellable waits."""

    @abstractmethod
    def now(self) -> float:
        """Current time in epoch seconds."""

    @abstractmethod
    def wait(self, seconds: float, cancel: threading.Event | None = None) -> bool:
        """Block for ``seconds``; return True if ``cancel`` was set."""


class SystemClock(Clock):
    """Real time backed by :mod:`time`."""

    def now(self) -> float:
        return time.time()

    def wait(self, seconds: float, cancel: threading.Event | None = None) -> bool:
        if seconds <= 0:
            return cancel.is_set() if cancel is not None else False
        if cancel is not None:
            return cancel.wait(seconds)
        time.sleep(seconds)
        return False


class ManualClock(Clock):
    """Deterministic clock; ``wait`` advances time instantly."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = start
        self._lock = threading.Lock()
        self._waits: list[float] = []

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += seconds

    def wait(self, seconds: float, cancel: threading.Event | None = None) -> bool:
        with self._lock:
            self._waits.append(seconds)
            self._now += max(seconds, 0.0)
        return cancel.is_set() if cancel is not None else False

    @property
    def waits(self) -> list[float]:
        """Every wait duration requested so far, in call order."""
        with self._lock:
            return list(self._waits)


__all__ = ["Clock", "SystemClock", "ManualClock"]
