"""Artifact registry interface and an in-memory registry."""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishReceipt:
    """Registry answer to a publish request."""

    accepted: bool
    location: str = ""
    reason: str = ""


class ArtifactRegistry(ABC):
    """Accepts named, versioned build artifacts."""

    @abstractmethod
    def publish(self, name: str, version: str, payload_ref: str) -> PublishReceipt:
        """Publish ``payload_ref`` as ``name@version``."""


@dataclass(frozen=True)
class StoredArtifact:
    name: str
    version: str
    payload_ref: str
    published_at: float = field(default_factory=time.time)


class InMemoryArtifactRegistry(ArtifactRegistry):
    """Registry kept in process memory. Published versions are immutable."""

    def __init__(self, base_url: str = "memory://registry") -> None:
        self._base_url = base_url.rstrip("/")
        self._artifacts: dict[tuple[str, str], StoredArtifact] = {}
        self._lock = threading.Lock()

    def publish(self, name: str, version: str, payload_ref: str) -> PublishReceipt:
        if not name or not version:
            return PublishReceipt(accepted=False, reason="artifact name and version are required")
        key = (name, version)
        with self._lock:
            if key in self._artifacts:
                logger.warning("Rejected re-publish of %s@%s", name, version)
                return PublishReceipt(
                    accepted=False,
                    reason=f"{name}@{version} already published",
                )
            self._artifacts[key] = StoredArtifact(name, version, payload_ref)
        location = f"{self._base_url}/{name}:{version}"
        logger.info("Published %s@%s -> %s", name, version, location)
        return PublishReceipt(accepted=True, location=location)

    def get(self, name: str, version: str) -> StoredArtifact | None:
        with self._lock:
            return self._artifacts.get((name, version))

    def __len__(self) -> int:
        with self._lock:
            return len(self._artifacts)


__all__ = [
    "PublishReceipt",
    "ArtifactRegistry",
    "StoredArtifact",
    "InMemoryArtifactRegistry",
]
