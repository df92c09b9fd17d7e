"""Application configuration using Pydantic Settings."""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

from cdflow.common.constants import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    DEFAULT_BACKOFF_CAP_SECONDS,
    DEFAULT_HEALTH_INTERVAL_SECONDS,
    DEFAULT_HEALTH_MAX_ATTEMPTS,
    DEFAULT_HEALTH_SUCCESS_THRESHOLD,
    DEFAULT_MAX_CONCURRENT_RUNS,
    DEFAULT_MAX_PARALLEL_STAGES,
    DEFAULT_SCHEDULING_QUANTUM_SECONDS,
)


class CDFlowSettings(BaseSettings):
    """Engine configuration loaded from environment variables."""

    environment: Literal["dev", "staging", "prod"] = "dev"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    max_parallel_stages: int = Field(default=DEFAULT_MAX_PARALLEL_STAGES, ge=1)
    max_concurrent_runs: int = Field(default=DEFAULT_MAX_CONCURRENT_RUNS, ge=1)
    scheduling_quantum_seconds: float = Field(
        default=DEFAULT_SCHEDULING_QUANTUM_SECONDS, gt=0.0,
    )

    backoff_base_seconds: float = Field(default=DEFAULT_BACKOFF_BASE_SECONDS, ge=0.0)
    backoff_cap_seconds: float = Field(default=DEFAULT_BACKOFF_CAP_SECONDS, ge=0.0)
    backoff_jitter: float = Field(default=0.0, ge=0.0, le=1.0)

    health_interval_seconds: float = Field(default=DEFAULT_HEALTH_INTERVAL_SECONDS, ge=0.0)
    health_max_attempts: int = Field(default=DEFAULT_HEALTH_MAX_ATTEMPTS, ge=1)
    health_success_threshold: int = Field(default=DEFAULT_HEALTH_SUCCESS_THRESHOLD, ge=1)

    ledger_path: str = ".cdflow/ledger.jsonl"

    model_config = {"env_prefix": "CDFLOW_", "case_sensitive": False}


__all__ = ["CDFlowSettings"]
