"""Runtime settings for the scheduling core, loaded from the environment."""

from __future__ import annotations

from datetime import time
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_RULE_ORDER = [
    "prefer_requested_days",
    "prefer_requested_time",
    "consistent_time_of_day",
    "minimize_therapist_gaps",
]


class Settings(BaseSettings):
    """Tunable limits. Every field can be overridden with THERAPY_SCHEDULER_<NAME>."""

    log_level: str = "INFO"

    # --- Generation ---
    max_placement_retries: int = Field(default=3, ge=0)
    suggestion_search_days: int = Field(default=7, ge=0)
    slot_granularity_minutes: int = Field(default=15, ge=5)
    max_suggestions: int = Field(default=5, ge=1)
    default_start_time: time = time(9, 0)

    # --- Warning thresholds ---
    business_hours_start: time = time(8, 0)
    business_hours_end: time = time(18, 0)
    min_gap_minutes: int = Field(default=15, ge=0)
    max_sessions_per_day: int = Field(default=8, ge=1)

    # --- Optimization ---
    max_gap_minutes: int = Field(default=60, ge=0)
    optimization_rules: List[str] = Field(default_factory=lambda: list(DEFAULT_RULE_ORDER))

    # --- Collaborators ---
    collaborator_max_attempts: int = Field(default=3, ge=1)
    collaborator_backoff_seconds: float = Field(default=0.1, ge=0.0)

    # --- Bulk operations ---
    bulk_max_sessions: int = Field(default=1000, ge=1)
    max_active_operations: int = Field(default=3, ge=1)
    bulk_max_concurrency: int = Field(default=4, ge=1)
    batch_max_concurrency: int = Field(default=10, ge=1)

    model_config = SettingsConfigDict(env_prefix="THERAPY_SCHEDULER_", env_file=".env", extra="ignore")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
