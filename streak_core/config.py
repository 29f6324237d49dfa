from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Engine-wide knobs, overridable through STREAK_* environment variables."""

    # First day of the week for weekly buckets (0 = Monday ... 6 = Sunday)
    first_weekday: int = 0

    # Accepted participants required before a competition can go active
    min_participants: int = 2

    # How tied final scores are numbered when minting trophies
    placement_policy: Literal["sequential", "shared"] = "sequential"

    # Boundary retry policy (the pure core never retries)
    retry_attempts: int = 3
    retry_wait_max: float = 10.0

    # How many applied request ids a competition remembers for deduplication
    request_id_history: int = 200

    model_config = SettingsConfigDict(
        env_prefix="STREAK_", env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("first_weekday")
    @classmethod
    def validate_first_weekday(cls, v: int) -> int:
        if not 0 <= v <= 6:
            raise ValueError("first_weekday must be 0-6 (Monday-Sunday)")
        return v

    @field_validator("min_participants", "retry_attempts")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v


@lru_cache
def get_settings() -> EngineSettings:
    return EngineSettings()
