"""Progression engine configuration via environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings


class ProgressionSettings(BaseSettings):
    model_config = {"env_prefix": "RACING_"}

    database_path: str = Field(default="backend/data/progression.db", min_length=1)
    # How long a writer waits for the store lock before the call fails as transient
    busy_timeout_ms: int = Field(default=5000, ge=0)
    max_fold_attempts: int = Field(default=3, ge=1)
    leaderboard_limit: int = Field(default=100, ge=1, le=1000)
    recent_races_limit: int = Field(default=20, ge=1, le=200)
