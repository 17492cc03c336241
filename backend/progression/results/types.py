from datetime import datetime
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shared.dal.models import GameMode, LobbyStatus, RaceStatus

# Times are kept to the millisecond.
TIME_PRECISION = 3

MAX_POSITION = 64
MAX_LAPS = 1000
# Per-result reward ceiling, well inside SQLite's 64-bit INTEGER
MAX_REWARD = 1_000_000


class ResultSubmission(BaseModel):
    """One player's outcome as delivered by the race session."""

    model_config = ConfigDict(extra="forbid")

    player_id: str = Field(min_length=1)
    position: int | None = Field(default=None, ge=1, le=MAX_POSITION)
    finish_time: float | None = Field(default=None, gt=0, allow_inf_nan=False)
    best_lap_time: float | None = Field(default=None, gt=0, allow_inf_nan=False)
    total_laps_completed: int = Field(default=0, ge=0, le=MAX_LAPS)
    points_earned: int = Field(default=0, ge=0, le=MAX_REWARD)
    coins_earned: int = Field(default=0, ge=0, le=MAX_REWARD)
    experience_earned: int = Field(default=0, ge=0, le=MAX_REWARD)
    did_finish: bool = True
    dnf_reason: str | None = Field(default=None, max_length=100)
    car_model: str | None = Field(default=None, max_length=100)
    replay_data: dict[str, Any] | None = None

    @field_validator("finish_time", "best_lap_time")
    @classmethod
    def round_time(cls, value: float | None) -> float | None:
        return None if value is None else round(value, TIME_PRECISION)

    @model_validator(mode="after")
    def _check_dnf(self) -> Self:
        if self.did_finish and self.dnf_reason is not None:
            raise ValueError("dnf_reason is only allowed when did_finish is false")
        return self


class SubmitResultsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    results: list[ResultSubmission] = Field(min_length=1, max_length=8)


class SubmissionAck(BaseModel, frozen=True):
    race_id: str
    accepted: list[str]
    records_set: list[str]  # players whose leaderboard time was created or improved
    race_status: RaceStatus
    winner_id: str | None = None


class JoinLobbyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    car_model: str = Field(min_length=1, max_length=100)
    car_color: str = Field(default="red", min_length=1, max_length=50)


class PlayerProfile(BaseModel, frozen=True):
    player_id: str
    username: str
    display_name: str | None = None
    avatar_url: str | None = None
    total_races: int
    total_wins: int
    total_losses: int
    best_lap_time: float | None = None
    total_points: int
    level: int
    experience_points: int
    coins: int
    is_online: bool
    win_rate: float  # wins / races, two decimals
    total_achievements: int
    global_rank: int


class ActiveLobby(BaseModel, frozen=True):
    lobby_id: str
    lobby_name: str
    track_name: str
    game_mode: GameMode
    max_players: int
    current_players: int
    status: LobbyStatus
    is_private: bool
    created_at: datetime
    host_player_id: str
    host_username: str
    host_display_name: str | None = None


class RecentRace(BaseModel, frozen=True):
    race_id: str
    track_name: str
    game_mode: GameMode
    total_laps: int
    started_at: datetime
    finished_at: datetime | None = None
    duration_seconds: int | None = None
    winner_id: str | None = None
    winner_username: str | None = None
    winner_display_name: str | None = None
    total_racers: int
