"""Persistence models for the data access layer.

Rows are read through ``sqlite3.Row`` and validated into these frozen
models; JSON blob columns arrive as TEXT and are decoded here.
"""

import json
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class GameMode(StrEnum):
    RACE = "race"
    TIME_TRIAL = "time_trial"
    ELIMINATION = "elimination"
    DRIFT = "drift"


class LobbyStatus(StrEnum):
    WAITING = "waiting"
    STARTING = "starting"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    CANCELLED = "cancelled"


class RaceStatus(StrEnum):
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"
    ABANDONED = "abandoned"


class Rarity(StrEnum):
    COMMON = "common"
    RARE = "rare"
    EPIC = "epic"
    LEGENDARY = "legendary"


def _decode_blob(value: Any) -> Any:  # noqa: ANN401
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


class Player(BaseModel, frozen=True):
    """Player account with cumulative race counters."""

    id: str
    username: str
    display_name: str | None = None
    avatar_url: str | None = None
    total_races: int = 0
    total_wins: int = 0
    total_losses: int = 0
    best_lap_time: float | None = None
    total_points: int = 0
    level: int = 1
    experience_points: int = 0
    coins: int = 1000
    is_online: bool = False
    is_banned: bool = False
    ban_reason: str | None = None
    version: int = 0  # bumped on every stats fold (compare-and-swap token)
    created_at: datetime
    updated_at: datetime
    last_login: datetime | None = None


class Lobby(BaseModel, frozen=True):
    id: str
    lobby_name: str
    host_player_id: str
    max_players: int = 4
    current_players: int = 0
    track_name: str
    game_mode: GameMode = GameMode.RACE
    status: LobbyStatus = LobbyStatus.WAITING
    is_private: bool = False
    settings: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @field_validator("settings", mode="before")
    @classmethod
    def decode_settings(cls, value: Any) -> Any:  # noqa: ANN401
        return _decode_blob(value)

    @property
    def is_full(self) -> bool:
        return self.current_players >= self.max_players


class LobbyMembership(BaseModel, frozen=True):
    """One seat in a lobby, present while the player is in it."""

    lobby_id: str
    player_id: str
    car_model: str
    car_color: str = "red"
    is_ready: bool = False
    joined_at: datetime


class Race(BaseModel, frozen=True):
    id: str
    lobby_id: str
    track_name: str
    game_mode: GameMode
    total_laps: int = 3
    expected_results: int | None = None  # racers seated when the race started
    started_at: datetime
    finished_at: datetime | None = None
    duration_seconds: int | None = None
    status: RaceStatus = RaceStatus.IN_PROGRESS
    winner_id: str | None = None
    race_data: dict[str, Any] = Field(default_factory=dict)

    @field_validator("race_data", mode="before")
    @classmethod
    def decode_race_data(cls, value: Any) -> Any:  # noqa: ANN401
        return _decode_blob(value)

    @property
    def is_finalized(self) -> bool:
        return self.status != RaceStatus.IN_PROGRESS


class RaceResult(BaseModel, frozen=True):
    """Immutable outcome of one player in one race."""

    race_id: str
    player_id: str
    position: int | None = None  # None for a DNF without a recorded position
    finish_time: float | None = None
    best_lap_time: float | None = None
    total_laps_completed: int = 0
    points_earned: int = 0
    coins_earned: int = 0
    experience_earned: int = 0
    did_finish: bool = True
    dnf_reason: str | None = None
    car_model: str | None = None
    created_at: datetime


class LeaderboardEntry(BaseModel, frozen=True):
    """A player's best time on one (track, mode)."""

    player_id: str
    track_name: str
    game_mode: GameMode
    best_time: float
    car_model: str | None = None
    achieved_at: datetime
    replay_data: dict[str, Any] | None = None

    @field_validator("replay_data", mode="before")
    @classmethod
    def decode_replay(cls, value: Any) -> Any:  # noqa: ANN401
        return _decode_blob(value)


class Achievement(BaseModel, frozen=True):
    """Catalog entry. ``criteria`` is evaluated elsewhere and stored verbatim."""

    id: str
    name: str
    description: str
    icon_url: str | None = None
    points: int = 10
    rarity: Rarity = Rarity.COMMON
    criteria: dict[str, Any]
    created_at: datetime

    @field_validator("criteria", mode="before")
    @classmethod
    def decode_criteria(cls, value: Any) -> Any:  # noqa: ANN401
        return _decode_blob(value)


class PlayerAchievement(BaseModel, frozen=True):
    player_id: str
    achievement_id: str
    progress: int = 100
    unlocked_at: datetime
