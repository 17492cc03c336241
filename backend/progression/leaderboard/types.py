from datetime import datetime

from pydantic import BaseModel, Field

from shared.dal.models import GameMode


class RankedTime(BaseModel, frozen=True):
    """One row of a track leaderboard."""

    rank: int = Field(ge=1)
    player_id: str
    username: str
    display_name: str | None = None
    avatar_url: str | None = None
    track_name: str
    game_mode: GameMode
    best_time: float
    car_model: str | None = None
    achieved_at: datetime


class RankedPlayer(BaseModel, frozen=True):
    """One row of the global points ranking."""

    rank: int = Field(ge=1)
    player_id: str
    username: str
    display_name: str | None = None
    total_points: int
    level: int
    total_wins: int
    total_races: int
