"""Builders shared by progression tests."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from progression.results.types import ResultSubmission

if TYPE_CHECKING:
    from progression.results.service import ProgressionService
    from shared.dal.models import Player, Race

START = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 1.0) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


async def register_players(service: ProgressionService, *usernames: str) -> list[Player]:
    return [await service.register_player(name) for name in usernames]


async def open_race(
    service: ProgressionService,
    players: list[Player],
    *,
    track: str = "monza",
    game_mode: str = "race",
    total_laps: int = 3,
) -> Race:
    """Seat ``players`` in a fresh lobby hosted by the first one and start a race."""
    host, *others = players
    lobby = await service.create_lobby(
        host.id,
        f"{host.username}'s lobby",
        track,
        car_model="gt3",
        game_mode=game_mode,
        max_players=max(2, len(players)),
    )
    for player in others:
        await service.join_lobby(lobby.id, player.id, car_model="gt3")
    return await service.start_race(lobby.id, total_laps=total_laps)


def make_result(player: Player, position: int | None = 1, **overrides: Any) -> ResultSubmission:  # noqa: ANN401
    fields: dict[str, Any] = {
        "player_id": player.id,
        "position": position,
        "finish_time": 180.0,
        "best_lap_time": 60.0,
        "total_laps_completed": 3,
        "points_earned": 10,
        "coins_earned": 5,
        "experience_earned": 50,
    }
    fields.update(overrides)
    return ResultSubmission(**fields)
