"""Best-time leaderboards and read-time rankings.

Ranks are never stored. Both projections are ordinal: every entry gets a
distinct rank 1..N, ties resolved by a secondary key so repeated queries
return the same order.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from progression.leaderboard.types import RankedPlayer, RankedTime
from progression.store import to_iso, to_json
from shared.dal.models import LeaderboardEntry, Player

if TYPE_CHECKING:
    import sqlite3
    from collections.abc import Iterable
    from datetime import datetime

    from shared.dal.models import GameMode

logger = structlog.get_logger()


def rank_track_entries(entries: Iterable[LeaderboardEntry]) -> list[tuple[int, LeaderboardEntry]]:
    """Order by best time, then earlier achievement, then player id; number from 1."""
    ordered = sorted(entries, key=lambda e: (e.best_time, e.achieved_at, e.player_id))
    return list(enumerate(ordered, start=1))


def rank_players(players: Iterable[Player]) -> list[tuple[int, Player]]:
    """Order by total points descending, then player id; number from 1."""
    ordered = sorted(players, key=lambda p: (-p.total_points, p.id))
    return list(enumerate(ordered, start=1))


class LeaderboardRanker:
    def record(
        self,
        conn: sqlite3.Connection,
        *,
        player_id: str,
        track_name: str,
        game_mode: GameMode,
        best_time: float,
        achieved_at: datetime,
        car_model: str | None = None,
        replay_data: dict[str, Any] | None = None,
    ) -> LeaderboardEntry | None:
        """Store ``best_time`` if it is the player's first or a strictly faster time.

        Returns the stored entry when it was created or improved, None when
        the existing time is equal or better. An equal time keeps the earlier
        achievement.
        """
        current = self.entry(conn, player_id, track_name, game_mode)

        if current is None:
            conn.execute(
                "INSERT INTO leaderboards "
                "(player_id, track_name, game_mode, best_time, car_model, achieved_at, replay_data) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (player_id, track_name, game_mode, best_time, car_model, to_iso(achieved_at), to_json(replay_data)),
            )
        else:
            cursor = conn.execute(
                "UPDATE leaderboards SET best_time = ?, car_model = ?, achieved_at = ?, replay_data = ? "
                "WHERE player_id = ? AND track_name = ? AND game_mode = ? AND best_time > ?",
                (
                    best_time,
                    car_model,
                    to_iso(achieved_at),
                    to_json(replay_data),
                    player_id,
                    track_name,
                    game_mode,
                    best_time,
                ),
            )
            if cursor.rowcount == 0:
                return None

        logger.info(
            "leaderboard time recorded",
            player_id=player_id,
            track_name=track_name,
            game_mode=game_mode,
            best_time=best_time,
            previous=None if current is None else current.best_time,
        )
        return LeaderboardEntry(
            player_id=player_id,
            track_name=track_name,
            game_mode=game_mode,
            best_time=best_time,
            car_model=car_model,
            achieved_at=achieved_at,
            replay_data=replay_data,
        )

    def entry(
        self,
        conn: sqlite3.Connection,
        player_id: str,
        track_name: str,
        game_mode: GameMode,
    ) -> LeaderboardEntry | None:
        row = conn.execute(
            "SELECT * FROM leaderboards WHERE player_id = ? AND track_name = ? AND game_mode = ?",
            (player_id, track_name, game_mode),
        ).fetchone()
        return None if row is None else LeaderboardEntry.model_validate(dict(row))

    def track_leaderboard(
        self,
        conn: sqlite3.Connection,
        track_name: str,
        game_mode: GameMode,
        limit: int,
    ) -> list[RankedTime]:
        rows = conn.execute(
            "SELECT l.*, p.username, p.display_name, p.avatar_url "
            "FROM leaderboards l JOIN players p ON p.id = l.player_id "
            "WHERE l.track_name = ? AND l.game_mode = ? "
            "ORDER BY l.best_time ASC, l.achieved_at ASC, l.player_id ASC LIMIT ?",
            (track_name, game_mode, limit),
        ).fetchall()
        profiles = {row["player_id"]: row for row in rows}
        entries = [LeaderboardEntry.model_validate(dict(row)) for row in rows]
        return [
            RankedTime(
                rank=rank,
                player_id=entry.player_id,
                username=profiles[entry.player_id]["username"],
                display_name=profiles[entry.player_id]["display_name"],
                avatar_url=profiles[entry.player_id]["avatar_url"],
                track_name=entry.track_name,
                game_mode=entry.game_mode,
                best_time=entry.best_time,
                car_model=entry.car_model,
                achieved_at=entry.achieved_at,
            )
            for rank, entry in rank_track_entries(entries)
        ]

    def global_ranking(self, conn: sqlite3.Connection, limit: int) -> list[RankedPlayer]:
        rows = conn.execute(
            "SELECT * FROM players ORDER BY total_points DESC, id ASC LIMIT ?",
            (limit,),
        ).fetchall()
        players = [Player.model_validate(dict(row)) for row in rows]
        return [
            RankedPlayer(
                rank=rank,
                player_id=player.id,
                username=player.username,
                display_name=player.display_name,
                total_points=player.total_points,
                level=player.level,
                total_wins=player.total_wins,
                total_races=player.total_races,
            )
            for rank, player in rank_players(players)
        ]

    def global_rank_of(self, conn: sqlite3.Connection, player: Player) -> int:
        """Rank ``player`` would get in ``global_ranking``, without loading the whole table."""
        row = conn.execute(
            "SELECT COUNT(*) FROM players WHERE total_points > ? OR (total_points = ? AND id < ?)",
            (player.total_points, player.total_points, player.id),
        ).fetchone()
        return row[0] + 1
