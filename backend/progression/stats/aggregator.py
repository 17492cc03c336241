"""Folds race results into cumulative player counters."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from progression.errors import ConcurrencyRetryError, DanglingReferenceError
from progression.stats.level import level_for
from progression.store import fetch_player, to_iso

if TYPE_CHECKING:
    import sqlite3
    from datetime import datetime

    from shared.dal.models import Player, RaceResult

logger = structlog.get_logger()


def apply_result(player: Player, result: RaceResult, *, now: datetime) -> Player:
    """Return ``player`` with one result folded in.

    A DNF without a recorded position counts as neither a win nor a loss;
    any recorded position past first counts as a loss, DNF or not.
    """
    best_lap = player.best_lap_time
    if result.best_lap_time is not None and (best_lap is None or result.best_lap_time < best_lap):
        best_lap = result.best_lap_time

    experience = player.experience_points + result.experience_earned
    return player.model_copy(
        update={
            "total_races": player.total_races + 1,
            "total_wins": player.total_wins + (1 if result.position == 1 else 0),
            "total_losses": player.total_losses + (1 if result.position is not None and result.position > 1 else 0),
            "best_lap_time": best_lap,
            "total_points": player.total_points + result.points_earned,
            "coins": player.coins + result.coins_earned,
            "experience_points": experience,
            "level": level_for(experience),
            "updated_at": now,
        },
    )


class StatsAggregator:
    """Serializes per-player folds with a version compare-and-swap.

    The read and the conditional write happen on the caller's connection;
    when another writer bumped the version in between, the fold is
    recomputed from the fresh row, up to ``max_attempts`` times.

    Write units already hold the store's writer lock (``BEGIN IMMEDIATE``)
    and a batch never holds two results for one player, so in this engine
    the version check never loses. It is a guard layered on top of
    that lock for writers that update ``players`` without it.
    """

    def __init__(self, max_attempts: int = 3) -> None:
        self._max_attempts = max_attempts

    def fold(self, conn: sqlite3.Connection, result: RaceResult, *, now: datetime) -> Player:
        for attempt in range(1, self._max_attempts + 1):
            player = fetch_player(conn, result.player_id)
            if player is None:
                logger.warning("stats fold discarded, player missing", player_id=result.player_id, race_id=result.race_id)
                raise DanglingReferenceError(f"Player '{result.player_id}' does not exist")

            folded = apply_result(player, result, now=now)
            cursor = conn.execute(
                "UPDATE players SET "
                "total_races = ?, total_wins = ?, total_losses = ?, best_lap_time = ?, "
                "total_points = ?, coins = ?, experience_points = ?, level = ?, "
                "updated_at = ?, version = version + 1 "
                "WHERE id = ? AND version = ?",
                (
                    folded.total_races,
                    folded.total_wins,
                    folded.total_losses,
                    folded.best_lap_time,
                    folded.total_points,
                    folded.coins,
                    folded.experience_points,
                    folded.level,
                    to_iso(now),
                    player.id,
                    player.version,
                ),
            )
            if cursor.rowcount == 1:
                if folded.level != player.level:
                    logger.info("player levelled up", player_id=player.id, level=folded.level)
                return folded.model_copy(update={"version": player.version + 1})

            logger.warning("stats fold lost version race", player_id=player.id, attempt=attempt)

        raise ConcurrencyRetryError(
            f"Stats for player '{result.player_id}' changed concurrently {self._max_attempts} times",
        )
