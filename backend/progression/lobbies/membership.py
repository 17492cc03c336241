"""Lobby membership and occupancy.

``current_players`` is only ever changed here, by exactly one in the same
unit of work that inserts or deletes the membership row, so it always
equals the number of live rows for the lobby.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Any

import structlog

from progression.errors import (
    DanglingReferenceError,
    DuplicateMembershipError,
    InputValidationError,
    InvalidTransitionError,
    LobbyClosedError,
    LobbyFullError,
    PlayerBannedError,
)
from progression.store import fetch_lobby, fetch_membership, fetch_player, to_iso, to_json
from shared.dal.models import GameMode, Lobby, LobbyMembership, LobbyStatus, Player, Race, RaceStatus

if TYPE_CHECKING:
    import sqlite3
    from datetime import datetime

logger = structlog.get_logger()

MIN_LOBBY_CAPACITY = 2
MAX_LOBBY_CAPACITY = 8

OPEN_STATUSES = frozenset({LobbyStatus.WAITING, LobbyStatus.STARTING})

_TRANSITIONS: dict[LobbyStatus, frozenset[LobbyStatus]] = {
    LobbyStatus.WAITING: frozenset({LobbyStatus.STARTING, LobbyStatus.CANCELLED}),
    LobbyStatus.STARTING: frozenset({LobbyStatus.WAITING, LobbyStatus.IN_PROGRESS, LobbyStatus.CANCELLED}),
    LobbyStatus.IN_PROGRESS: frozenset({LobbyStatus.FINISHED, LobbyStatus.CANCELLED}),
    LobbyStatus.FINISHED: frozenset(),
    LobbyStatus.CANCELLED: frozenset(),
}


def can_transition(current: LobbyStatus, target: LobbyStatus) -> bool:
    return target in _TRANSITIONS[current]


class LobbyMembershipTracker:
    def create_lobby(
        self,
        conn: sqlite3.Connection,
        *,
        host_player_id: str,
        lobby_name: str,
        track_name: str,
        car_model: str,
        now: datetime,
        game_mode: GameMode = GameMode.RACE,
        max_players: int = 4,
        is_private: bool = False,
        settings: dict[str, Any] | None = None,
    ) -> Lobby:
        """Create a lobby and seat its host in it (occupancy 1)."""
        if not MIN_LOBBY_CAPACITY <= max_players <= MAX_LOBBY_CAPACITY:
            raise InputValidationError(
                f"max_players must be between {MIN_LOBBY_CAPACITY} and {MAX_LOBBY_CAPACITY}, got {max_players}",
            )
        if not lobby_name.strip():
            raise InputValidationError("Lobby name must not be empty")
        if not track_name.strip():
            raise InputValidationError("Track name must not be empty")
        try:
            mode = GameMode(game_mode)
        except ValueError as exc:
            raise InputValidationError(f"Unknown game mode '{game_mode}'") from exc

        self._require_player(conn, host_player_id)

        lobby_id = str(uuid.uuid4())
        conn.execute(
            "INSERT INTO lobbies (id, lobby_name, host_player_id, max_players, current_players, "
            "track_name, game_mode, is_private, settings, created_at) VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?, ?)",
            (
                lobby_id,
                lobby_name.strip(),
                host_player_id,
                max_players,
                track_name.strip(),
                mode,
                int(is_private),
                to_json(settings or {}),
                to_iso(now),
            ),
        )

        self.join(conn, lobby_id, host_player_id, car_model=car_model, now=now)
        logger.info("lobby created", lobby_id=lobby_id, host_player_id=host_player_id, track_name=track_name)
        return self.require_lobby(conn, lobby_id)

    def join(
        self,
        conn: sqlite3.Connection,
        lobby_id: str,
        player_id: str,
        *,
        car_model: str,
        now: datetime,
        car_color: str = "red",
    ) -> LobbyMembership:
        """Seat ``player_id`` in the lobby and bump occupancy by one.

        Raises DuplicateMembershipError when already seated and
        LobbyFullError when no seat is left; neither leaves a row behind.
        """
        lobby = self.require_lobby(conn, lobby_id)
        if lobby.status not in OPEN_STATUSES:
            raise LobbyClosedError(f"Lobby '{lobby_id}' is {lobby.status} and not accepting players")
        player = self._require_player(conn, player_id)
        if player.is_banned:
            raise PlayerBannedError(f"Player '{player_id}' is banned")
        if not car_model.strip():
            raise InputValidationError("Car model must not be empty")
        if fetch_membership(conn, lobby_id, player_id) is not None:
            raise DuplicateMembershipError(f"Player '{player_id}' is already in lobby '{lobby_id}'")
        if lobby.is_full:
            raise LobbyFullError(f"Lobby '{lobby_id}' is full ({lobby.max_players} players)")

        conn.execute(
            "INSERT INTO lobby_players (lobby_id, player_id, car_model, car_color, joined_at) VALUES (?, ?, ?, ?, ?)",
            (lobby_id, player_id, car_model, car_color, to_iso(now)),
        )

        cursor = conn.execute(
            "UPDATE lobbies SET current_players = current_players + 1 WHERE id = ? AND current_players < max_players",
            (lobby_id,),
        )
        if cursor.rowcount == 0:
            # Occupancy moved since the lobby was read; the caller's unit of work rolls back the insert above.
            raise LobbyFullError(f"Lobby '{lobby_id}' is full ({lobby.max_players} players)")

        logger.info("player joined lobby", lobby_id=lobby_id, player_id=player_id)
        return LobbyMembership(
            lobby_id=lobby_id,
            player_id=player_id,
            car_model=car_model,
            car_color=car_color,
            joined_at=now,
        )

    def leave(self, conn: sqlite3.Connection, lobby_id: str, player_id: str) -> bool:
        """Remove the membership and drop occupancy by one. No membership is a no-op.

        When the host leaves, the longest-seated remaining member becomes
        host; an open lobby left empty is cancelled.
        """
        cursor = conn.execute(
            "DELETE FROM lobby_players WHERE lobby_id = ? AND player_id = ?",
            (lobby_id, player_id),
        )
        if cursor.rowcount == 0:
            return False
        conn.execute(
            "UPDATE lobbies SET current_players = current_players - 1 WHERE id = ? AND current_players > 0",
            (lobby_id,),
        )

        lobby = self.require_lobby(conn, lobby_id)
        if lobby.host_player_id == player_id:
            successor = conn.execute(
                "SELECT player_id FROM lobby_players WHERE lobby_id = ? ORDER BY joined_at, player_id LIMIT 1",
                (lobby_id,),
            ).fetchone()
            if successor is not None:
                conn.execute(
                    "UPDATE lobbies SET host_player_id = ? WHERE id = ?",
                    (successor["player_id"], lobby_id),
                )
                logger.info("lobby host transferred", lobby_id=lobby_id, host_player_id=successor["player_id"])
        if lobby.current_players == 0 and lobby.status in OPEN_STATUSES:
            conn.execute("UPDATE lobbies SET status = ? WHERE id = ?", (LobbyStatus.CANCELLED, lobby_id))
            logger.info("empty lobby cancelled", lobby_id=lobby_id)

        logger.info("player left lobby", lobby_id=lobby_id, player_id=player_id)
        return True

    def set_ready(self, conn: sqlite3.Connection, lobby_id: str, player_id: str, *, ready: bool) -> LobbyMembership:
        membership = fetch_membership(conn, lobby_id, player_id)
        if membership is None:
            raise DanglingReferenceError(f"Player '{player_id}' is not in lobby '{lobby_id}'")
        conn.execute(
            "UPDATE lobby_players SET is_ready = ? WHERE lobby_id = ? AND player_id = ?",
            (int(ready), lobby_id, player_id),
        )
        return membership.model_copy(update={"is_ready": ready})

    def members(self, conn: sqlite3.Connection, lobby_id: str) -> list[LobbyMembership]:
        rows = conn.execute(
            "SELECT * FROM lobby_players WHERE lobby_id = ? ORDER BY joined_at, player_id",
            (lobby_id,),
        ).fetchall()
        return [LobbyMembership.model_validate(dict(row)) for row in rows]

    def lobbies_of(self, conn: sqlite3.Connection, player_id: str, *, exclude_hosted: bool = False) -> list[str]:
        query = "SELECT lp.lobby_id FROM lobby_players lp JOIN lobbies l ON l.id = lp.lobby_id WHERE lp.player_id = ?"
        if exclude_hosted:
            query += " AND l.host_player_id != lp.player_id"
        rows = conn.execute(f"{query} ORDER BY lp.joined_at, lp.lobby_id", (player_id,)).fetchall()  # noqa: S608
        return [row["lobby_id"] for row in rows]

    def transition(
        self,
        conn: sqlite3.Connection,
        lobby_id: str,
        target: LobbyStatus,
        *,
        now: datetime,
    ) -> Lobby:
        lobby = self.require_lobby(conn, lobby_id)
        if not can_transition(lobby.status, target):
            raise InvalidTransitionError(f"Lobby '{lobby_id}' cannot move from {lobby.status} to {target}")

        stamps = ""
        if target == LobbyStatus.IN_PROGRESS:
            stamps = ", started_at = :now"
        elif target in {LobbyStatus.FINISHED, LobbyStatus.CANCELLED}:
            stamps = ", finished_at = :now"
        conn.execute(
            f"UPDATE lobbies SET status = :status{stamps} WHERE id = :id",  # noqa: S608
            {"status": target, "now": to_iso(now), "id": lobby_id},
        )
        logger.info("lobby status changed", lobby_id=lobby_id, status=target, previous=lobby.status)
        return self.require_lobby(conn, lobby_id)

    def start_race(
        self,
        conn: sqlite3.Connection,
        lobby_id: str,
        *,
        now: datetime,
        total_laps: int = 3,
        race_data: dict[str, Any] | None = None,
    ) -> Race:
        """Put the lobby in progress and open a race expecting one result per seated player.

        The seated players are recorded as the race's entrants; only they may
        submit results for it.
        """
        if total_laps < 1:
            raise InputValidationError(f"total_laps must be at least 1, got {total_laps}")
        lobby = self.require_lobby(conn, lobby_id)
        if lobby.status == LobbyStatus.WAITING:
            lobby = self.transition(conn, lobby_id, LobbyStatus.STARTING, now=now)
        if lobby.current_players == 0:
            raise InputValidationError(f"Lobby '{lobby_id}' has no players")
        lobby = self.transition(conn, lobby_id, LobbyStatus.IN_PROGRESS, now=now)

        race = Race(
            id=str(uuid.uuid4()),
            lobby_id=lobby_id,
            track_name=lobby.track_name,
            game_mode=lobby.game_mode,
            total_laps=total_laps,
            expected_results=lobby.current_players,
            started_at=now,
            status=RaceStatus.IN_PROGRESS,
            race_data=race_data or {},
        )
        conn.execute(
            "INSERT INTO races (id, lobby_id, track_name, game_mode, total_laps, expected_results, "
            "started_at, status, race_data) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                race.id,
                race.lobby_id,
                race.track_name,
                race.game_mode,
                race.total_laps,
                race.expected_results,
                to_iso(race.started_at),
                race.status,
                to_json(race.race_data),
            ),
        )
        conn.execute(
            "INSERT INTO race_entrants (race_id, player_id) "
            "SELECT ?, player_id FROM lobby_players WHERE lobby_id = ?",
            (race.id, lobby_id),
        )
        logger.info("race started", race_id=race.id, lobby_id=lobby_id, racers=race.expected_results)
        return race

    @staticmethod
    def require_lobby(conn: sqlite3.Connection, lobby_id: str) -> Lobby:
        lobby = fetch_lobby(conn, lobby_id)
        if lobby is None:
            raise DanglingReferenceError(f"Lobby '{lobby_id}' does not exist")
        return lobby

    @staticmethod
    def _require_player(conn: sqlite3.Connection, player_id: str) -> Player:
        player = fetch_player(conn, player_id)
        if player is None:
            raise DanglingReferenceError(f"Player '{player_id}' does not exist")
        return player
