"""Row lookups shared by the engine components.

Every helper runs on the connection of the caller's unit of work, so the
reads see the same snapshot the caller's writes will commit against.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from shared.dal.models import Lobby, LobbyMembership, Player, Race, RaceResult

if TYPE_CHECKING:
    import sqlite3
    from datetime import datetime


def to_iso(moment: datetime) -> str:
    """Fixed-width ISO timestamp so TEXT ordering matches chronological ordering."""
    return moment.isoformat(timespec="microseconds")


def to_json(blob: dict[str, Any] | None) -> str | None:
    return None if blob is None else json.dumps(blob, separators=(",", ":"), sort_keys=True)


def fetch_player(conn: sqlite3.Connection, player_id: str) -> Player | None:
    row = conn.execute("SELECT * FROM players WHERE id = ?", (player_id,)).fetchone()
    return None if row is None else Player.model_validate(dict(row))


def fetch_lobby(conn: sqlite3.Connection, lobby_id: str) -> Lobby | None:
    row = conn.execute("SELECT * FROM lobbies WHERE id = ?", (lobby_id,)).fetchone()
    return None if row is None else Lobby.model_validate(dict(row))


def fetch_membership(conn: sqlite3.Connection, lobby_id: str, player_id: str) -> LobbyMembership | None:
    row = conn.execute(
        "SELECT * FROM lobby_players WHERE lobby_id = ? AND player_id = ?",
        (lobby_id, player_id),
    ).fetchone()
    return None if row is None else LobbyMembership.model_validate(dict(row))


def fetch_race(conn: sqlite3.Connection, race_id: str) -> Race | None:
    row = conn.execute("SELECT * FROM races WHERE id = ?", (race_id,)).fetchone()
    return None if row is None else Race.model_validate(dict(row))


def fetch_race_results(conn: sqlite3.Connection, race_id: str) -> list[RaceResult]:
    rows = conn.execute(
        "SELECT * FROM race_results WHERE race_id = ? ORDER BY position IS NULL, position, player_id",
        (race_id,),
    ).fetchall()
    return [RaceResult.model_validate(dict(row)) for row in rows]
