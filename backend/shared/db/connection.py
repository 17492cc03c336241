"""SQLite database connection, schema and unit-of-work transactions."""

from __future__ import annotations

import contextlib
import os
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = structlog.get_logger()

_DB_FILE_PERMISSIONS = 0o600

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS players (
    id TEXT PRIMARY KEY,
    username TEXT NOT NULL CHECK (length(username) >= 3),
    display_name TEXT,
    avatar_url TEXT,
    total_races INTEGER NOT NULL DEFAULT 0,
    total_wins INTEGER NOT NULL DEFAULT 0,
    total_losses INTEGER NOT NULL DEFAULT 0,
    best_lap_time REAL,
    total_points INTEGER NOT NULL DEFAULT 0,
    level INTEGER NOT NULL DEFAULT 1,
    experience_points INTEGER NOT NULL DEFAULT 0 CHECK (experience_points >= 0),
    coins INTEGER NOT NULL DEFAULT 1000,
    is_online INTEGER NOT NULL DEFAULT 0,
    is_banned INTEGER NOT NULL DEFAULT 0,
    ban_reason TEXT,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_login TEXT,
    CHECK (total_wins + total_losses <= total_races)
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_players_username
    ON players (username COLLATE NOCASE);
CREATE INDEX IF NOT EXISTS idx_players_total_points
    ON players (total_points DESC, id);

CREATE TABLE IF NOT EXISTS lobbies (
    id TEXT PRIMARY KEY,
    lobby_name TEXT NOT NULL,
    host_player_id TEXT NOT NULL REFERENCES players (id) ON DELETE CASCADE,
    max_players INTEGER NOT NULL DEFAULT 4 CHECK (max_players BETWEEN 2 AND 8),
    current_players INTEGER NOT NULL DEFAULT 0,
    track_name TEXT NOT NULL,
    game_mode TEXT NOT NULL DEFAULT 'race'
        CHECK (game_mode IN ('race', 'time_trial', 'elimination', 'drift')),
    status TEXT NOT NULL DEFAULT 'waiting'
        CHECK (status IN ('waiting', 'starting', 'in_progress', 'finished', 'cancelled')),
    is_private INTEGER NOT NULL DEFAULT 0,
    settings TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT,
    CHECK (current_players BETWEEN 0 AND max_players)
);

CREATE INDEX IF NOT EXISTS idx_lobbies_status ON lobbies (status, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_lobbies_host_player ON lobbies (host_player_id);

CREATE TABLE IF NOT EXISTS lobby_players (
    lobby_id TEXT NOT NULL REFERENCES lobbies (id) ON DELETE CASCADE,
    player_id TEXT NOT NULL REFERENCES players (id) ON DELETE CASCADE,
    car_model TEXT NOT NULL,
    car_color TEXT NOT NULL DEFAULT 'red',
    is_ready INTEGER NOT NULL DEFAULT 0,
    joined_at TEXT NOT NULL,
    PRIMARY KEY (lobby_id, player_id)
);

CREATE INDEX IF NOT EXISTS idx_lobby_players_player ON lobby_players (player_id);

CREATE TABLE IF NOT EXISTS races (
    id TEXT PRIMARY KEY,
    lobby_id TEXT NOT NULL REFERENCES lobbies (id) ON DELETE CASCADE,
    track_name TEXT NOT NULL,
    game_mode TEXT NOT NULL,
    total_laps INTEGER NOT NULL DEFAULT 3,
    expected_results INTEGER,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    duration_seconds INTEGER,
    status TEXT NOT NULL DEFAULT 'in_progress'
        CHECK (status IN ('in_progress', 'finished', 'abandoned')),
    winner_id TEXT REFERENCES players (id) ON DELETE SET NULL,
    race_data TEXT NOT NULL DEFAULT '{}'
);

CREATE INDEX IF NOT EXISTS idx_races_lobby ON races (lobby_id);
CREATE INDEX IF NOT EXISTS idx_races_finished_at ON races (status, finished_at DESC);

CREATE TABLE IF NOT EXISTS race_entrants (
    race_id TEXT NOT NULL REFERENCES races (id) ON DELETE CASCADE,
    player_id TEXT NOT NULL REFERENCES players (id) ON DELETE CASCADE,
    PRIMARY KEY (race_id, player_id)
);

CREATE TABLE IF NOT EXISTS race_results (
    race_id TEXT NOT NULL REFERENCES races (id) ON DELETE CASCADE,
    player_id TEXT NOT NULL REFERENCES players (id) ON DELETE CASCADE,
    position INTEGER CHECK (position IS NULL OR position >= 1),
    finish_time REAL,
    best_lap_time REAL,
    total_laps_completed INTEGER NOT NULL DEFAULT 0,
    points_earned INTEGER NOT NULL DEFAULT 0,
    coins_earned INTEGER NOT NULL DEFAULT 0,
    experience_earned INTEGER NOT NULL DEFAULT 0,
    did_finish INTEGER NOT NULL DEFAULT 1,
    dnf_reason TEXT,
    car_model TEXT,
    created_at TEXT NOT NULL,
    PRIMARY KEY (race_id, player_id)
);

CREATE INDEX IF NOT EXISTS idx_race_results_player ON race_results (player_id);

CREATE TABLE IF NOT EXISTS leaderboards (
    player_id TEXT NOT NULL REFERENCES players (id) ON DELETE CASCADE,
    track_name TEXT NOT NULL,
    game_mode TEXT NOT NULL,
    best_time REAL NOT NULL,
    car_model TEXT,
    achieved_at TEXT NOT NULL,
    replay_data TEXT,
    PRIMARY KEY (player_id, track_name, game_mode)
);

CREATE INDEX IF NOT EXISTS idx_leaderboards_track
    ON leaderboards (track_name, game_mode, best_time ASC, achieved_at ASC);

CREATE TABLE IF NOT EXISTS achievements (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL,
    icon_url TEXT,
    points INTEGER NOT NULL DEFAULT 10,
    rarity TEXT NOT NULL DEFAULT 'common'
        CHECK (rarity IN ('common', 'rare', 'epic', 'legendary')),
    criteria TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS player_achievements (
    player_id TEXT NOT NULL REFERENCES players (id) ON DELETE CASCADE,
    achievement_id TEXT NOT NULL REFERENCES achievements (id) ON DELETE CASCADE,
    progress INTEGER NOT NULL DEFAULT 100 CHECK (progress BETWEEN 0 AND 100),
    unlocked_at TEXT NOT NULL,
    PRIMARY KEY (player_id, achievement_id)
);
"""

_BUSY_MARKERS = ("database is locked", "database is busy", "database table is locked")


class StoreBusyError(Exception):
    """The store did not grant a lock within the busy timeout."""


class Database:
    """SQLite database wrapper with schema management and per-unit-of-work connections.

    Every unit of work runs on its own connection so concurrent callers in
    worker threads never share a cursor. Write units start with
    ``BEGIN IMMEDIATE``; the store then serializes writers and the busy
    timeout bounds how long a writer waits for its turn.
    """

    def __init__(self, path: str | Path, busy_timeout_ms: int = 5000) -> None:
        self._path = str(path)
        self._busy_timeout_ms = busy_timeout_ms
        self._conn: sqlite3.Connection | None = None

    @property
    def path(self) -> str:
        return self._path

    @property
    def connection(self) -> sqlite3.Connection:
        """Return the bootstrap connection or raise if disconnected."""
        if self._conn is None:
            raise RuntimeError("Database is not connected")
        return self._conn

    def connect(self) -> None:
        """Open the database, apply pragmas, create schema, and harden file permissions."""
        Path(self._path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = self._open()
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA_SQL)

        self._harden_permissions()
        logger.info("database ready", path=self._path)

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={int(self._busy_timeout_ms)}")
        return conn

    @contextlib.contextmanager
    def transaction(self, *, write: bool = True) -> Iterator[sqlite3.Connection]:
        """Run a unit of work in its own transaction on a fresh connection.

        Commits when the block exits normally and rolls back on any
        exception. Lock timeouts surface as StoreBusyError.
        """
        if self._conn is None:
            raise RuntimeError("Database is not connected")
        try:
            conn = self._open()
        except sqlite3.OperationalError as exc:
            raise StoreBusyError(str(exc)) from exc
        try:
            conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.OperationalError as exc:
            if any(marker in str(exc).lower() for marker in _BUSY_MARKERS):
                raise StoreBusyError(str(exc)) from exc
            raise
        finally:
            conn.close()

    def _harden_permissions(self) -> None:
        """Set owner-only permissions on the database file and its WAL/SHM siblings (best effort)."""
        if os.name != "posix":  # pragma: no cover
            return
        for suffix in ("", "-wal", "-shm"):
            p = Path(self._path + suffix)
            if p.exists():
                try:
                    p.chmod(_DB_FILE_PERMISSIONS)
                except OSError:
                    logger.warning("could not set file permissions", permissions=oct(_DB_FILE_PERMISSIONS), path=str(p))
