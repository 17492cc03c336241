"""Player records outside the stats fold: registration, presence, moderation, achievements.

Achievement criteria are evaluated by an external service; this module
only stores catalog entries and unlock records and lists them back.
"""

from __future__ import annotations

import sqlite3
import uuid
from typing import TYPE_CHECKING, Any

import structlog

from progression.errors import ConflictError, DanglingReferenceError, DuplicateUsernameError, InputValidationError
from progression.store import fetch_player, to_iso, to_json
from shared.dal.models import Achievement, Player, PlayerAchievement, Rarity

if TYPE_CHECKING:
    from datetime import datetime

logger = structlog.get_logger()

MIN_USERNAME_LENGTH = 3
MAX_USERNAME_LENGTH = 50


class PlayerAccounts:
    def register(
        self,
        conn: sqlite3.Connection,
        username: str,
        *,
        now: datetime,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> Player:
        username = username.strip()
        if not MIN_USERNAME_LENGTH <= len(username) <= MAX_USERNAME_LENGTH:
            raise InputValidationError(
                f"Username must be {MIN_USERNAME_LENGTH}-{MAX_USERNAME_LENGTH} characters, got {len(username)}",
            )
        player_id = str(uuid.uuid4())
        try:
            conn.execute(
                "INSERT INTO players (id, username, display_name, avatar_url, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (player_id, username, display_name, avatar_url, to_iso(now), to_iso(now)),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateUsernameError(f"Username '{username}' already taken") from exc
        logger.info("player registered", player_id=player_id, username=username)
        return self.require(conn, player_id)

    def require(self, conn: sqlite3.Connection, player_id: str) -> Player:
        player = fetch_player(conn, player_id)
        if player is None:
            raise DanglingReferenceError(f"Player '{player_id}' does not exist")
        return player

    def set_presence(self, conn: sqlite3.Connection, player_id: str, *, online: bool, now: datetime) -> Player:
        """Flip the online flag; going online also stamps ``last_login``."""
        self.require(conn, player_id)
        if online:
            conn.execute(
                "UPDATE players SET is_online = 1, last_login = ?, updated_at = ? WHERE id = ?",
                (to_iso(now), to_iso(now), player_id),
            )
        else:
            conn.execute("UPDATE players SET is_online = 0, updated_at = ? WHERE id = ?", (to_iso(now), player_id))
        return self.require(conn, player_id)

    def set_banned(
        self,
        conn: sqlite3.Connection,
        player_id: str,
        *,
        banned: bool,
        now: datetime,
        reason: str | None = None,
    ) -> Player:
        self.require(conn, player_id)
        conn.execute(
            "UPDATE players SET is_banned = ?, ban_reason = ?, updated_at = ? WHERE id = ?",
            (int(banned), reason if banned else None, to_iso(now), player_id),
        )
        logger.info("player moderation changed", player_id=player_id, banned=banned, reason=reason)
        return self.require(conn, player_id)

    def close(self, conn: sqlite3.Connection, player_id: str) -> None:
        """Delete the account; foreign keys cascade to every row the player owns."""
        cursor = conn.execute("DELETE FROM players WHERE id = ?", (player_id,))
        if cursor.rowcount == 0:
            raise DanglingReferenceError(f"Player '{player_id}' does not exist")
        logger.info("player account closed", player_id=player_id)

    def create_achievement(
        self,
        conn: sqlite3.Connection,
        *,
        name: str,
        description: str,
        criteria: dict[str, Any],
        now: datetime,
        points: int = 10,
        rarity: Rarity = Rarity.COMMON,
        icon_url: str | None = None,
    ) -> Achievement:
        achievement = Achievement(
            id=str(uuid.uuid4()),
            name=name,
            description=description,
            icon_url=icon_url,
            points=points,
            rarity=rarity,
            criteria=criteria,
            created_at=now,
        )
        try:
            conn.execute(
                "INSERT INTO achievements (id, name, description, icon_url, points, rarity, criteria, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    achievement.id,
                    achievement.name,
                    achievement.description,
                    achievement.icon_url,
                    achievement.points,
                    achievement.rarity,
                    to_json(achievement.criteria),
                    to_iso(now),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Achievement '{name}' already exists") from exc
        return achievement

    def record_achievement(
        self,
        conn: sqlite3.Connection,
        player_id: str,
        achievement_id: str,
        *,
        now: datetime,
        progress: int = 100,
    ) -> PlayerAchievement:
        """Store an unlock record as produced by the evaluator, replacing earlier progress."""
        if not 0 <= progress <= 100:  # noqa: PLR2004
            raise InputValidationError(f"Progress must be between 0 and 100, got {progress}")
        self.require(conn, player_id)
        if conn.execute("SELECT 1 FROM achievements WHERE id = ?", (achievement_id,)).fetchone() is None:
            raise DanglingReferenceError(f"Achievement '{achievement_id}' does not exist")
        conn.execute(
            "INSERT INTO player_achievements (player_id, achievement_id, progress, unlocked_at) VALUES (?, ?, ?, ?) "
            "ON CONFLICT (player_id, achievement_id) DO UPDATE SET progress = excluded.progress, "
            "unlocked_at = excluded.unlocked_at",
            (player_id, achievement_id, progress, to_iso(now)),
        )
        return PlayerAchievement(player_id=player_id, achievement_id=achievement_id, progress=progress, unlocked_at=now)

    def achievements_of(self, conn: sqlite3.Connection, player_id: str) -> list[PlayerAchievement]:
        rows = conn.execute(
            "SELECT * FROM player_achievements WHERE player_id = ? ORDER BY unlocked_at DESC, achievement_id",
            (player_id,),
        ).fetchall()
        return [PlayerAchievement.model_validate(dict(row)) for row in rows]

    def achievement_count(self, conn: sqlite3.Connection, player_id: str) -> int:
        row = conn.execute(
            "SELECT COUNT(DISTINCT achievement_id) FROM player_achievements WHERE player_id = ?",
            (player_id,),
        ).fetchone()
        return row[0]
