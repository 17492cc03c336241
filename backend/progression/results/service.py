"""Progression facade: the entry point for race results, lobby seats and read models.

Every public method is one unit of work. It runs in a worker thread on its
own connection, so the only suspension point is the await on the store.
"""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from progression.errors import (
    ConcurrencyRetryError,
    DanglingReferenceError,
    DuplicateResultError,
    InputValidationError,
    InvalidTransitionError,
    NotInRaceError,
    PlayerBannedError,
    PositionTakenError,
    ProgressionError,
    RaceFinalizedError,
    ResultFailure,
    SubmissionRejectedError,
    TransientStoreError,
)
from progression.leaderboard.ranker import LeaderboardRanker
from progression.lobbies.membership import OPEN_STATUSES, LobbyMembershipTracker
from progression.players.accounts import PlayerAccounts
from progression.results.types import ActiveLobby, PlayerProfile, RecentRace, ResultSubmission, SubmissionAck
from progression.settings import ProgressionSettings
from progression.stats.aggregator import StatsAggregator
from progression.store import fetch_player, fetch_race, to_iso
from shared.dal.models import GameMode, LobbyStatus, RaceResult, RaceStatus, Rarity
from shared.db import StoreBusyError

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from progression.leaderboard.types import RankedPlayer, RankedTime
    from shared.dal.models import (
        Achievement,
        LeaderboardEntry,
        Lobby,
        LobbyMembership,
        Player,
        PlayerAchievement,
        Race,
    )
    from shared.db import Database

logger = structlog.get_logger()

WIN_RATE_PRECISION = 2


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def win_rate(wins: int, races: int) -> float:
    if races == 0:
        return 0.0
    return round(wins / races, WIN_RATE_PRECISION)


def _parse_mode(game_mode: str) -> GameMode:
    try:
        return GameMode(game_mode)
    except ValueError as exc:
        raise InputValidationError(f"Unknown game mode '{game_mode}'") from exc


class ProgressionService:
    def __init__(
        self,
        db: Database,
        settings: ProgressionSettings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = db
        self._settings = settings or ProgressionSettings()
        self._clock = clock
        self._stats = StatsAggregator(max_attempts=self._settings.max_fold_attempts)
        self._ranker = LeaderboardRanker()
        self._lobbies = LobbyMembershipTracker()
        self._accounts = PlayerAccounts()

    async def _run[T](self, work: Callable[[sqlite3.Connection], T], *, write: bool = True) -> T:
        def unit() -> T:
            with self._db.transaction(write=write) as conn:
                return work(conn)

        try:
            return await asyncio.to_thread(unit)
        except StoreBusyError as exc:
            logger.warning("store busy, unit of work abandoned", error=str(exc))
            raise TransientStoreError("Store is busy, retry later") from exc

    # -- race results ---------------------------------------------------------

    async def submit_results(self, race_id: str, results: Sequence[ResultSubmission]) -> SubmissionAck:
        """Record a batch of results for one race, all or nothing.

        Every result is validated before anything is written; failures are
        collected and raised together as SubmissionRejectedError. Each
        accepted result is stored, folded into the player's stats and, when
        it carries a best lap, offered to the track leaderboard.
        """
        if not results:
            raise InputValidationError("At least one result is required")
        now = self._clock()

        def work(conn: sqlite3.Connection) -> SubmissionAck:
            race = self._validate_batch(conn, race_id, results)

            records_set: list[str] = []
            for submission in results:
                stored = self._store_result(conn, race, submission, now=now)
                if stored is not None:
                    records_set.append(submission.player_id)

            winner_id = next((r.player_id for r in results if r.position == 1), None)
            if winner_id is not None:
                conn.execute("UPDATE races SET winner_id = ? WHERE id = ?", (winner_id, race_id))

            status = self._maybe_finalize(conn, race, now=now)
            return SubmissionAck(
                race_id=race_id,
                accepted=[r.player_id for r in results],
                records_set=records_set,
                race_status=status,
                winner_id=winner_id or race.winner_id,
            )

        ack = await self._run(work)
        logger.info(
            "race results recorded",
            race_id=race_id,
            accepted=len(ack.accepted),
            records_set=len(ack.records_set),
            race_status=ack.race_status,
        )
        return ack

    def _validate_batch(self, conn: sqlite3.Connection, race_id: str, results: Sequence[ResultSubmission]) -> Race:
        race = fetch_race(conn, race_id)
        if race is None:
            raise SubmissionRejectedError(
                race_id,
                [
                    ResultFailure(r.player_id, DanglingReferenceError.code, f"Race '{race_id}' does not exist")
                    for r in results
                ],
            )

        taken_positions = {
            row["position"]
            for row in conn.execute(
                "SELECT position FROM race_results WHERE race_id = ? AND position IS NOT NULL",
                (race_id,),
            )
        }
        failures: list[ResultFailure] = []
        seen_players: set[str] = set()
        for result in results:
            failure = self._validate_result(conn, race, result, seen_players, taken_positions)
            if failure is not None:
                failures.append(failure)
            seen_players.add(result.player_id)
            if result.position is not None:
                taken_positions.add(result.position)

        if failures:
            logger.warning(
                "race results rejected",
                race_id=race_id,
                failures=[f"{f.player_id}:{f.code}" for f in failures],
            )
            raise SubmissionRejectedError(race_id, failures)
        return race

    def _validate_result(
        self,
        conn: sqlite3.Connection,
        race: Race,
        result: ResultSubmission,
        seen_players: set[str],
        taken_positions: set[int],
    ) -> ResultFailure | None:
        player_id = result.player_id
        if player_id in seen_players:
            return ResultFailure(player_id, InputValidationError.code, "Player appears more than once in the batch")
        existing = conn.execute(
            "SELECT 1 FROM race_results WHERE race_id = ? AND player_id = ?",
            (race.id, player_id),
        ).fetchone()
        if existing is not None:
            return ResultFailure(player_id, DuplicateResultError.code, "Result already recorded for this race")
        if race.is_finalized:
            return ResultFailure(player_id, RaceFinalizedError.code, f"Race is already {race.status}")
        player = fetch_player(conn, player_id)
        if player is None:
            return ResultFailure(player_id, DanglingReferenceError.code, f"Player '{player_id}' does not exist")
        if player.is_banned:
            return ResultFailure(player_id, PlayerBannedError.code, f"Player '{player_id}' is banned")
        entrant = conn.execute(
            "SELECT 1 FROM race_entrants WHERE race_id = ? AND player_id = ?",
            (race.id, player_id),
        ).fetchone()
        if entrant is None:
            return ResultFailure(player_id, NotInRaceError.code, f"Player '{player_id}' did not start this race")
        if result.position is not None and result.position in taken_positions:
            return ResultFailure(player_id, PositionTakenError.code, f"Position {result.position} is already taken")
        if result.total_laps_completed > race.total_laps:
            return ResultFailure(
                player_id,
                InputValidationError.code,
                f"Completed {result.total_laps_completed} laps of a {race.total_laps}-lap race",
            )
        return None

    def _store_result(
        self,
        conn: sqlite3.Connection,
        race: Race,
        submission: ResultSubmission,
        *,
        now: datetime,
    ) -> LeaderboardEntry | None:
        """Insert one result, fold it into stats and offer its lap to the leaderboard.

        Returns the leaderboard entry when the lap set a record, else None.
        """
        result = RaceResult(
            race_id=race.id,
            created_at=now,
            **submission.model_dump(exclude={"replay_data"}),
        )
        try:
            try:
                conn.execute(
                    "INSERT INTO race_results (race_id, player_id, position, finish_time, best_lap_time, "
                    "total_laps_completed, points_earned, coins_earned, experience_earned, did_finish, "
                    "dnf_reason, car_model, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        result.race_id,
                        result.player_id,
                        result.position,
                        result.finish_time,
                        result.best_lap_time,
                        result.total_laps_completed,
                        result.points_earned,
                        result.coins_earned,
                        result.experience_earned,
                        int(result.did_finish),
                        result.dnf_reason,
                        result.car_model,
                        to_iso(now),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise DuplicateResultError(f"Result for player '{result.player_id}' already recorded") from exc

            self._stats.fold(conn, result, now=now)
            if result.best_lap_time is None:
                return None
            return self._ranker.record(
                conn,
                player_id=result.player_id,
                track_name=race.track_name,
                game_mode=race.game_mode,
                best_time=result.best_lap_time,
                achieved_at=now,
                car_model=result.car_model,
                replay_data=submission.replay_data,
            )
        except ConcurrencyRetryError:
            raise
        except ProgressionError as exc:
            raise SubmissionRejectedError(race.id, [ResultFailure(result.player_id, exc.code, str(exc))]) from exc

    def _maybe_finalize(self, conn: sqlite3.Connection, race: Race, *, now: datetime) -> RaceStatus:
        stored = conn.execute("SELECT COUNT(*) FROM race_results WHERE race_id = ?", (race.id,)).fetchone()[0]
        if race.expected_results is not None and stored < race.expected_results:
            return RaceStatus.IN_PROGRESS

        duration = max(0, int((now - race.started_at).total_seconds()))
        conn.execute(
            "UPDATE races SET status = ?, finished_at = ?, duration_seconds = ? WHERE id = ?",
            (RaceStatus.FINISHED, to_iso(now), duration, race.id),
        )
        conn.execute(
            "UPDATE lobbies SET status = ?, finished_at = ? WHERE id = ? AND status = ?",
            (LobbyStatus.FINISHED, to_iso(now), race.lobby_id, LobbyStatus.IN_PROGRESS),
        )
        logger.info("race finished", race_id=race.id, racers=stored, duration_seconds=duration)
        return RaceStatus.FINISHED

    async def abandon_race(self, race_id: str) -> Race:
        now = self._clock()

        def work(conn: sqlite3.Connection) -> Race:
            race = fetch_race(conn, race_id)
            if race is None:
                raise DanglingReferenceError(f"Race '{race_id}' does not exist")
            if race.is_finalized:
                raise RaceFinalizedError(f"Race '{race_id}' is already {race.status}")
            conn.execute(
                "UPDATE races SET status = ?, finished_at = ? WHERE id = ?",
                (RaceStatus.ABANDONED, to_iso(now), race_id),
            )
            conn.execute(
                "UPDATE lobbies SET status = ?, finished_at = ? WHERE id = ? AND status = ?",
                (LobbyStatus.CANCELLED, to_iso(now), race.lobby_id, LobbyStatus.IN_PROGRESS),
            )
            return race.model_copy(update={"status": RaceStatus.ABANDONED, "finished_at": now})

        race = await self._run(work)
        logger.info("race abandoned", race_id=race_id)
        return race

    async def get_race(self, race_id: str) -> Race:
        def work(conn: sqlite3.Connection) -> Race:
            race = fetch_race(conn, race_id)
            if race is None:
                raise DanglingReferenceError(f"Race '{race_id}' does not exist")
            return race

        return await self._run(work, write=False)

    # -- lobbies --------------------------------------------------------------

    async def create_lobby(
        self,
        host_player_id: str,
        lobby_name: str,
        track_name: str,
        *,
        car_model: str,
        game_mode: str = GameMode.RACE,
        max_players: int = 4,
        is_private: bool = False,
        settings: dict[str, Any] | None = None,
    ) -> Lobby:
        now = self._clock()
        return await self._run(
            lambda conn: self._lobbies.create_lobby(
                conn,
                host_player_id=host_player_id,
                lobby_name=lobby_name,
                track_name=track_name,
                car_model=car_model,
                now=now,
                game_mode=_parse_mode(game_mode),
                max_players=max_players,
                is_private=is_private,
                settings=settings,
            ),
        )

    async def join_lobby(
        self,
        lobby_id: str,
        player_id: str,
        *,
        car_model: str,
        car_color: str = "red",
    ) -> LobbyMembership:
        now = self._clock()
        return await self._run(
            lambda conn: self._lobbies.join(conn, lobby_id, player_id, car_model=car_model, car_color=car_color, now=now),
        )

    async def leave_lobby(self, lobby_id: str, player_id: str) -> bool:
        return await self._run(lambda conn: self._lobbies.leave(conn, lobby_id, player_id))

    async def set_ready(self, lobby_id: str, player_id: str, *, ready: bool) -> LobbyMembership:
        return await self._run(lambda conn: self._lobbies.set_ready(conn, lobby_id, player_id, ready=ready))

    async def lobby_members(self, lobby_id: str) -> list[LobbyMembership]:
        return await self._run(lambda conn: self._lobbies.members(conn, lobby_id), write=False)

    async def get_lobby(self, lobby_id: str) -> Lobby:
        return await self._run(lambda conn: self._lobbies.require_lobby(conn, lobby_id), write=False)

    async def transition_lobby(self, lobby_id: str, status: str) -> Lobby:
        try:
            target = LobbyStatus(status)
        except ValueError as exc:
            raise InvalidTransitionError(f"Unknown lobby status '{status}'") from exc
        now = self._clock()
        return await self._run(lambda conn: self._lobbies.transition(conn, lobby_id, target, now=now))

    async def start_race(self, lobby_id: str, *, total_laps: int = 3, race_data: dict[str, Any] | None = None) -> Race:
        now = self._clock()
        return await self._run(
            lambda conn: self._lobbies.start_race(conn, lobby_id, now=now, total_laps=total_laps, race_data=race_data),
        )

    async def active_lobbies(self, viewer_id: str | None = None) -> list[ActiveLobby]:
        """Open lobbies the viewer may see: public ones plus private ones they host."""

        def work(conn: sqlite3.Connection) -> list[ActiveLobby]:
            statuses = sorted(OPEN_STATUSES)
            rows = conn.execute(
                "SELECT l.*, p.username AS host_username, p.display_name AS host_display_name "
                "FROM lobbies l JOIN players p ON p.id = l.host_player_id "
                f"WHERE l.status IN ({', '.join('?' * len(statuses))}) "  # noqa: S608
                "AND (l.is_private = 0 OR l.host_player_id = ?) "
                "ORDER BY l.created_at DESC, l.id",
                (*statuses, viewer_id),
            ).fetchall()
            return [
                ActiveLobby(
                    lobby_id=row["id"],
                    lobby_name=row["lobby_name"],
                    track_name=row["track_name"],
                    game_mode=row["game_mode"],
                    max_players=row["max_players"],
                    current_players=row["current_players"],
                    status=row["status"],
                    is_private=row["is_private"],
                    created_at=row["created_at"],
                    host_player_id=row["host_player_id"],
                    host_username=row["host_username"],
                    host_display_name=row["host_display_name"],
                )
                for row in rows
            ]

        return await self._run(work, write=False)

    # -- read models ----------------------------------------------------------

    async def player_profile(self, player_id: str) -> PlayerProfile:
        def work(conn: sqlite3.Connection) -> PlayerProfile:
            player = self._accounts.require(conn, player_id)
            return PlayerProfile(
                player_id=player.id,
                username=player.username,
                display_name=player.display_name,
                avatar_url=player.avatar_url,
                total_races=player.total_races,
                total_wins=player.total_wins,
                total_losses=player.total_losses,
                best_lap_time=player.best_lap_time,
                total_points=player.total_points,
                level=player.level,
                experience_points=player.experience_points,
                coins=player.coins,
                is_online=player.is_online,
                win_rate=win_rate(player.total_wins, player.total_races),
                total_achievements=self._accounts.achievement_count(conn, player.id),
                global_rank=self._ranker.global_rank_of(conn, player),
            )

        return await self._run(work, write=False)

    async def track_leaderboard(self, track_name: str, game_mode: str, limit: int | None = None) -> list[RankedTime]:
        mode = _parse_mode(game_mode)
        limit = limit or self._settings.leaderboard_limit
        return await self._run(lambda conn: self._ranker.track_leaderboard(conn, track_name, mode, limit), write=False)

    async def global_ranking(self, limit: int | None = None) -> list[RankedPlayer]:
        limit = limit or self._settings.leaderboard_limit
        return await self._run(lambda conn: self._ranker.global_ranking(conn, limit), write=False)

    async def recent_races(self, limit: int | None = None) -> list[RecentRace]:
        limit = limit or self._settings.recent_races_limit

        def work(conn: sqlite3.Connection) -> list[RecentRace]:
            rows = conn.execute(
                "SELECT r.*, p.username AS winner_username, p.display_name AS winner_display_name, "
                "(SELECT COUNT(*) FROM race_results rr WHERE rr.race_id = r.id) AS total_racers "
                "FROM races r LEFT JOIN players p ON p.id = r.winner_id "
                "WHERE r.status = ? ORDER BY r.finished_at DESC, r.id LIMIT ?",
                (RaceStatus.FINISHED, limit),
            ).fetchall()
            return [
                RecentRace(
                    race_id=row["id"],
                    track_name=row["track_name"],
                    game_mode=row["game_mode"],
                    total_laps=row["total_laps"],
                    started_at=row["started_at"],
                    finished_at=row["finished_at"],
                    duration_seconds=row["duration_seconds"],
                    winner_id=row["winner_id"],
                    winner_username=row["winner_username"],
                    winner_display_name=row["winner_display_name"],
                    total_racers=row["total_racers"],
                )
                for row in rows
            ]

        return await self._run(work, write=False)

    # -- players and achievements ---------------------------------------------

    async def register_player(
        self,
        username: str,
        *,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> Player:
        now = self._clock()
        return await self._run(
            lambda conn: self._accounts.register(
                conn,
                username,
                now=now,
                display_name=display_name,
                avatar_url=avatar_url,
            ),
        )

    async def get_player(self, player_id: str) -> Player:
        return await self._run(lambda conn: self._accounts.require(conn, player_id), write=False)

    async def set_presence(self, player_id: str, *, online: bool) -> Player:
        now = self._clock()
        return await self._run(lambda conn: self._accounts.set_presence(conn, player_id, online=online, now=now))

    async def ban_player(self, player_id: str, reason: str | None = None, *, banned: bool = True) -> Player:
        now = self._clock()
        return await self._run(
            lambda conn: self._accounts.set_banned(conn, player_id, banned=banned, reason=reason, now=now),
        )

    async def close_account(self, player_id: str) -> None:
        """Delete the player and everything they own.

        Lobbies the player hosts go with the account, along with their seats,
        races and results. Seats in other lobbies are given up through the
        membership tracker first so their occupancy stays exact.
        """

        def work(conn: sqlite3.Connection) -> None:
            self._accounts.require(conn, player_id)
            for lobby_id in self._lobbies.lobbies_of(conn, player_id, exclude_hosted=True):
                self._lobbies.leave(conn, lobby_id, player_id)
            self._accounts.close(conn, player_id)

        await self._run(work)

    async def create_achievement(
        self,
        name: str,
        description: str,
        criteria: dict[str, Any],
        *,
        points: int = 10,
        rarity: str = Rarity.COMMON,
        icon_url: str | None = None,
    ) -> Achievement:
        try:
            parsed_rarity = Rarity(rarity)
        except ValueError as exc:
            raise InputValidationError(f"Unknown rarity '{rarity}'") from exc
        now = self._clock()
        return await self._run(
            lambda conn: self._accounts.create_achievement(
                conn,
                name=name,
                description=description,
                criteria=criteria,
                now=now,
                points=points,
                rarity=parsed_rarity,
                icon_url=icon_url,
            ),
        )

    async def record_achievement(self, player_id: str, achievement_id: str, progress: int = 100) -> PlayerAchievement:
        now = self._clock()
        return await self._run(
            lambda conn: self._accounts.record_achievement(conn, player_id, achievement_id, progress=progress, now=now),
        )

    async def player_achievements(self, player_id: str) -> list[PlayerAchievement]:
        def work(conn: sqlite3.Connection) -> list[PlayerAchievement]:
            self._accounts.require(conn, player_id)
            return self._accounts.achievements_of(conn, player_id)

        return await self._run(work, write=False)
