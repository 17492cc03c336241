"""Tests for leaderboard recording and read-time rankings."""

from datetime import UTC, datetime, timedelta

import pytest

from progression.leaderboard.ranker import LeaderboardRanker, rank_players, rank_track_entries
from progression.players.accounts import PlayerAccounts
from shared.dal.models import GameMode, LeaderboardEntry, Player

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=UTC)


def _entry(player_id: str, best_time: float, minutes: int = 0) -> LeaderboardEntry:
    return LeaderboardEntry(
        player_id=player_id,
        track_name="monza",
        game_mode=GameMode.RACE,
        best_time=best_time,
        achieved_at=NOW + timedelta(minutes=minutes),
    )


def _player(player_id: str, points: int) -> Player:
    return Player(id=player_id, username=f"user-{player_id}", total_points=points, created_at=NOW, updated_at=NOW)


class TestRankTrackEntries:
    def test_orders_by_time(self):
        ranked = rank_track_entries([_entry("a", 62.0), _entry("b", 60.5), _entry("c", 61.0)])
        assert [(rank, e.player_id) for rank, e in ranked] == [(1, "b"), (2, "c"), (3, "a")]

    def test_tie_broken_by_earlier_achievement(self):
        ranked = rank_track_entries([_entry("a", 60.0, minutes=5), _entry("b", 60.0, minutes=1)])
        assert [e.player_id for _, e in ranked] == ["b", "a"]

    def test_full_tie_broken_by_player_id(self):
        ranked = rank_track_entries([_entry("z", 60.0), _entry("m", 60.0)])
        assert [e.player_id for _, e in ranked] == ["m", "z"]

    def test_ranks_are_gapless(self):
        entries = [_entry(f"p{i}", 60.0 + (i % 3), minutes=i) for i in range(10)]
        ranked = rank_track_entries(entries)
        assert [rank for rank, _ in ranked] == list(range(1, 11))
        times = [e.best_time for _, e in ranked]
        assert times == sorted(times)

    def test_empty(self):
        assert rank_track_entries([]) == []


class TestRankPlayers:
    def test_orders_by_points_descending_then_id(self):
        ranked = rank_players([_player("b", 10), _player("a", 10), _player("c", 30)])
        assert [(rank, p.id) for rank, p in ranked] == [(1, "c"), (2, "a"), (3, "b")]


class TestLeaderboardRanker:
    @pytest.fixture
    def players(self, db):
        accounts = PlayerAccounts()
        with db.transaction() as conn:
            return [accounts.register(conn, name, now=NOW) for name in ("alice", "bob", "carol")]

    def test_first_time_is_recorded(self, db, players):
        ranker = LeaderboardRanker()
        with db.transaction() as conn:
            entry = ranker.record(
                conn,
                player_id=players[0].id,
                track_name="monza",
                game_mode=GameMode.RACE,
                best_time=61.5,
                achieved_at=NOW,
                replay_data={"frames": 3},
            )

        assert entry is not None
        with db.transaction(write=False) as conn:
            stored = ranker.entry(conn, players[0].id, "monza", GameMode.RACE)
        assert stored == entry
        assert stored.replay_data == {"frames": 3}

    def test_only_strictly_faster_time_replaces(self, db, players):
        ranker = LeaderboardRanker()
        player_id = players[0].id
        with db.transaction() as conn:
            ranker.record(
                conn,
                player_id=player_id,
                track_name="monza",
                game_mode=GameMode.RACE,
                best_time=61.5,
                achieved_at=NOW,
            )
            slower = ranker.record(
                conn,
                player_id=player_id,
                track_name="monza",
                game_mode=GameMode.RACE,
                best_time=62.0,
                achieved_at=NOW + timedelta(minutes=1),
            )
            equal = ranker.record(
                conn,
                player_id=player_id,
                track_name="monza",
                game_mode=GameMode.RACE,
                best_time=61.5,
                achieved_at=NOW + timedelta(minutes=2),
            )
            faster = ranker.record(
                conn,
                player_id=player_id,
                track_name="monza",
                game_mode=GameMode.RACE,
                best_time=60.9,
                achieved_at=NOW + timedelta(minutes=3),
            )
            stored = ranker.entry(conn, player_id, "monza", GameMode.RACE)

        assert slower is None
        assert equal is None
        assert faster is not None
        assert stored.best_time == 60.9
        assert stored.achieved_at == NOW + timedelta(minutes=3)

    def test_modes_are_separate_boards(self, db, players):
        ranker = LeaderboardRanker()
        with db.transaction() as conn:
            for mode, time in ((GameMode.RACE, 61.0), (GameMode.TIME_TRIAL, 58.0)):
                ranker.record(
                    conn,
                    player_id=players[0].id,
                    track_name="monza",
                    game_mode=mode,
                    best_time=time,
                    achieved_at=NOW,
                )
            race_board = ranker.track_leaderboard(conn, "monza", GameMode.RACE, limit=10)
            trial_board = ranker.track_leaderboard(conn, "monza", GameMode.TIME_TRIAL, limit=10)

        assert [r.best_time for r in race_board] == [61.0]
        assert [r.best_time for r in trial_board] == [58.0]

    def test_track_leaderboard_ranks_and_limits(self, db, players):
        ranker = LeaderboardRanker()
        times = {players[0].id: 62.0, players[1].id: 60.0, players[2].id: 60.0}
        with db.transaction() as conn:
            for minute, (player_id, time) in enumerate(times.items()):
                ranker.record(
                    conn,
                    player_id=player_id,
                    track_name="spa",
                    game_mode=GameMode.RACE,
                    best_time=time,
                    achieved_at=NOW + timedelta(minutes=minute),
                )
            board = ranker.track_leaderboard(conn, "spa", GameMode.RACE, limit=10)
            top = ranker.track_leaderboard(conn, "spa", GameMode.RACE, limit=2)

        assert [(r.rank, r.username) for r in board] == [(1, "bob"), (2, "carol"), (3, "alice")]
        assert [r.username for r in top] == ["bob", "carol"]

    def test_global_ranking_and_rank_of_agree(self, db, players):
        ranker = LeaderboardRanker()
        points = {players[0].id: 50, players[1].id: 120, players[2].id: 50}
        with db.transaction() as conn:
            for player_id, value in points.items():
                conn.execute("UPDATE players SET total_points = ? WHERE id = ?", (value, player_id))
            ranking = ranker.global_ranking(conn, limit=10)
            refreshed = PlayerAccounts()
            ranks_of = {p.id: ranker.global_rank_of(conn, refreshed.require(conn, p.id)) for p in players}

        assert [r.rank for r in ranking] == [1, 2, 3]
        assert ranking[0].player_id == players[1].id
        assert {r.player_id: r.rank for r in ranking} == ranks_of
