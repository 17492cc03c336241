"""Tests for the progression facade: result submission, lobbies and read models."""

import asyncio
import logging
from unittest.mock import patch

import pytest

from progression.errors import (
    ConcurrencyRetryError,
    DanglingReferenceError,
    InputValidationError,
    InvalidTransitionError,
    LobbyFullError,
    RaceFinalizedError,
    SubmissionRejectedError,
    TransientStoreError,
)
from progression.results.service import win_rate
from progression.tests.helpers import make_result, open_race, register_players
from shared.dal.models import LobbyStatus, RaceStatus
from shared.db import StoreBusyError


class TestWinRate:
    def test_no_races(self):
        assert win_rate(0, 0) == 0.0

    def test_ratio_rounded_to_two_places(self):
        assert win_rate(1, 3) == 0.33
        assert win_rate(2, 2) == 1.0


class TestSubmitResults:
    async def test_batch_folds_stats_and_finalizes(self, service, clock):
        alice, bob = await register_players(service, "alice", "bob")
        race = await open_race(service, [alice, bob])
        clock.advance(240)

        ack = await service.submit_results(
            race.id,
            [make_result(alice, 1, experience_earned=150), make_result(bob, 2, best_lap_time=61.0)],
        )

        assert ack.accepted == [alice.id, bob.id]
        assert ack.race_status == RaceStatus.FINISHED
        assert ack.winner_id == alice.id
        assert sorted(ack.records_set) == sorted([alice.id, bob.id])

        alice_now = await service.get_player(alice.id)
        bob_now = await service.get_player(bob.id)
        assert (alice_now.total_races, alice_now.total_wins, alice_now.total_losses) == (1, 1, 0)
        assert (bob_now.total_races, bob_now.total_wins, bob_now.total_losses) == (1, 0, 1)
        assert alice_now.level == 2
        assert alice_now.coins == 1005

        finished = await service.get_race(race.id)
        assert finished.status == RaceStatus.FINISHED
        assert finished.duration_seconds == 240
        assert finished.winner_id == alice.id
        lobby = await service.get_lobby(race.lobby_id)
        assert lobby.status == LobbyStatus.FINISHED

    async def test_partial_submission_keeps_race_open(self, service):
        alice, bob = await register_players(service, "alice", "bob")
        race = await open_race(service, [alice, bob])

        ack = await service.submit_results(race.id, [make_result(bob, 2)])

        assert ack.race_status == RaceStatus.IN_PROGRESS
        assert ack.winner_id is None
        assert (await service.get_race(race.id)).status == RaceStatus.IN_PROGRESS

    async def test_resubmission_is_rejected_as_duplicate(self, service):
        alice, bob = await register_players(service, "alice", "bob")
        race = await open_race(service, [alice, bob])
        batch = [make_result(alice, 1), make_result(bob, 2)]
        await service.submit_results(race.id, batch)

        with pytest.raises(SubmissionRejectedError) as exc_info:
            await service.submit_results(race.id, batch)

        assert exc_info.value.codes == {"duplicate_result"}
        assert (await service.get_player(alice.id)).total_races == 1
        assert (await service.get_player(bob.id)).total_races == 1

    async def test_batch_is_all_or_nothing(self, service):
        alice, bob = await register_players(service, "alice", "bob")
        race = await open_race(service, [alice, bob])
        ghost = bob.model_copy(update={"id": "ghost"})

        with pytest.raises(SubmissionRejectedError) as exc_info:
            await service.submit_results(race.id, [make_result(alice, 1), make_result(ghost, 2)])

        failures = exc_info.value.failures
        assert [(f.player_id, f.code) for f in failures] == [("ghost", "not_found")]
        assert (await service.get_player(alice.id)).total_races == 0
        assert await service.track_leaderboard("monza", "race") == []

    async def test_every_failure_is_reported(self, service):
        alice, bob, carol = await register_players(service, "alice", "bob", "carol")
        race = await open_race(service, [alice, bob, carol], total_laps=3)
        await service.ban_player(carol.id, "cheating")

        with pytest.raises(SubmissionRejectedError) as exc_info:
            await service.submit_results(
                race.id,
                [
                    make_result(alice, 1, total_laps_completed=4),
                    make_result(bob, 1),
                    make_result(carol, 3),
                    make_result(bob, 2),
                ],
            )

        assert [(f.player_id, f.code) for f in exc_info.value.failures] == [
            (alice.id, "invalid_input"),
            (bob.id, "position_taken"),
            (carol.id, "player_banned"),
            (bob.id, "invalid_input"),
        ]

    async def test_only_entrants_may_submit(self, service):
        alice, bob, mallory = await register_players(service, "alice", "bob", "mallory")
        race = await open_race(service, [alice, bob])

        with pytest.raises(SubmissionRejectedError) as exc_info:
            await service.submit_results(race.id, [make_result(mallory, 1), make_result(alice, 2)])

        assert [(f.player_id, f.code) for f in exc_info.value.failures] == [(mallory.id, "not_in_race")]
        assert (await service.get_race(race.id)).status == RaceStatus.IN_PROGRESS

        ack = await service.submit_results(race.id, [make_result(alice, 2), make_result(bob, 1)])
        assert ack.race_status == RaceStatus.FINISHED
        assert ack.winner_id == bob.id

    async def test_player_who_left_before_start_is_not_an_entrant(self, service):
        alice, bob, carol = await register_players(service, "alice", "bob", "carol")
        lobby = await service.create_lobby(alice.id, "Cup", "monza", car_model="gt3")
        await service.join_lobby(lobby.id, bob.id, car_model="gt3")
        await service.join_lobby(lobby.id, carol.id, car_model="gt3")
        await service.leave_lobby(lobby.id, carol.id)
        race = await service.start_race(lobby.id)

        with pytest.raises(SubmissionRejectedError) as exc_info:
            await service.submit_results(race.id, [make_result(carol, 1)])

        assert exc_info.value.codes == {"not_in_race"}
        assert race.expected_results == 2

    async def test_position_taken_across_submissions(self, service):
        alice, bob = await register_players(service, "alice", "bob")
        race = await open_race(service, [alice, bob])
        await service.submit_results(race.id, [make_result(alice, 1)])

        with pytest.raises(SubmissionRejectedError) as exc_info:
            await service.submit_results(race.id, [make_result(bob, 1)])
        assert exc_info.value.codes == {"position_taken"}

    async def test_dnf_without_position(self, service):
        alice, bob = await register_players(service, "alice", "bob")
        race = await open_race(service, [alice, bob])

        await service.submit_results(
            race.id,
            [
                make_result(alice, 1),
                make_result(bob, None, did_finish=False, dnf_reason="crashed", best_lap_time=None, finish_time=None),
            ],
        )

        bob_now = await service.get_player(bob.id)
        assert (bob_now.total_races, bob_now.total_wins, bob_now.total_losses) == (1, 0, 0)
        assert bob_now.best_lap_time is None

    async def test_unknown_race(self, service):
        (alice,) = await register_players(service, "alice")

        with pytest.raises(SubmissionRejectedError) as exc_info:
            await service.submit_results("missing-race", [make_result(alice, 1)])
        assert exc_info.value.codes == {"not_found"}

    async def test_finalized_race_rejects_new_results(self, service):
        alice, bob, carol = await register_players(service, "alice", "bob", "carol")
        race = await open_race(service, [alice, bob])
        await service.submit_results(race.id, [make_result(alice, 1), make_result(bob, 2)])

        with pytest.raises(SubmissionRejectedError) as exc_info:
            await service.submit_results(race.id, [make_result(carol, 3)])
        assert exc_info.value.codes == {"race_finalized"}

    async def test_empty_batch_rejected(self, service):
        with pytest.raises(InputValidationError):
            await service.submit_results("race", [])

    async def test_concurrent_submissions_for_distinct_players(self, service):
        players = await register_players(service, "alice", "bob", "carol", "dave")
        race = await open_race(service, players)

        acks = await asyncio.gather(
            *(
                service.submit_results(race.id, [make_result(player, position)])
                for position, player in enumerate(players, start=1)
            ),
        )

        assert [ack.race_status for ack in acks].count(RaceStatus.FINISHED) == 1
        refreshed = [await service.get_player(p.id) for p in players]
        assert [p.total_races for p in refreshed] == [1, 1, 1, 1]
        assert sum(p.total_wins for p in refreshed) == 1
        assert (await service.get_race(race.id)).status == RaceStatus.FINISHED

    async def test_lost_version_race_surfaces_unwrapped(self, service):
        alice, bob = await register_players(service, "alice", "bob")
        race = await open_race(service, [alice, bob])

        with (
            patch(
                "progression.stats.aggregator.StatsAggregator.fold",
                side_effect=ConcurrencyRetryError("changed concurrently"),
            ),
            pytest.raises(ConcurrencyRetryError),
        ):
            await service.submit_results(race.id, [make_result(alice, 1)])

        ack = await service.submit_results(race.id, [make_result(alice, 1)])
        assert ack.accepted == [alice.id]

    async def test_store_busy_is_transient(self, service, db):
        with (
            patch.object(db, "transaction", side_effect=StoreBusyError("database is locked")),
            pytest.raises(TransientStoreError),
        ):
            await service.get_player("anyone")


class TestAbandonRace:
    async def test_abandon_closes_race_and_lobby(self, service):
        alice, bob = await register_players(service, "alice", "bob")
        race = await open_race(service, [alice, bob])

        abandoned = await service.abandon_race(race.id)

        assert abandoned.status == RaceStatus.ABANDONED
        assert (await service.get_lobby(race.lobby_id)).status == LobbyStatus.CANCELLED
        with pytest.raises(SubmissionRejectedError) as exc_info:
            await service.submit_results(race.id, [make_result(alice, 1)])
        assert exc_info.value.codes == {"race_finalized"}

    async def test_abandon_twice(self, service):
        alice, bob = await register_players(service, "alice", "bob")
        race = await open_race(service, [alice, bob])
        await service.abandon_race(race.id)

        with pytest.raises(RaceFinalizedError):
            await service.abandon_race(race.id)

    async def test_abandon_unknown(self, service):
        with pytest.raises(DanglingReferenceError):
            await service.abandon_race("missing")


class TestLobbies:
    async def test_concurrent_joins_for_last_seat(self, service):
        host, bob, carol = await register_players(service, "host", "bob", "carol")
        lobby = await service.create_lobby(host.id, "Duel", "monza", car_model="gt3", max_players=2)

        outcomes = await asyncio.gather(
            service.join_lobby(lobby.id, bob.id, car_model="gt3"),
            service.join_lobby(lobby.id, carol.id, car_model="gt3"),
            return_exceptions=True,
        )

        failures = [o for o in outcomes if isinstance(o, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], LobbyFullError)
        assert (await service.get_lobby(lobby.id)).current_players == 2
        assert len(await service.lobby_members(lobby.id)) == 2

    async def test_leave_and_ready(self, service):
        host, bob = await register_players(service, "host", "bob")
        lobby = await service.create_lobby(host.id, "Cup", "spa", car_model="gt3")
        await service.join_lobby(lobby.id, bob.id, car_model="rally", car_color="green")

        ready = await service.set_ready(lobby.id, bob.id, ready=True)
        assert ready.is_ready is True

        assert await service.leave_lobby(lobby.id, bob.id) is True
        assert await service.leave_lobby(lobby.id, bob.id) is False
        assert (await service.get_lobby(lobby.id)).current_players == 1

    async def test_transition_by_name(self, service):
        (host,) = await register_players(service, "host")
        lobby = await service.create_lobby(host.id, "Cup", "spa", car_model="gt3")

        starting = await service.transition_lobby(lobby.id, "starting")
        assert starting.status == LobbyStatus.STARTING
        with pytest.raises(InvalidTransitionError):
            await service.transition_lobby(lobby.id, "exploded")

    async def test_unknown_game_mode(self, service):
        (host,) = await register_players(service, "host")
        with pytest.raises(InputValidationError, match="game mode"):
            await service.create_lobby(host.id, "Cup", "spa", car_model="gt3", game_mode="demolition")

    async def test_active_lobbies_hide_other_players_private_lobbies(self, service, clock):
        alice, bob = await register_players(service, "alice", "bob")
        public = await service.create_lobby(alice.id, "Open", "monza", car_model="gt3")
        clock.advance(10)
        private = await service.create_lobby(bob.id, "Secret", "spa", car_model="gt3", is_private=True)
        clock.advance(10)
        started = await service.create_lobby(alice.id, "Racing", "imola", car_model="gt3")
        await service.start_race(started.id)

        anonymous = await service.active_lobbies()
        as_bob = await service.active_lobbies(viewer_id=bob.id)

        assert [lobby.lobby_id for lobby in anonymous] == [public.id]
        assert [lobby.lobby_id for lobby in as_bob] == [private.id, public.id]
        assert as_bob[0].host_username == "bob"


class TestReadModels:
    async def test_player_profile(self, service):
        alice, bob, carol = await register_players(service, "alice", "bob", "carol")
        first = await open_race(service, [alice, bob, carol])
        await service.submit_results(
            first.id,
            [make_result(alice, 1, points_earned=30), make_result(bob, 2, points_earned=20), make_result(carol, 3)],
        )
        second = await open_race(service, [bob, alice])
        await service.submit_results(
            second.id,
            [make_result(bob, 1, points_earned=30), make_result(alice, 2, points_earned=5)],
        )
        achievement = await service.create_achievement("Podium", "Finish top three", {"position_max": 3})
        await service.record_achievement(alice.id, achievement.id)

        profile = await service.player_profile(alice.id)

        assert profile.total_races == 2
        assert profile.win_rate == 0.5
        assert profile.total_points == 35
        assert profile.total_achievements == 1
        assert profile.global_rank == 2
        assert (await service.player_profile(bob.id)).global_rank == 1

    async def test_profile_unknown_player(self, service):
        with pytest.raises(DanglingReferenceError):
            await service.player_profile("ghost")

    async def test_track_leaderboard_ranks(self, service, clock):
        alice, bob, carol = await register_players(service, "alice", "bob", "carol")
        race = await open_race(service, [alice, bob, carol], track="suzuka")
        clock.advance(100)
        await service.submit_results(
            race.id,
            [
                make_result(alice, 1, best_lap_time=91.2),
                make_result(bob, 2, best_lap_time=90.8),
                make_result(carol, 3, best_lap_time=None),
            ],
        )

        board = await service.track_leaderboard("suzuka", "race")

        assert [(row.rank, row.username, row.best_time) for row in board] == [(1, "bob", 90.8), (2, "alice", 91.2)]
        with pytest.raises(InputValidationError):
            await service.track_leaderboard("suzuka", "demolition")

    async def test_global_ranking(self, service):
        alice, bob = await register_players(service, "alice", "bob")
        race = await open_race(service, [alice, bob])
        await service.submit_results(
            race.id,
            [make_result(alice, 2, points_earned=5), make_result(bob, 1, points_earned=25)],
        )

        ranking = await service.global_ranking()

        assert [(r.rank, r.username, r.total_points) for r in ranking] == [(1, "bob", 25), (2, "alice", 5)]

    async def test_recent_races_lists_finished_only(self, service, clock):
        alice, bob = await register_players(service, "alice", "bob")
        finished = await open_race(service, [alice, bob], track="monza")
        clock.advance(60)
        await service.submit_results(finished.id, [make_result(alice, 1), make_result(bob, 2)])
        await open_race(service, [bob, alice], track="spa")

        recent = await service.recent_races()

        assert [r.race_id for r in recent] == [finished.id]
        assert recent[0].winner_username == "alice"
        assert recent[0].total_racers == 2
        assert recent[0].duration_seconds == 60


class TestAccounts:
    async def test_close_account_removes_owned_rows(self, service):
        alice, bob = await register_players(service, "alice", "bob")
        race = await open_race(service, [alice, bob])
        await service.submit_results(race.id, [make_result(alice, 2), make_result(bob, 1, best_lap_time=59.0)])

        await service.close_account(bob.id)

        with pytest.raises(DanglingReferenceError):
            await service.get_player(bob.id)
        assert [row.username for row in await service.track_leaderboard("monza", "race")] == ["alice"]
        recent = await service.recent_races()
        assert recent[0].winner_id is None
        assert recent[0].total_racers == 1

    async def test_presence(self, service, clock):
        (alice,) = await register_players(service, "alice")
        clock.advance(30)

        online = await service.set_presence(alice.id, online=True)

        assert online.is_online is True
        assert online.last_login == clock.now

    async def test_banned_player_cannot_join(self, service):
        host, bob = await register_players(service, "host", "bob")
        lobby = await service.create_lobby(host.id, "Cup", "spa", car_model="gt3")
        await service.ban_player(bob.id, "abuse")

        with pytest.raises(InputValidationError):
            await service.join_lobby(lobby.id, bob.id, car_model="gt3")

    async def test_unknown_rarity(self, service):
        with pytest.raises(InputValidationError, match="rarity"):
            await service.create_achievement("Odd", "odd", {}, rarity="mythic")

    async def test_player_achievements_unknown_player(self, service):
        with pytest.raises(DanglingReferenceError):
            await service.player_achievements("ghost")

    async def test_closing_host_account_removes_hosted_lobby(self, service):
        host, bob = await register_players(service, "host", "bob")
        lobby = await service.create_lobby(host.id, "Cup", "spa", car_model="gt3")
        await service.join_lobby(lobby.id, bob.id, car_model="gt3")
        race = await service.start_race(lobby.id)
        await service.submit_results(race.id, [make_result(bob, 1)])

        await service.close_account(host.id)

        with pytest.raises(DanglingReferenceError):
            await service.get_lobby(lobby.id)
        with pytest.raises(DanglingReferenceError):
            await service.get_race(race.id)
        assert await service.lobby_members(lobby.id) == []
        assert (await service.get_player(bob.id)).total_races == 1

    async def test_closing_guest_account_frees_seat(self, service):
        host, bob = await register_players(service, "host", "bob")
        lobby = await service.create_lobby(host.id, "Cup", "spa", car_model="gt3")
        await service.join_lobby(lobby.id, bob.id, car_model="gt3")

        await service.close_account(bob.id)

        remaining = await service.get_lobby(lobby.id)
        assert remaining.host_player_id == host.id
        assert remaining.current_players == 1
        assert [m.player_id for m in await service.lobby_members(lobby.id)] == [host.id]


class TestLogging:
    async def test_rejection_is_logged_with_failures(self, service, caplog):
        alice, bob = await register_players(service, "alice", "bob")
        race = await open_race(service, [alice, bob])
        ghost = bob.model_copy(update={"id": "ghost"})

        with caplog.at_level(logging.WARNING), pytest.raises(SubmissionRejectedError):
            await service.submit_results(race.id, [make_result(alice, 1), make_result(ghost, 2)])

        assert "race results rejected" in caplog.text
        assert "ghost:not_found" in caplog.text

    async def test_level_up_is_logged(self, service, caplog):
        alice, bob = await register_players(service, "alice", "bob")
        race = await open_race(service, [alice, bob])

        with caplog.at_level(logging.INFO):
            await service.submit_results(race.id, [make_result(alice, 1, experience_earned=100)])

        assert "player levelled up" in caplog.text
