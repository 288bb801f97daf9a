from __future__ import annotations

import asyncio
import random
from datetime import timedelta
from unittest import IsolatedAsyncioTestCase, mock

from .catalog_fixtures import new_user_id, seed_catalog
from .db import InMemoryDatabase
from .errors import (
    AuthorizationError,
    ExpiredError,
    InternalError,
    NotFoundError,
    StateError,
    ValidationError,
)
from .game import GameController
from .models import GameStatus
from .selector import SongSelector
from .utils import now


class GameTestCase(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = InMemoryDatabase()
        self.controller = GameController(database=self.db, selector=SongSelector(self.db, rng=random.Random(3)))
        self.user_id = new_user_id()
        self.playlist, self.songs = await seed_catalog(self.db, song_count=10)
        self.by_id = {s.id: s for s in self.songs}

    async def start(self, **kwargs):
        params = {"game_mode": "classic", "total_rounds": 5}
        params.update(kwargs)
        return await self.controller.start(self.user_id, self.playlist.id, **params)

    async def play_round(self, s, guess=None, hints=1, time_to_guess=1500):
        song, _ = await self.controller.next_song(s.id, self.user_id, s.client_session_id)
        answer = self.by_id[song.id].title if guess is None else guess
        return await self.controller.submit(
            s.id, self.user_id, s.client_session_id, song.id, answer, hints, time_to_guess
        )

    async def stored(self, session_id):
        return await self.controller.get_session(session_id)

    async def idle(self, session_id, minutes=31):
        await self.db.game_sessions.update_one(
            {"id": session_id},
            {"$set": {"last_action_time": now() - timedelta(minutes=minutes)}},
        )


class StartTests(GameTestCase):
    async def test_start_creates_active_session(self):
        s = await self.start()

        self.assertEqual(s.status, GameStatus.ACTIVE)
        self.assertEqual(s.total_rounds, 5)
        self.assertEqual(s.max_possible_score, 25)
        self.assertEqual(s.total_score, 0)
        self.assertTrue(s.client_session_id)
        self.assertEqual((await self.stored(s.id)).client_session_id, s.client_session_id)

    async def test_total_rounds_defaults_to_ten(self):
        s = await self.start(total_rounds=None)

        self.assertEqual(s.total_rounds, 10)
        self.assertEqual(s.max_possible_score, 50)

    async def test_rejects_bad_input(self):
        cases = [
            {"game_mode": "lyrics"},
            {"total_rounds": 0},
            {"total_rounds": 21},
            {"total_rounds": 11},
        ]
        for kwargs in cases:
            with self.subTest(kwargs=kwargs):
                with self.assertRaises(ValidationError):
                    await self.start(**kwargs)

    async def test_rejects_missing_or_inactive_playlist(self):
        with self.assertRaises(NotFoundError):
            await self.controller.start(self.user_id, "missing", "classic", 5)

        inactive, _ = await seed_catalog(self.db, song_count=5, playlist_active=False)
        with self.assertRaises(NotFoundError):
            await self.controller.start(self.user_id, inactive.id, "classic", 5)

    async def test_second_start_abandons_previous_active_session(self):
        first = await self.start()
        second = await self.start(game_mode="artist")

        active = [d async for d in self.db.game_sessions.find({"user_id": self.user_id, "status": "active"})]
        self.assertEqual([d["id"] for d in active], [second.id])

        old = await self.stored(first.id)
        self.assertEqual(old.status, GameStatus.ABANDONED)
        self.assertIsNotNone(old.session_end_time)

    async def test_other_users_sessions_are_untouched(self):
        other_user = new_user_id()
        theirs = await self.controller.start(other_user, self.playlist.id, "classic", 5)

        await self.start()

        self.assertEqual((await self.stored(theirs.id)).status, GameStatus.ACTIVE)


class FullGameTests(GameTestCase):
    async def test_perfect_game_completes_with_full_score(self):
        s = await self.start()
        played = set()

        for i in range(5):
            round_, s = await self.play_round(s)
            self.assertTrue(round_.is_correct)
            self.assertEqual(round_.points_earned, 5)
            self.assertNotIn(round_.song_id, played)
            played.add(round_.song_id)
            self.assertEqual(s.is_complete, i == 4)

        stored = await self.stored(s.id)
        self.assertEqual(stored.status, GameStatus.COMPLETED)
        self.assertTrue(stored.is_complete)
        self.assertEqual(stored.total_score, 25)
        self.assertEqual(stored.max_possible_score, 25)
        self.assertEqual(len(stored.rounds), 5)
        self.assertIsNotNone(stored.session_end_time)
        self.assertGreaterEqual(stored.total_game_time, 0)

        user = await self.controller.stats.get_user(self.user_id)
        self.assertEqual(user.games_played, 1)
        self.assertEqual(user.games_won, 1)
        self.assertEqual(user.total_score, 25)
        self.assertEqual(user.best_score, 25)
        self.assertEqual(user.average_score, 25)

    async def test_completed_session_rejects_further_play(self):
        s = await self.start(total_rounds=1)
        await self.play_round(s)

        with self.assertRaises(StateError):
            await self.controller.next_song(s.id, self.user_id, s.client_session_id)

    async def test_bracketed_guess_counts_as_correct(self):
        playlist, songs = await seed_catalog(self.db, titles=[("Time", "Pink Floyd"), ("Money", "Pink Floyd")])
        s = await self.controller.start(self.user_id, playlist.id, "classic", 1)
        song, _ = await self.controller.next_song(s.id, self.user_id, s.client_session_id)
        guess = "time (remaster)" if song.title == "Time" else "money (remaster)"

        round_, s = await self.controller.submit(s.id, self.user_id, s.client_session_id, song.id, guess, 2, 900)

        self.assertTrue(round_.is_correct)
        self.assertEqual(round_.correct_answer, song.title)
        self.assertEqual(round_.points_earned, 4)

    async def test_last_hint_scores_one_point(self):
        s = await self.start()

        round_, s = await self.play_round(s, hints=5)

        self.assertTrue(round_.is_correct)
        self.assertEqual(round_.points_earned, 1)
        self.assertEqual(s.total_score, 1)

    async def test_wrong_guess_scores_zero_and_reveals_answer(self):
        s = await self.start()

        round_, s = await self.play_round(s, guess="definitely not it")

        self.assertFalse(round_.is_correct)
        self.assertEqual(round_.points_earned, 0)
        self.assertEqual(round_.correct_answer, self.by_id[round_.song_id].title)

    async def test_artist_mode_matches_artist(self):
        s = await self.start(game_mode="artist")
        song, _ = await self.controller.next_song(s.id, self.user_id, s.client_session_id)

        round_, _ = await self.controller.submit(
            s.id, self.user_id, s.client_session_id, song.id, song.artist.upper(), 1, 100
        )

        self.assertTrue(round_.is_correct)
        self.assertEqual(round_.correct_answer, song.artist)

    async def test_losing_game_is_not_a_win(self):
        s = await self.start(total_rounds=2)
        await self.play_round(s, guess="nope")
        await self.play_round(s, hints=5)

        user = await self.controller.stats.get_user(self.user_id)
        self.assertEqual(user.games_played, 1)
        self.assertEqual(user.games_won, 0)
        self.assertEqual(user.best_score, 1)

    async def test_stats_failure_does_not_fail_completion(self):
        s = await self.start(total_rounds=1)

        with mock.patch.object(
            self.controller.stats, "apply_completed_game", mock.AsyncMock(side_effect=RuntimeError("down"))
        ):
            _, s = await self.play_round(s)

        self.assertTrue(s.is_complete)
        self.assertEqual((await self.stored(s.id)).status, GameStatus.COMPLETED)


class NextSongTests(GameTestCase):
    async def test_answer_fields_are_not_needed_to_serve_song(self):
        s = await self.start()

        song, summary = await self.controller.next_song(s.id, self.user_id, s.client_session_id)

        self.assertIn(song.id, self.by_id)
        self.assertEqual(summary.current_round, 1)
        self.assertEqual((await self.stored(s.id)).current_song_id, song.id)

    async def test_unanswered_song_is_served_again(self):
        s = await self.start()

        first, _ = await self.controller.next_song(s.id, self.user_id, s.client_session_id)
        again, _ = await self.controller.next_song(s.id, self.user_id, s.client_session_id)

        self.assertEqual(first.id, again.id)

    async def test_exhausted_playlist_completes_game(self):
        playlist, songs = await seed_catalog(self.db, titles=[("A", "x"), ("B", "y"), (None, "z")])
        s = await self.controller.start(self.user_id, playlist.id, "classic", 3)
        titles = {song.id: song.title for song in songs}

        for _ in range(2):
            song, _ = await self.controller.next_song(s.id, self.user_id, s.client_session_id)
            await self.controller.submit(s.id, self.user_id, s.client_session_id, song.id, titles[song.id], 1, 10)

        song, summary = await self.controller.next_song(s.id, self.user_id, s.client_session_id)

        self.assertIsNone(song)
        self.assertEqual(summary.status, GameStatus.COMPLETED)
        self.assertEqual(summary.total_score, 10)
        self.assertEqual((await self.controller.stats.get_user(self.user_id)).games_played, 1)

    async def test_foreign_client_is_refused(self):
        s = await self.start()

        with self.assertRaises(AuthorizationError):
            await self.controller.next_song(s.id, self.user_id, "stale-tab")
        with self.assertRaises(AuthorizationError):
            await self.controller.next_song(s.id, new_user_id(), s.client_session_id)
        with self.assertRaises(NotFoundError):
            await self.controller.next_song("missing", self.user_id, s.client_session_id)

    async def test_abandoned_session_is_not_active(self):
        first = await self.start()
        await self.start()

        with self.assertRaises(StateError):
            await self.controller.next_song(first.id, self.user_id, first.client_session_id)

    async def test_unexpected_failure_becomes_internal_error(self):
        s = await self.start()

        with mock.patch.object(self.controller.selector, "select", mock.AsyncMock(side_effect=RuntimeError("boom"))):
            with self.assertRaises(InternalError) as ctx:
                await self.controller.next_song(s.id, self.user_id, s.client_session_id)

        self.assertEqual(ctx.exception.message, "Internal server error")


class SubmitTests(GameTestCase):
    async def test_rejects_out_of_range_input(self):
        s = await self.start()
        song, _ = await self.controller.next_song(s.id, self.user_id, s.client_session_id)

        cases = [(0, 10), (6, 10), (None, 10), (True, 10), (2, -1), (2, None), (2, 10**14), (2, float("nan"))]
        for hints, elapsed in cases:
            with self.subTest(hints=hints, elapsed=elapsed):
                with self.assertRaises(ValidationError):
                    await self.controller.submit(
                        s.id, self.user_id, s.client_session_id, song.id, "x", hints, elapsed
                    )

    async def test_duplicate_submission_is_rejected(self):
        s = await self.start()
        song, _ = await self.controller.next_song(s.id, self.user_id, s.client_session_id)
        args = (s.id, self.user_id, s.client_session_id, song.id, song.title, 1, 100)

        await self.controller.submit(*args)
        with self.assertRaises(StateError):
            await self.controller.submit(*args)

        self.assertEqual(len((await self.stored(s.id)).rounds), 1)

    async def test_round_number_must_match(self):
        s = await self.start()
        song, _ = await self.controller.next_song(s.id, self.user_id, s.client_session_id)

        with self.assertRaises(StateError):
            await self.controller.submit(
                s.id, self.user_id, s.client_session_id, song.id, "x", 1, 100, round_number=2
            )

        round_, _ = await self.controller.submit(
            s.id, self.user_id, s.client_session_id, song.id, "x", 1, 100, round_number=1
        )
        self.assertFalse(round_.is_correct)

    async def test_song_must_be_the_one_served(self):
        s = await self.start()
        served, _ = await self.controller.next_song(s.id, self.user_id, s.client_session_id)
        other = next(song for song in self.songs if song.id != served.id)

        with self.assertRaises(StateError):
            await self.controller.submit(
                s.id, self.user_id, s.client_session_id, other.id, other.title, 1, 100
            )

    async def test_song_must_be_served_before_it_is_answered(self):
        s = await self.start(total_rounds=1)
        known = self.songs[7]

        with self.assertRaises(StateError):
            await self.controller.submit(s.id, self.user_id, s.client_session_id, known.id, known.title, 1, 100)

        stored = await self.stored(s.id)
        self.assertEqual(stored.status, GameStatus.ACTIVE)
        self.assertEqual((stored.rounds, stored.total_score), ([], 0))

    async def test_song_outside_playlist_is_rejected(self):
        s = await self.start()
        _, strangers = await seed_catalog(self.db, song_count=1)
        await self.db.game_sessions.update_one({"id": s.id}, {"$set": {"current_song_id": strangers[0].id}})

        with self.assertRaises(ValidationError):
            await self.controller.submit(
                s.id, self.user_id, s.client_session_id, strangers[0].id, strangers[0].title, 1, 100
            )

    async def test_round_timestamps_follow_time_to_guess(self):
        s = await self.start()

        round_, _ = await self.play_round(s, time_to_guess=4000)

        self.assertEqual(round_.time_to_guess, 4000)
        self.assertEqual(round_.round_end_time - round_.round_start_time, timedelta(milliseconds=4000))

    async def test_score_never_exceeds_maximum(self):
        s = await self.start(total_rounds=3)

        for _ in range(3):
            _, s = await self.play_round(s)

        self.assertEqual(s.total_score, s.max_possible_score)
        self.assertLessEqual(len(s.rounds), s.total_rounds)


class TimeoutTests(GameTestCase):
    async def test_idle_session_expires_on_next_song(self):
        s = await self.start()
        await self.idle(s.id)

        with self.assertRaises(ExpiredError):
            await self.controller.next_song(s.id, self.user_id, s.client_session_id)

        stored = await self.stored(s.id)
        self.assertEqual(stored.status, GameStatus.ABANDONED)
        self.assertIsNotNone(stored.session_end_time)

    async def test_idle_session_expires_on_submit(self):
        s = await self.start()
        song, _ = await self.controller.next_song(s.id, self.user_id, s.client_session_id)
        await self.idle(s.id)

        with self.assertRaises(ExpiredError):
            await self.controller.submit(s.id, self.user_id, s.client_session_id, song.id, song.title, 1, 10)

        stored = await self.stored(s.id)
        self.assertEqual(stored.status, GameStatus.ABANDONED)
        self.assertEqual(stored.rounds, [])

    async def test_recent_activity_keeps_session_alive(self):
        s = await self.start()
        await self.idle(s.id, minutes=29)

        song, _ = await self.controller.next_song(s.id, self.user_id, s.client_session_id)

        self.assertIsNotNone(song)

    async def test_status_check_abandons_idle_session_without_error(self):
        s = await self.start()
        await self.idle(s.id)

        status = await self.controller.get_status(s.id, self.user_id)

        self.assertEqual(status.status, GameStatus.ABANDONED)
        self.assertEqual((await self.stored(s.id)).status, GameStatus.ABANDONED)


class StatusTests(GameTestCase):
    async def test_derived_fields(self):
        s = await self.start(total_rounds=4)
        await self.play_round(s, hints=1, time_to_guess=1000)
        await self.play_round(s, guess="nope", hints=3, time_to_guess=3000)

        status = await self.controller.get_status(s.id, self.user_id)

        self.assertEqual(status.current_round, 3)
        self.assertEqual(len(status.completed_rounds), 2)
        self.assertEqual(status.accuracy, 50)
        self.assertEqual(status.average_time_per_round, 2000)
        self.assertEqual(status.average_hints_used, 2)
        self.assertFalse(status.is_complete)

    async def test_status_requires_owner(self):
        s = await self.start()

        with self.assertRaises(AuthorizationError):
            await self.controller.get_status(s.id, new_user_id())


class ConcurrencyTests(GameTestCase):
    async def test_stale_write_is_rejected(self):
        s = await self.start()
        copy_a = await self.stored(s.id)
        copy_b = await self.stored(s.id)

        copy_a.total_score = 5
        await self.controller.save_session(copy_a)

        copy_b.total_score = 3
        with self.assertRaises(StateError):
            await self.controller.save_session(copy_b)

        self.assertEqual((await self.stored(s.id)).total_score, 5)

    async def test_locks_are_released_when_idle(self):
        s = await self.start(total_rounds=2)
        for _ in range(2):
            await self.play_round(s)
        await self.controller.get_status(s.id, self.user_id)

        self.assertEqual(self.controller.locks, {})

    async def test_waiters_share_one_lock(self):
        s = await self.start(total_rounds=3)

        results = await asyncio.gather(
            *(self.controller.next_song(s.id, self.user_id, s.client_session_id) for _ in range(3))
        )

        self.assertEqual(len({song.id for song, _ in results}), 1)
        self.assertEqual(self.controller.locks, {})
