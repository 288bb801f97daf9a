from __future__ import annotations

import asyncio
import contextlib
import functools
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

import structlog

from .db import db as default_db
from .db import settings
from .errors import ExpiredError, GameError, InternalError, NotFoundError, StateError, ValidationError
from .matching import is_match
from .models import GameMode, GameSession, GameStatus, Playlist, Round, Song
from .scoring import MAX_HINTS, MIN_HINTS, calculate_points
from .selector import SongSelector
from .stats import StatsService
from .utils import as_utc, millis_between, new_client_session_id, now
from .validator import SessionValidator

logger = structlog.get_logger()

# a guess can't take longer than a day
MAX_TIME_TO_GUESS_MS = 24 * 60 * 60 * 1000


def guarded(operation):
    """Let GameErrors through and collapse anything else into InternalError."""

    @functools.wraps(operation)
    async def wrapper(self, *args, **kwargs):
        try:
            return await operation(self, *args, **kwargs)
        except GameError:
            raise
        except Exception as exc:
            logger.exception("unexpected failure", operation=operation.__name__, args=args)
            raise InternalError() from exc

    return wrapper


class GameController:
    def __init__(
        self,
        database: Any = None,
        selector: Optional[SongSelector] = None,
        stats: Optional[StatsService] = None,
        timeout_minutes: Optional[int] = None,
    ):
        self.db = database if database is not None else default_db
        self.selector = selector or SongSelector(self.db)
        self.stats = stats or StatsService(self.db)
        self.validator = SessionValidator(self.db)
        self.timeout = timedelta(minutes=timeout_minutes or settings.SESSION_TIMEOUT_MINUTES)
        self.locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def _lock(self, key: str):
        """Serialize work on ``key``; the lock is dropped once nobody holds or awaits it."""
        lock = self.locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self.locks[key]

    async def get_session(self, session_id: str) -> GameSession | None:
        doc = await self.db.game_sessions.find_one({"id": session_id})
        return GameSession(**doc) if doc else None

    async def save_session(self, s: GameSession):
        """Write the whole session back if nobody else has since the load."""
        expected = s.version
        s.version = expected + 1
        result = await self.db.game_sessions.update_one(
            {"id": s.id, "version": expected},
            {"$set": s.model_dump()},
        )
        if result.matched_count == 0:
            s.version = expected
            raise StateError("Game session was modified concurrently")

    @guarded
    async def start(
        self,
        user_id: str,
        playlist_id: str,
        game_mode: str,
        total_rounds: Optional[int] = None,
    ) -> GameSession:
        if not playlist_id or not game_mode:
            raise ValidationError("Missing required fields")

        try:
            mode = GameMode(game_mode)
        except ValueError as exc:
            raise ValidationError("Invalid game mode") from exc

        rounds = settings.DEFAULT_TOTAL_ROUNDS if total_rounds is None else total_rounds
        if rounds < 1 or rounds > settings.MAX_TOTAL_ROUNDS:
            raise ValidationError(f"Total rounds must be between 1 and {settings.MAX_TOTAL_ROUNDS}")

        playlist = await self.selector.get_playlist(playlist_id)
        if _song_count(playlist) < rounds:
            raise ValidationError("Playlist doesn't have enough songs")

        await self.stats.ensure_user(user_id)

        async with self._lock(f"user:{user_id}"):
            ts = now()
            abandoned = await self.db.game_sessions.update_many(
                {"user_id": user_id, "status": GameStatus.ACTIVE.value},
                {
                    "$set": {"status": GameStatus.ABANDONED.value, "session_end_time": ts},
                    "$inc": {"version": 1},
                },
            )

            s = GameSession(
                user_id=user_id,
                playlist_id=playlist.id,
                game_mode=mode,
                total_rounds=rounds,
                client_session_id=new_client_session_id(),
                session_start_time=ts,
                last_action_time=ts,
            )
            await self.db.game_sessions.insert_one(s.model_dump())

        logger.info(
            "created game session",
            session_id=s.id,
            user_id=user_id,
            playlist_id=playlist.id,
            mode=mode,
            rounds=rounds,
            abandoned=abandoned.modified_count,
        )
        return s

    @guarded
    async def next_song(self, session_id: str, user_id: str, client_session_id: str) -> Tuple[Optional[Song], GameSession]:
        if not session_id or not client_session_id:
            raise ValidationError("Missing required fields")

        async with self._lock(f"session:{session_id}"):
            s = await self.validator.validate(session_id, user_id, client_session_id)
            await self._ensure_playable(s)

            playlist = await self.selector.get_playlist(s.playlist_id)

            song: Optional[Song] = None
            if s.current_song_id:
                # refetching does not re-roll an unanswered song
                song = await self.selector.load_playable(s.current_song_id, s.game_mode)
            if song is None:
                song = await self.selector.select(playlist, s.played_song_ids, s.game_mode)

            if song is None:
                logger.info("playlist exhausted, completing early", playlist_id=playlist.id, session_id=s.id)
                self._complete(s)
                await self.save_session(s)
                await self._apply_stats(s)
                return None, s

            s.current_song_id = song.id
            s.last_action_time = now()
            await self.save_session(s)

        return song, s

    @guarded
    async def submit(
        self,
        session_id: str,
        user_id: str,
        client_session_id: str,
        song_id: str,
        user_guess: Optional[str],
        hints_used: int,
        time_to_guess: int,
        round_number: Optional[int] = None,
    ) -> Tuple[Round, GameSession]:
        if not session_id or not song_id or not client_session_id:
            raise ValidationError("Missing required fields")
        if isinstance(hints_used, bool) or not isinstance(hints_used, int) or not MIN_HINTS <= hints_used <= MAX_HINTS:
            raise ValidationError("Invalid hints used value")
        if (
            isinstance(time_to_guess, bool)
            or not isinstance(time_to_guess, (int, float))
            or not 0 <= time_to_guess <= MAX_TIME_TO_GUESS_MS
        ):
            raise ValidationError("Invalid time to guess value")

        async with self._lock(f"session:{session_id}"):
            s = await self.validator.validate(session_id, user_id, client_session_id)
            await self._ensure_playable(s)

            if round_number is not None and round_number != s.current_round:
                raise StateError("Unexpected round number")
            if len(s.completed_rounds) >= s.total_rounds:
                raise StateError("All rounds have been played")
            if song_id in s.played_song_ids:
                raise StateError("Song already played in this session")
            if s.current_song_id is None:
                raise StateError("No song has been served for this round")
            if s.current_song_id != song_id:
                raise StateError("Song was not served for this round")

            song = await self._load_round_song(s, song_id)
            correct_answer = song.answer_for(s.game_mode)
            guess = (user_guess or "").strip()
            is_correct = is_match(guess, correct_answer)
            points = calculate_points(hints_used, is_correct)

            ts = now()
            elapsed = int(time_to_guess)
            round_ = Round(
                song_id=song_id,
                user_guess=guess,
                correct_answer=correct_answer,
                is_correct=is_correct,
                hints_used=hints_used,
                time_to_guess=elapsed,
                points_earned=points,
                round_start_time=ts - timedelta(milliseconds=elapsed),
                round_end_time=ts,
            )
            s.rounds.append(round_)
            s.total_score = min(s.total_score + points, s.max_possible_score)
            s.current_song_id = None
            s.last_action_time = ts

            finished = len(s.completed_rounds) >= s.total_rounds
            if finished:
                self._complete(s, ts)

            await self.save_session(s)

        logger.debug(
            "round submitted",
            session_id=s.id,
            round=len(s.rounds),
            correct=is_correct,
            points=points,
            hints=hints_used,
        )

        if finished:
            logger.info("session completed", session_id=s.id, score=s.total_score, max_score=s.max_possible_score)
            await self._apply_stats(s)

        return round_, s

    @guarded
    async def get_status(self, session_id: str, user_id: str) -> GameSession:
        if not session_id:
            raise ValidationError("Session ID required")

        async with self._lock(f"session:{session_id}"):
            s = await self.validator.validate_owner(session_id, user_id)
            if s.status == GameStatus.ACTIVE and self._is_expired(s):
                await self._abandon(s)
        return s

    def _is_expired(self, s: GameSession) -> bool:
        return s.idle_for(now()) > self.timeout.total_seconds()

    async def _ensure_playable(self, s: GameSession):
        if s.status != GameStatus.ACTIVE:
            raise StateError("Game session is not active")
        if self._is_expired(s):
            await self._abandon(s)
            raise ExpiredError("Session expired")

    async def _abandon(self, s: GameSession):
        s.status = GameStatus.ABANDONED
        s.session_end_time = now()
        await self.save_session(s)
        logger.info("session abandoned after idling", session_id=s.id, timeout=str(self.timeout))

    def _complete(self, s: GameSession, ts=None):
        s.status = GameStatus.COMPLETED
        s.session_end_time = ts or now()
        s.total_game_time = millis_between(as_utc(s.session_start_time), s.session_end_time)
        s.current_song_id = None

    async def _apply_stats(self, s: GameSession):
        # the completed session is already stored; stats can be rebuilt later
        try:
            await self.stats.apply_completed_game(s.user_id, s)
        except Exception:
            logger.exception("failed to update user stats", session_id=s.id)

    async def _load_round_song(self, s: GameSession, song_id: str) -> Song:
        playlist_doc = await self.db.playlists.find_one({"id": s.playlist_id})
        if playlist_doc and song_id not in playlist_doc.get("song_ids", []):
            raise ValidationError("Song is not part of this playlist")

        doc = await self.db.songs.find_one({"id": song_id})
        if not doc:
            raise NotFoundError("Song not found")
        return Song(**doc)


def _song_count(playlist: Playlist) -> int:
    return len(set(playlist.song_ids))


controller = GameController()
