from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import Difficulty, GameSession, Round, Song


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartGameIn(CamelModel):
    playlist_id: Optional[str] = None
    game_mode: Optional[str] = None
    total_rounds: Optional[int] = None


class NextSongIn(CamelModel):
    game_session_id: Optional[str] = None
    client_session_id: Optional[str] = None


class SubmitAnswerIn(CamelModel):
    game_session_id: Optional[str] = None
    song_id: Optional[str] = None
    user_guess: Optional[str] = None
    hints_used: Optional[int] = None
    time_to_guess: Optional[float] = None
    client_session_id: Optional[str] = None
    round_number: Optional[int] = None


class SongIn(CamelModel):
    id: str
    media_url: str
    media_track_id: Optional[str] = None
    title: Optional[str] = None
    artist: Optional[str] = None
    difficulty: Difficulty = Difficulty.MEDIUM
    starting_offset: int = Field(default=0, ge=0)
    is_active: bool = True


class PlaylistIn(CamelModel):
    id: str
    name: str
    is_active: bool = True
    song_ids: List[str] = Field(default_factory=list)


class CatalogIn(CamelModel):
    songs: List[SongIn] = Field(default_factory=list)
    playlists: List[PlaylistIn] = Field(default_factory=list)


class StartedSessionOut(CamelModel):
    id: str
    playlist_id: str
    game_mode: str
    total_rounds: int
    current_round: int
    total_score: int
    max_possible_score: int
    status: str
    client_session_id: str
    session_start_time: datetime

    @classmethod
    def from_session(cls, s: GameSession) -> "StartedSessionOut":
        return cls(
            id=s.id,
            playlist_id=s.playlist_id,
            game_mode=s.game_mode.value,
            total_rounds=s.total_rounds,
            current_round=s.current_round,
            total_score=s.total_score,
            max_possible_score=s.max_possible_score,
            status=s.status.value,
            client_session_id=s.client_session_id,
            session_start_time=s.session_start_time,
        )


class StartGameOut(CamelModel):
    success: bool = True
    game_session: StartedSessionOut


class SongOut(CamelModel):
    """Playback payload for the round in progress.

    ``title`` and ``artist`` stay empty until the guess is submitted.
    """

    id: str
    title: Optional[str] = None
    artist: Optional[str] = None
    media_url: str
    media_track_id: Optional[str] = None
    starting_offset: int = 0
    difficulty: str

    @classmethod
    def from_song(cls, song: Song) -> "SongOut":
        return cls(
            id=song.id,
            media_url=song.media_url,
            media_track_id=song.media_track_id,
            starting_offset=song.starting_offset,
            difficulty=song.difficulty.value,
        )


class RoundProgressOut(CamelModel):
    id: str
    current_round: int
    total_rounds: int
    total_score: int
    max_possible_score: int
    is_complete: bool
    status: str


class NextSongOut(CamelModel):
    success: bool = True
    song: Optional[SongOut] = None
    game_session: RoundProgressOut


class RoundResultOut(CamelModel):
    is_correct: bool
    correct_answer: str
    points_earned: int
    time_to_guess: int
    hints_used: int


class SubmittedSessionOut(CamelModel):
    id: str
    total_score: int
    current_round: int
    total_rounds: int
    is_complete: bool
    status: str


class SubmitAnswerOut(CamelModel):
    success: bool = True
    round: RoundResultOut
    game_session: SubmittedSessionOut


class RoundOut(CamelModel):
    song_id: str
    user_guess: str
    correct_answer: str
    is_correct: bool
    hints_used: int
    time_to_guess: int
    points_earned: int
    round_start_time: datetime
    round_end_time: Optional[datetime] = None


class SessionStatusOut(CamelModel):
    id: str
    playlist_id: str
    game_mode: str
    status: str
    total_rounds: int
    current_round: int
    completed_rounds: int
    total_score: int
    max_possible_score: int
    rounds: List[RoundOut]
    session_start_time: datetime
    session_end_time: Optional[datetime] = None
    total_game_time: Optional[int] = None
    client_session_id: str
    accuracy: float
    average_time_per_round: float
    average_hints_used: float
    is_complete: bool

    @classmethod
    def from_session(cls, s: GameSession) -> "SessionStatusOut":
        return cls(
            id=s.id,
            playlist_id=s.playlist_id,
            game_mode=s.game_mode.value,
            status=s.status.value,
            total_rounds=s.total_rounds,
            current_round=s.current_round,
            completed_rounds=len(s.completed_rounds),
            total_score=s.total_score,
            max_possible_score=s.max_possible_score,
            rounds=[RoundOut(**r.model_dump()) for r in s.rounds],
            session_start_time=s.session_start_time,
            session_end_time=s.session_end_time,
            total_game_time=s.total_game_time,
            client_session_id=s.client_session_id,
            accuracy=s.accuracy,
            average_time_per_round=s.average_time_per_round,
            average_hints_used=s.average_hints_used,
            is_complete=s.is_complete,
        )


class SessionStatusEnvelope(CamelModel):
    success: bool = True
    game_session: SessionStatusOut


class GameHistoryItemOut(CamelModel):
    id: str
    playlist_name: str
    game_mode: str
    total_score: int
    max_possible_score: int
    accuracy: float
    total_rounds: int
    session_start_time: datetime
    session_end_time: Optional[datetime] = None
    total_game_time: Optional[int] = None


class GameHistoryOut(CamelModel):
    success: bool = True
    game_history: List[GameHistoryItemOut]


class UserStatsOut(CamelModel):
    games_played: int
    games_won: int
    total_score: int
    best_score: int
    average_score: float


class RecalculateStatsOut(CamelModel):
    success: bool = True
    message: str
    stats: UserStatsOut


def round_result(r: Round) -> RoundResultOut:
    return RoundResultOut(
        is_correct=r.is_correct,
        correct_answer=r.correct_answer,
        points_earned=r.points_earned,
        time_to_guess=r.time_to_guess,
        hints_used=r.hints_used,
    )
