from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, computed_field

from .utils import as_utc, new_object_id, now

ROUND_MAX_POINTS = 5


class GameMode(str, Enum):
    CLASSIC = "classic"
    ARTIST = "artist"


class GameStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ABANDONED = "abandoned"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class Song(BaseModel):
    id: str = Field(default_factory=new_object_id)
    media_url: str
    media_track_id: Optional[str] = None
    title: Optional[str] = None
    artist: Optional[str] = None
    difficulty: Difficulty = Difficulty.MEDIUM
    starting_offset: int = Field(default=0, ge=0)
    is_active: bool = True

    def answer_for(self, mode: GameMode) -> str:
        if mode == GameMode.CLASSIC:
            return self.title or ""
        return self.artist or ""


class Playlist(BaseModel):
    id: str = Field(default_factory=new_object_id)
    name: str
    is_active: bool = True
    song_ids: List[str] = Field(default_factory=list)
    song_count: int = 0


class User(BaseModel):
    id: str
    username: Optional[str] = None
    games_played: int = 0
    games_won: int = 0
    total_score: int = 0
    best_score: int = 0
    average_score: float = 0.0


class Round(BaseModel):
    """One guess cycle. Written once by submit and never changed afterwards."""

    song_id: str
    user_guess: str = ""
    correct_answer: str
    is_correct: bool = False
    hints_used: int = Field(ge=1, le=5)
    time_to_guess: int = Field(default=0, ge=0)  # milliseconds
    points_earned: int = Field(default=0, ge=0, le=ROUND_MAX_POINTS)
    round_start_time: datetime
    round_end_time: Optional[datetime] = None


# States: active -> completed | abandoned (terminal)
class GameSession(BaseModel):
    id: str = Field(default_factory=new_object_id)
    user_id: str
    playlist_id: str
    game_mode: GameMode
    status: GameStatus = GameStatus.ACTIVE
    total_rounds: int = Field(ge=1, le=20)
    total_score: int = 0
    rounds: List[Round] = Field(default_factory=list)
    current_song_id: Optional[str] = None
    session_start_time: datetime = Field(default_factory=now)
    session_end_time: Optional[datetime] = None
    total_game_time: Optional[int] = None  # milliseconds
    client_session_id: str
    last_action_time: datetime = Field(default_factory=now)
    version: int = 0

    @computed_field
    @property
    def max_possible_score(self) -> int:
        return self.total_rounds * ROUND_MAX_POINTS

    @property
    def completed_rounds(self) -> List[Round]:
        return [r for r in self.rounds if r.round_end_time]

    @property
    def current_round(self) -> int:
        return len(self.completed_rounds) + 1

    @property
    def is_complete(self) -> bool:
        return self.status == GameStatus.COMPLETED

    @property
    def played_song_ids(self) -> set[str]:
        return {r.song_id for r in self.rounds}

    @property
    def accuracy(self) -> float:
        completed = self.completed_rounds
        if not completed:
            return 0.0
        correct = [r for r in completed if r.is_correct]
        return len(correct) / len(completed) * 100

    @property
    def average_time_per_round(self) -> float:
        timed = [r for r in self.completed_rounds if r.time_to_guess]
        if not timed:
            return 0.0
        return sum(r.time_to_guess for r in timed) / len(timed)

    @property
    def average_hints_used(self) -> float:
        if not self.rounds:
            return 0.0
        return sum(r.hints_used for r in self.rounds) / len(self.rounds)

    def idle_for(self, at: datetime) -> float:
        return (at - as_utc(self.last_action_time)).total_seconds()
