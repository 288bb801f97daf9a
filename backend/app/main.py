from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header
from fastapi.middleware.cors import CORSMiddleware

from .auth import require_user
from .db import settings
from .errors import AuthError
from .error_handlers import register_error_handlers
from .game import controller
from .logging_setup import setup_logging
from .models import Playlist, Song
from .schemas import (
    CatalogIn,
    GameHistoryItemOut,
    GameHistoryOut,
    NextSongIn,
    NextSongOut,
    RecalculateStatsOut,
    RoundProgressOut,
    SessionStatusEnvelope,
    SessionStatusOut,
    SongOut,
    StartedSessionOut,
    StartGameIn,
    StartGameOut,
    SubmitAnswerIn,
    SubmitAnswerOut,
    SubmittedSessionOut,
    UserStatsOut,
    round_result,
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging(settings.LOG_LEVEL, settings.LOG_DIR, settings.LOG_FORMAT)
    yield


app = FastAPI(title="Song Guess API", lifespan=lifespan)

origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
origin_regex = settings.CORS_ORIGIN_REGEX or None

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_origin_regex=origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)


def require_admin(x_admin_key: Optional[str] = Header(default=None)):
    if x_admin_key != settings.ADMIN_KEY:
        raise AuthError("Invalid admin key")


@app.post("/api/game/start", response_model=StartGameOut)
async def start_game(payload: StartGameIn, user_id: str = Depends(require_user)):
    s = await controller.start(user_id, payload.playlist_id, payload.game_mode, payload.total_rounds)
    return StartGameOut(game_session=StartedSessionOut.from_session(s))


@app.post("/api/game/next-song", response_model=NextSongOut)
async def next_song(payload: NextSongIn, user_id: str = Depends(require_user)):
    song, s = await controller.next_song(payload.game_session_id, user_id, payload.client_session_id)
    return NextSongOut(
        song=SongOut.from_song(song) if song else None,
        game_session=RoundProgressOut(
            id=s.id,
            current_round=s.current_round,
            total_rounds=s.total_rounds,
            total_score=s.total_score,
            max_possible_score=s.max_possible_score,
            is_complete=s.is_complete,
            status=s.status.value,
        ),
    )


@app.post("/api/game/submit", response_model=SubmitAnswerOut)
async def submit_answer(payload: SubmitAnswerIn, user_id: str = Depends(require_user)):
    round_, s = await controller.submit(
        payload.game_session_id,
        user_id,
        payload.client_session_id,
        payload.song_id,
        payload.user_guess,
        payload.hints_used,
        payload.time_to_guess,
        round_number=payload.round_number,
    )
    return SubmitAnswerOut(
        round=round_result(round_),
        game_session=SubmittedSessionOut(
            id=s.id,
            total_score=s.total_score,
            current_round=len(s.completed_rounds),
            total_rounds=s.total_rounds,
            is_complete=s.is_complete,
            status=s.status.value,
        ),
    )


@app.get("/api/game/session/{session_id}", response_model=SessionStatusEnvelope)
async def get_session(session_id: str, user_id: str = Depends(require_user)):
    s = await controller.get_status(session_id, user_id)
    return SessionStatusEnvelope(game_session=SessionStatusOut.from_session(s))


@app.get("/api/me/game-history", response_model=GameHistoryOut)
async def game_history(limit: int = 10, user_id: str = Depends(require_user)):
    history = await controller.stats.game_history(user_id, limit=max(1, min(limit, 100)))
    return GameHistoryOut(game_history=[GameHistoryItemOut(**item) for item in history])


@app.get("/api/me/stats", response_model=UserStatsOut)
async def my_stats(user_id: str = Depends(require_user)):
    user = await controller.stats.get_user(user_id)
    return UserStatsOut(**user.model_dump())


@app.post("/api/me/recalculate-stats", response_model=RecalculateStatsOut)
async def recalculate_stats(user_id: str = Depends(require_user)):
    stats = await controller.stats.recalculate(user_id)
    return RecalculateStatsOut(message="User statistics recalculated successfully", stats=UserStatsOut(**stats))


@app.post("/api/admin/catalog")
async def upsert_catalog(payload: CatalogIn, _: None = Depends(require_admin)):
    for song_in in payload.songs:
        song = Song(**song_in.model_dump())
        await controller.db.songs.update_one({"id": song.id}, {"$set": song.model_dump()}, upsert=True)

    for playlist_in in payload.playlists:
        playlist = Playlist(**playlist_in.model_dump())
        playlist.song_count = len(set(playlist.song_ids))
        await controller.db.playlists.update_one({"id": playlist.id}, {"$set": playlist.model_dump()}, upsert=True)

    return {"success": True, "songs": len(payload.songs), "playlists": len(payload.playlists)}


@app.get("/api/admin/verify")
async def verify(_: None = Depends(require_admin)):
    return {"success": True}
