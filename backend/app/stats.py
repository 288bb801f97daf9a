from __future__ import annotations

from typing import Any, Dict, List

import structlog
from pymongo import ReturnDocument

from .db import db as default_db
from .errors import NotFoundError, StateError
from .models import GameSession, GameStatus, User

logger = structlog.get_logger()

WIN_THRESHOLD_PERCENT = 60


def is_win(total_score: int, max_possible_score: int) -> bool:
    if max_possible_score <= 0:
        return False
    return total_score / max_possible_score * 100 >= WIN_THRESHOLD_PERCENT


class StatsService:
    """Folds completed sessions into per-user lifetime statistics."""

    def __init__(self, database: Any = None):
        self.db = database if database is not None else default_db

    async def ensure_user(self, user_id: str):
        await self.db.users.update_one({"id": user_id}, {"$set": {"id": user_id}}, upsert=True)

    async def get_user(self, user_id: str) -> User:
        doc = await self.db.users.find_one({"id": user_id})
        if not doc:
            raise NotFoundError("User not found")
        return User(**doc)

    async def apply_completed_game(self, user_id: str, session: GameSession) -> Dict[str, Any]:
        """Add one completed session to the user's running totals.

        Not idempotent: the caller applies each completed session once.
        ``recalculate`` rebuilds the totals if that ever goes wrong.
        """
        if session.status != GameStatus.COMPLETED:
            raise StateError("Game session is not completed")
        if session.user_id != user_id:
            raise StateError("Game session does not belong to the user")

        won = is_win(session.total_score, session.max_possible_score)
        # totals and average in a single write
        user = await self.db.users.find_one_and_update(
            {"id": user_id},
            [
                {
                    "$set": {
                        "games_played": _plus("games_played", 1),
                        "total_score": _plus("total_score", session.total_score),
                        "games_won": _plus("games_won", 1 if won else 0),
                        "best_score": {"$max": [{"$ifNull": ["$best_score", 0]}, session.total_score]},
                    }
                },
                {"$set": {"average_score": {"$divide": ["$total_score", "$games_played"]}}},
            ],
            return_document=ReturnDocument.AFTER,
        )
        if user is None:
            raise NotFoundError("User not found")

        logger.info(
            "updated user stats",
            user_id=user_id,
            played=user["games_played"],
            won=user["games_won"],
            total=user["total_score"],
            best=user["best_score"],
            average=round(user["average_score"], 2),
        )
        return user

    async def recalculate(self, user_id: str) -> Dict[str, Any]:
        games = await self._completed_games(user_id)

        total_score = sum(g.total_score for g in games)
        stats = {
            "games_played": len(games),
            "total_score": total_score,
            "games_won": sum(1 for g in games if is_win(g.total_score, g.max_possible_score)),
            "best_score": max((g.total_score for g in games), default=0),
            "average_score": total_score / len(games) if games else 0,
        }

        result = await self.db.users.update_one({"id": user_id}, {"$set": stats})
        if result.matched_count == 0:
            raise NotFoundError("User not found")

        logger.info("recalculated user stats", user_id=user_id, games=len(games))
        return stats

    async def game_history(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        cursor = (
            self.db.game_sessions.find({"user_id": user_id, "status": GameStatus.COMPLETED.value})
            .sort("session_end_time", -1)
            .limit(limit)
        )

        history: List[Dict[str, Any]] = []
        names: Dict[str, str] = {}
        async for doc in cursor:
            session = GameSession(**doc)
            if session.playlist_id not in names:
                playlist = await self.db.playlists.find_one({"id": session.playlist_id})
                names[session.playlist_id] = (playlist or {}).get("name") or "Unknown Playlist"
            history.append(
                {
                    "id": session.id,
                    "playlist_name": names[session.playlist_id],
                    "game_mode": session.game_mode.value,
                    "total_score": session.total_score,
                    "max_possible_score": session.max_possible_score,
                    "accuracy": round(session.accuracy, 2),
                    "total_rounds": session.total_rounds,
                    "session_start_time": session.session_start_time,
                    "session_end_time": session.session_end_time,
                    "total_game_time": session.total_game_time,
                }
            )
        return history

    async def _completed_games(self, user_id: str) -> List[GameSession]:
        cursor = self.db.game_sessions.find({"user_id": user_id, "status": GameStatus.COMPLETED.value})
        return [GameSession(**doc) async for doc in cursor]


def _plus(field: str, amount: int) -> Dict[str, Any]:
    return {"$add": [{"$ifNull": [f"${field}", 0]}, amount]}
