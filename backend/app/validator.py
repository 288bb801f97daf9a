from __future__ import annotations

import secrets
from typing import Any

import structlog

from .auth import is_valid_user_id
from .db import db as default_db
from .errors import AuthorizationError, NotFoundError
from .models import GameSession

logger = structlog.get_logger()


class SessionValidator:
    """Checks that a request may act on a stored game session."""

    def __init__(self, database: Any = None):
        self.db = database if database is not None else default_db

    async def load(self, session_id: str) -> GameSession:
        doc = await self.db.game_sessions.find_one({"id": session_id})
        if not doc:
            raise NotFoundError("Game session not found")
        return GameSession(**doc)

    async def validate_owner(self, session_id: str, user_id: str) -> GameSession:
        session = await self.load(session_id)

        if not is_valid_user_id(user_id):
            logger.warning("rejected malformed user id", session_id=session_id)
            raise AuthorizationError("Invalid user ID format")

        if session.user_id != user_id:
            logger.warning("unauthorized session access", user_id=user_id, session_id=session_id)
            raise AuthorizationError("Unauthorized access to game session")

        return session

    async def validate(self, session_id: str, user_id: str, client_session_id: str) -> GameSession:
        session = await self.validate_owner(session_id, user_id)

        if not client_session_id or not secrets.compare_digest(
            session.client_session_id.encode(), client_session_id.encode()
        ):
            logger.warning("stale or foreign client session id", session_id=session_id)
            raise AuthorizationError("Invalid session ID")

        return session
