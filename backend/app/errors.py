"""Error hierarchy for game session operations.

Every error carries a machine code and the HTTP status it maps to. Messages
are safe to show to clients; internal details never go into them.
"""

from __future__ import annotations


class GameError(Exception):
    """Base class for every failure surfaced to API clients."""

    code = "GAME_ERROR"
    http_status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_response(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code}


class ValidationError(GameError):
    code = "VALIDATION_ERROR"
    http_status = 400


class AuthError(GameError):
    code = "UNAUTHENTICATED"
    http_status = 401


class AuthorizationError(GameError):
    code = "FORBIDDEN"
    http_status = 403


class NotFoundError(GameError):
    code = "NOT_FOUND"
    http_status = 404


class ExpiredError(GameError):
    """The session sat idle past the timeout and has been abandoned."""

    code = "SESSION_EXPIRED"
    http_status = 408


class StateError(GameError):
    code = "INVALID_STATE"
    http_status = 400


class InternalError(GameError):
    code = "INTERNAL_ERROR"
    http_status = 500

    def __init__(self, message: str = "Internal server error"):
        super().__init__(message)
