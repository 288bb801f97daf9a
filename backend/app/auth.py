from __future__ import annotations

from typing import Any, Optional

import jwt
import structlog
from bson import ObjectId
from bson.errors import InvalidId
from fastapi import Header

from .db import settings
from .errors import AuthError

logger = structlog.get_logger()


def normalize_user_id(raw: Any) -> str:
    """Reduce an identity claim to canonical 24-hex ObjectId text.

    Tokens minted from a serialised ObjectId carry ``{"buffer": {"0": 101, ...}}``
    instead of the hex string.
    """
    if isinstance(raw, ObjectId):
        return str(raw)

    if isinstance(raw, str):
        candidate = raw.strip()
    elif isinstance(raw, dict) and isinstance(raw.get("buffer"), (dict, list)):
        buffer = raw["buffer"]
        values = list(buffer.values()) if isinstance(buffer, dict) else list(buffer)
        try:
            candidate = bytes(values).hex()
        except (TypeError, ValueError) as exc:
            raise AuthError("Invalid user ID") from exc
    else:
        raise AuthError("Invalid user ID")

    try:
        return str(ObjectId(candidate))
    except (InvalidId, TypeError) as exc:
        raise AuthError("Invalid user ID") from exc


def is_valid_user_id(value: Any) -> bool:
    return isinstance(value, str) and ObjectId.is_valid(value) and len(value) == 24


def create_token(user_id: str, secret: Optional[str] = None) -> str:
    return jwt.encode({"_id": user_id}, secret or settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: Optional[str], secret: Optional[str] = None) -> str:
    if not token:
        raise AuthError("Unauthorized")
    if token.startswith("Bearer "):
        token = token[len("Bearer "):]

    try:
        payload = jwt.decode(token, secret or settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.InvalidTokenError as exc:
        logger.info("rejected token", reason=str(exc))
        raise AuthError("Unauthorized") from exc

    if "_id" not in payload:
        raise AuthError("Unauthorized")
    return normalize_user_id(payload["_id"])


def require_user(authorization: Optional[str] = Header(default=None)) -> str:
    return decode_token(authorization)
