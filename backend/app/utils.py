import uuid
from datetime import datetime, timezone

from bson import ObjectId


def now() -> datetime:
    return datetime.now(timezone.utc)


def new_object_id() -> str:
    return str(ObjectId())


def new_client_session_id() -> str:
    return str(uuid.uuid4())


def millis_between(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)


def as_utc(value: datetime) -> datetime:
    # stores that drop tzinfo hand back naive UTC datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
