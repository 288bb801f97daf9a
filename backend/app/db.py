from __future__ import annotations

import asyncio
import copy
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict
from pymongo import AsyncMongoClient, ReturnDocument
from pymongo.results import DeleteResult, InsertOneResult, UpdateResult


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    ADMIN_KEY: str = "change-me"
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"
    CORS_ORIGIN_REGEX: Optional[str] = None
    MONGODB_URI: Optional[str] = None
    MONGODB_DB: str = "songguess"
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    SESSION_TIMEOUT_MINUTES: int = 30
    DEFAULT_TOTAL_ROUNDS: int = 10
    MAX_TOTAL_ROUNDS: int = 20
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None
    LOG_FORMAT: str = "console"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()


class InMemoryCursor:
    def __init__(self, collection: "InMemoryCollection", query: Dict[str, Any]):
        self._collection = collection
        self._query = query or {}
        self._sort_key: Optional[str] = None
        self._sort_direction: int = 1
        self._limit: Optional[int] = None
        self._materialised: Optional[Iterator[Dict[str, Any]]] = None

    def sort(self, key: str, direction: int):
        self._sort_key = key
        self._sort_direction = direction
        return self

    def limit(self, limit: int):
        self._limit = limit
        return self

    async def _ensure_materialised(self):
        if self._materialised is not None:
            return

        docs = await self._collection._find_all(self._query)

        if self._sort_key is not None:
            reverse = self._sort_direction < 0
            # documents missing the key sort before everything else, like Mongo's null ordering
            present = [d for d in docs if d.get(self._sort_key) is not None]
            missing = [d for d in docs if d.get(self._sort_key) is None]
            present.sort(key=lambda d: d[self._sort_key], reverse=reverse)
            docs = present + missing if reverse else missing + present

        if self._limit:
            docs = docs[: self._limit]

        self._materialised = iter(docs)

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        docs = [doc async for doc in self]
        return docs if length is None else docs[:length]

    def __aiter__(self):
        return self

    async def __anext__(self):
        await self._ensure_materialised()
        assert self._materialised is not None
        try:
            return next(self._materialised)
        except StopIteration as exc:
            raise StopAsyncIteration from exc


class InMemoryCollection:
    def __init__(self):
        self._docs: List[Dict[str, Any]] = []
        self._lock = asyncio.Lock()

    async def _find_all(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs if self._matches(doc, query)]

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for doc in self._docs:
                if self._matches(doc, query):
                    return copy.deepcopy(doc)
        return None

    def find(self, query: Optional[Dict[str, Any]] = None):
        return InMemoryCursor(self, query or {})

    async def count_documents(self, query: Dict[str, Any]) -> int:
        async with self._lock:
            return sum(1 for doc in self._docs if self._matches(doc, query))

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False) -> UpdateResult:
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    updated = self._apply_update(copy.deepcopy(doc), update)
                    self._docs[idx] = updated
                    return UpdateResult({"n": 1, "nModified": 1}, True)

            if upsert:
                new_doc = self._seed_from_query(query)
                new_doc = self._apply_update(new_doc, update)
                self._docs.append(new_doc)
                return UpdateResult({"n": 1, "nModified": 0, "upserted": new_doc.get("id")}, True)

        return UpdateResult({"n": 0, "nModified": 0}, True)

    async def update_many(self, query: Dict[str, Any], update: Dict[str, Any]) -> UpdateResult:
        matched = 0
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    self._docs[idx] = self._apply_update(copy.deepcopy(doc), update)
                    matched += 1
        return UpdateResult({"n": matched, "nModified": matched}, True)

    async def insert_one(self, document: Dict[str, Any]) -> InsertOneResult:
        async with self._lock:
            self._docs.append(copy.deepcopy(document))
        return InsertOneResult(document.get("id"), True)

    async def delete_many(self, query: Dict[str, Any]) -> DeleteResult:
        async with self._lock:
            before = len(self._docs)
            self._docs = [doc for doc in self._docs if not self._matches(doc, query)]
            deleted = before - len(self._docs)
        return DeleteResult({"n": deleted}, True)

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Any,
        *,
        upsert: bool = False,
        return_document: bool = ReturnDocument.BEFORE,
    ) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    original = copy.deepcopy(doc)
                    updated = self._apply_update(copy.deepcopy(doc), update)
                    self._docs[idx] = updated
                    return copy.deepcopy(updated if return_document == ReturnDocument.AFTER else original)

            if upsert:
                new_doc = self._seed_from_query(query)
                new_doc = self._apply_update(new_doc, update)
                self._docs.append(new_doc)
                if return_document == ReturnDocument.AFTER:
                    return copy.deepcopy(new_doc)
                return None

        return None

    def _seed_from_query(self, query: Dict[str, Any]) -> Dict[str, Any]:
        return {k: copy.deepcopy(v) for k, v in query.items() if not isinstance(v, dict)}

    def _apply_update(self, doc: Dict[str, Any], update: Any) -> Dict[str, Any]:
        if isinstance(update, list):
            return self._apply_pipeline(doc, update)

        for op, payload in update.items():
            if op == "$set":
                for key, value in payload.items():
                    doc[key] = copy.deepcopy(value)
            elif op == "$inc":
                for key, value in payload.items():
                    current = doc.get(key, 0)
                    doc[key] = current + value
            elif op == "$max":
                for key, value in payload.items():
                    current = doc.get(key)
                    doc[key] = value if current is None else max(current, value)
            elif op == "$push":
                for key, value in payload.items():
                    doc.setdefault(key, []).append(copy.deepcopy(value))
            else:  # pragma: no cover - only the above operators are used today
                raise ValueError(f"Unsupported update operator: {op}")
        return doc

    def _apply_pipeline(self, doc: Dict[str, Any], stages: List[Dict[str, Any]]) -> Dict[str, Any]:
        for stage in stages:
            for op, payload in stage.items():
                if op != "$set":  # pragma: no cover - only $set stages are used today
                    raise ValueError(f"Unsupported pipeline stage: {op}")
                # every expression in a stage sees the document as it was before the stage
                values = {key: self._evaluate(doc, expr) for key, expr in payload.items()}
                doc.update(values)
        return doc

    def _evaluate(self, doc: Dict[str, Any], expr: Any) -> Any:
        if isinstance(expr, str) and expr.startswith("$"):
            return copy.deepcopy(doc.get(expr[1:]))
        if not isinstance(expr, dict):
            return copy.deepcopy(expr)

        op, operands = next(iter(expr.items()))
        args = [self._evaluate(doc, operand) for operand in operands]
        if op == "$add":
            return sum(args)
        if op == "$divide":
            return args[0] / args[1]
        if op == "$max":
            present = [a for a in args if a is not None]
            return max(present) if present else None
        if op == "$ifNull":
            return next((a for a in args if a is not None), args[-1])
        raise ValueError(f"Unsupported expression operator: {op}")  # pragma: no cover

    def _matches(self, doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
        for key, expected in (query or {}).items():
            actual = doc.get(key)
            if isinstance(expected, dict):
                for op, operand in expected.items():
                    if op == "$gt":
                        if actual is None or actual <= operand:
                            return False
                    elif op == "$lt":
                        if actual is None or actual >= operand:
                            return False
                    elif op == "$in":
                        if actual not in operand:
                            return False
                    elif op == "$ne":
                        if actual == operand:
                            return False
                    else:  # pragma: no cover - extend as new operators are required
                        raise ValueError(f"Unsupported query operator(s): {expected}")
            else:
                if actual != expected:
                    return False
        return True


class InMemoryDatabase:
    def __init__(self):
        self.game_sessions = InMemoryCollection()
        self.songs = InMemoryCollection()
        self.playlists = InMemoryCollection()
        self.users = InMemoryCollection()


def connect(config: Settings = settings) -> Any:
    """Return the configured document database.

    Falls back to the in-memory store when no MongoDB URI is configured.
    """
    if not config.MONGODB_URI:
        return InMemoryDatabase()
    client = AsyncMongoClient(config.MONGODB_URI, tz_aware=True)
    return client[config.MONGODB_DB]


db: Any = connect()
