from __future__ import annotations

import asyncio
import copy
import re
from functools import lru_cache
from types import SimpleNamespace
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Union

from pymongo import AsyncMongoClient, ReturnDocument
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    MONGO_URL: Optional[str] = None
    MONGO_DB: str = "quizroom"
    CORS_ORIGINS: str = "http://localhost:5173,http://localhost:3000"
    CORS_ORIGIN_REGEX: Optional[str] = None
    GATEWAY_TIMEOUT_SECONDS: float = 5.0
    JOIN_CONFLICT_RETRIES: int = 3
    LEADERBOARD_LIMIT: int = 10
    QUIZ_CODE_LENGTH: int = 6
    LOG_LEVEL: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


SortSpec = Union[str, Sequence[Tuple[str, int]]]


class InMemoryCursor:
    def __init__(self, collection: "InMemoryCollection", query: Dict[str, Any]):
        self._collection = collection
        self._query = query or {}
        self._sort_keys: List[Tuple[str, int]] = []
        self._limit: Optional[int] = None
        self._materialised: Optional[Iterator[Dict[str, Any]]] = None

    def sort(self, key: SortSpec, direction: int = 1):
        # Same call shapes as pymongo: sort("field", -1) or sort([("a", -1), ("b", 1)])
        if isinstance(key, str):
            self._sort_keys = [(key, direction)]
        else:
            self._sort_keys = list(key)
        return self

    def limit(self, limit: int):
        self._limit = limit
        return self

    async def _ensure_materialised(self):
        if self._materialised is not None:
            return

        docs = await self._collection._find_all(self._query)

        # Stable sorts applied from the least significant key outwards; missing
        # values order before everything else, as in MongoDB.
        for sort_key, direction in reversed(self._sort_keys):
            docs.sort(
                key=lambda d, k=sort_key: (d.get(k) is not None, d.get(k)),
                reverse=direction < 0,
            )

        if self._limit:
            docs = docs[: self._limit]

        self._materialised = iter(docs)

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

    async def create_index(self, keys: Any, **kwargs: Any) -> str:
        # Indexes only matter to a real server.
        return str(keys)

    async def _find_all(self, query: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with self._lock:
            return [copy.deepcopy(doc) for doc in self._docs if self._matches(doc, query)]

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            for doc in self._docs:
                if self._matches(doc, query):
                    return copy.deepcopy(doc)
        return None

    def find(self, query: Dict[str, Any]):
        return InMemoryCursor(self, query)

    async def update_one(self, query: Dict[str, Any], update: Dict[str, Any], upsert: bool = False):
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    updated = self._apply_update(copy.deepcopy(doc), update)
                    self._docs[idx] = updated
                    return SimpleNamespace(matched_count=1, upserted_id=None)

            if upsert:
                new_doc = copy.deepcopy(query)
                new_doc = self._apply_update(new_doc, update)
                self._docs.append(new_doc)
                return SimpleNamespace(matched_count=0, upserted_id=len(self._docs))

        return SimpleNamespace(matched_count=0, upserted_id=None)

    async def insert_one(self, document: Dict[str, Any]):
        async with self._lock:
            self._docs.append(copy.deepcopy(document))

    async def delete_one(self, query: Dict[str, Any]):
        async with self._lock:
            for idx, doc in enumerate(self._docs):
                if self._matches(doc, query):
                    del self._docs[idx]
                    return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def delete_many(self, query: Dict[str, Any]):
        async with self._lock:
            before = len(self._docs)
            self._docs = [doc for doc in self._docs if not self._matches(doc, query)]
            return SimpleNamespace(deleted_count=before - len(self._docs))

    async def find_one_and_update(
        self,
        query: Dict[str, Any],
        update: Dict[str, Any],
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
                new_doc = copy.deepcopy(query)
                new_doc = self._apply_update(new_doc, update)
                self._docs.append(new_doc)
                if return_document == ReturnDocument.AFTER:
                    return copy.deepcopy(new_doc)
                return None

        return None

    def _apply_update(self, doc: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        for op, payload in update.items():
            if op == "$set":
                for key, value in payload.items():
                    doc[key] = copy.deepcopy(value)
            elif op == "$inc":
                for key, value in payload.items():
                    current = doc.get(key, 0)
                    doc[key] = current + value
            else:  # pragma: no cover - only the above operators are used today
                raise ValueError(f"Unsupported update operator: {op}")
        return doc

    def _matches(self, doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
        for key, expected in (query or {}).items():
            actual = doc.get(key)
            if isinstance(expected, dict):
                if "$gt" in expected:
                    if actual is None or actual <= expected["$gt"]:
                        return False
                elif "$regex" in expected:
                    flags = re.IGNORECASE if "i" in expected.get("$options", "") else 0
                    if not isinstance(actual, str) or not re.search(expected["$regex"], actual, flags):
                        return False
                else:  # pragma: no cover - extend as new operators are required
                    raise ValueError(f"Unsupported query operator(s): {expected}")
            else:
                if actual != expected:
                    return False
        return True


class InMemoryDatabase:
    def __init__(self):
        self.quizzes = InMemoryCollection()
        self.answers = InMemoryCollection()
        self.results = InMemoryCollection()
        self.quiz_event_counters = InMemoryCollection()
        self.quiz_events = InMemoryCollection()


def open_database(settings: Settings) -> Tuple[Optional[AsyncMongoClient], Any]:
    """Return ``(client, database)``; the client is ``None`` for the in-memory store."""

    if not settings.MONGO_URL:
        return None, InMemoryDatabase()

    timeout_ms = int(settings.GATEWAY_TIMEOUT_SECONDS * 1000)
    client: AsyncMongoClient = AsyncMongoClient(
        settings.MONGO_URL,
        tz_aware=True,
        serverSelectionTimeoutMS=timeout_ms,
    )
    return client, client[settings.MONGO_DB]
