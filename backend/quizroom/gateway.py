from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Awaitable, List, Optional, TypeVar

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, ExecutionTimeout

from .db import Settings, open_database
from .errors import NotFoundError, TransientError, VersionConflict
from .models import AnswerSubmission, Quiz, ResultRecord
from .utils import now

logger = logging.getLogger(__name__)

T = TypeVar("T")


class QuizGateway:
    """Persistence gateway for quizzes, answers and result records.

    Works against any Mongo-shaped async database: the in-memory one from
    ``db.py`` or a ``pymongo`` database. Construct it, ``await open()`` before
    first use and ``await close()`` when done.
    """

    def __init__(self, settings: Settings, database: Any = None):
        self._settings = settings
        self._timeout = settings.GATEWAY_TIMEOUT_SECONDS
        self._client = None
        self._db = database

    @property
    def db(self) -> Any:
        if self._db is None:
            raise RuntimeError("QuizGateway is not open")
        return self._db

    async def open(self) -> None:
        if self._db is None:
            self._client, self._db = open_database(self._settings)
        logger.info("Opening quiz store (%s)", "mongodb" if self._client else "in-memory")

        await self.call(self._db.quizzes.create_index("id", unique=True))
        await self.call(
            self._db.answers.create_index(
                [("quiz_id", ASCENDING), ("player_id", ASCENDING), ("question_index", ASCENDING)],
                unique=True,
            )
        )
        await self.call(self._db.results.create_index([("quiz_id", ASCENDING), ("score", DESCENDING)]))
        await self.call(self._db.results.create_index([("player_id", ASCENDING), ("completed_at", DESCENDING)]))
        await self.call(self._db.quizzes.create_index([("owner_id", ASCENDING), ("last_used_at", DESCENDING)]))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            logger.info("Closed quiz store")
        self._client = None
        self._db = None

    async def call(self, awaitable: Awaitable[T]) -> T:
        """Await a store operation under the request timeout."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise TransientError("Quiz store timed out") from exc
        except (ConnectionFailure, ExecutionTimeout) as exc:
            raise TransientError(f"Quiz store unavailable: {exc}") from exc

    async def collect(self, cursor) -> List[dict]:
        return [doc async for doc in cursor]

    # quizzes

    async def get_quiz(self, quiz_id: str) -> Quiz | None:
        doc = await self.call(self.db.quizzes.find_one({"id": quiz_id}))
        return Quiz(**doc) if doc else None

    async def insert_quiz(self, quiz: Quiz) -> Quiz:
        if await self.get_quiz(quiz.id) is not None:
            raise VersionConflict(f"Quiz code {quiz.id} is already taken")

        stored = quiz.model_copy(update={"version": 1})
        try:
            await self.call(self.db.quizzes.insert_one(stored.model_dump()))
        except DuplicateKeyError as exc:
            raise VersionConflict(f"Quiz code {quiz.id} is already taken") from exc
        return stored

    async def put_quiz(self, quiz: Quiz, expected_version: int) -> Quiz:
        """Compare-and-swap write: succeeds only if the stored version is unchanged."""

        doc = quiz.model_dump()
        doc["version"] = expected_version + 1
        doc["updated_at"] = now()

        updated = await self.call(
            self.db.quizzes.find_one_and_update(
                {"id": quiz.id, "version": expected_version},
                {"$set": doc},
                return_document=ReturnDocument.AFTER,
            )
        )
        if not updated:
            raise VersionConflict(f"Quiz {quiz.id} was modified concurrently")
        return Quiz(**updated)

    async def delete_quiz(self, quiz_id: str, owner_id: str) -> None:
        result = await self.call(self.db.quizzes.delete_one({"id": quiz_id, "owner_id": owner_id}))
        if not result.deleted_count:
            raise NotFoundError("Quiz not found")

    async def list_quizzes_by_owner(self, owner_id: str, search: Optional[str] = None) -> List[Quiz]:
        query: dict[str, Any] = {"owner_id": owner_id}
        if search:
            query["title"] = {"$regex": re.escape(search), "$options": "i"}

        cursor = self.db.quizzes.find(query).sort([("last_used_at", DESCENDING), ("created_at", DESCENDING)])
        docs = await self.call(self.collect(cursor))
        return [Quiz(**doc) for doc in docs]

    # answers

    async def put_answer(self, answer: AnswerSubmission) -> None:
        await self.call(
            self.db.answers.update_one(
                {
                    "quiz_id": answer.quiz_id,
                    "player_id": answer.player_id,
                    "question_index": answer.question_index,
                },
                {
                    "$set": {
                        "selected_option_index": answer.selected_option_index,
                        "submitted_at": answer.submitted_at,
                    }
                },
                upsert=True,
            )
        )

    async def get_answer(self, quiz_id: str, player_id: str, question_index: int) -> AnswerSubmission | None:
        doc = await self.call(
            self.db.answers.find_one(
                {"quiz_id": quiz_id, "player_id": player_id, "question_index": question_index}
            )
        )
        return AnswerSubmission(**doc) if doc else None

    async def list_answers(self, quiz_id: str) -> List[AnswerSubmission]:
        docs = await self.call(self.collect(self.db.answers.find({"quiz_id": quiz_id})))
        return [AnswerSubmission(**doc) for doc in docs]

    async def delete_answer(self, quiz_id: str, player_id: str, question_index: int) -> None:
        await self.call(
            self.db.answers.delete_one(
                {"quiz_id": quiz_id, "player_id": player_id, "question_index": question_index}
            )
        )

    async def clear_answers(self, quiz_id: str) -> None:
        await self.call(self.db.answers.delete_many({"quiz_id": quiz_id}))

    # results

    async def put_result(self, record: ResultRecord) -> None:
        await self.call(
            self.db.results.update_one(
                {"quiz_id": record.quiz_id, "run": record.run, "player_id": record.player_id},
                {"$set": record.model_dump()},
                upsert=True,
            )
        )

    async def list_results_by_quiz(self, quiz_id: str, limit: Optional[int] = None) -> List[ResultRecord]:
        cursor = (
            self.db.results.find({"quiz_id": quiz_id})
            .sort([("score", DESCENDING), ("completed_at", ASCENDING)])
            .limit(limit or self._settings.LEADERBOARD_LIMIT)
        )
        docs = await self.call(self.collect(cursor))
        return [ResultRecord(**doc) for doc in docs]

    async def list_results_by_player(self, player_id: str) -> List[ResultRecord]:
        cursor = self.db.results.find({"player_id": player_id}).sort("completed_at", DESCENDING)
        docs = await self.call(self.collect(cursor))
        return [ResultRecord(**doc) for doc in docs]
