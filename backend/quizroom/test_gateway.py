from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from unittest import IsolatedAsyncioTestCase, mock

from pymongo.errors import ServerSelectionTimeoutError

from .db import InMemoryDatabase, Settings
from .errors import NotFoundError, TransientError, VersionConflict
from .gateway import QuizGateway
from .models import AnswerSubmission, Player, Question, Quiz, ResultRecord

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _quiz(quiz_id: str = "ROOM01", owner_id: str = "owner", title: str = "Capitals") -> Quiz:
    return Quiz(
        id=quiz_id,
        title=title,
        owner_id=owner_id,
        questions=[Question(text="Capital of France?", options=["Rome", "Paris"], correct_option_index=1)],
        players=[Player(id=owner_id, display_name="Host")],
    )


def _result(player_id: str, score: int, seconds: int, quiz_id: str = "ROOM01", run: int = 1) -> ResultRecord:
    return ResultRecord(
        quiz_id=quiz_id,
        run=run,
        player_id=player_id,
        player_name=player_id.title(),
        score=score,
        total_questions=5,
        completed_at=T0 + timedelta(seconds=seconds),
    )


class QuizGatewayTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = InMemoryDatabase()
        self.gateway = QuizGateway(Settings(_env_file=None), database=self.db)
        await self.gateway.open()

    async def test_insert_assigns_first_version(self):
        stored = await self.gateway.insert_quiz(_quiz())

        self.assertEqual(stored.version, 1)
        self.assertEqual(await self.gateway.get_quiz("ROOM01"), stored)
        self.assertIsNone(await self.gateway.get_quiz("MISSING"))

    async def test_insert_rejects_taken_code(self):
        await self.gateway.insert_quiz(_quiz())
        with self.assertRaises(VersionConflict):
            await self.gateway.insert_quiz(_quiz(title="Other"))

    async def test_put_is_compare_and_swap(self):
        stored = await self.gateway.insert_quiz(_quiz())

        first = await self.gateway.put_quiz(stored.model_copy(update={"status": "active"}), stored.version)
        self.assertEqual(first.version, 2)
        self.assertEqual(first.status, "active")

        with self.assertRaises(VersionConflict):
            await self.gateway.put_quiz(stored.model_copy(update={"current_question_index": 0}), stored.version)
        self.assertEqual((await self.gateway.get_quiz("ROOM01")).version, 2)

    async def test_delete_requires_matching_owner(self):
        await self.gateway.insert_quiz(_quiz())

        with self.assertRaises(NotFoundError):
            await self.gateway.delete_quiz("ROOM01", "someone-else")
        await self.gateway.delete_quiz("ROOM01", "owner")
        with self.assertRaises(NotFoundError):
            await self.gateway.delete_quiz("ROOM01", "owner")

    async def test_leaderboard_query_orders_and_caps(self):
        for i in range(12):
            await self.gateway.put_result(_result(f"p{i}", score=i % 4, seconds=i))

        board = await self.gateway.list_results_by_quiz("ROOM01")

        self.assertEqual(len(board), 10)
        self.assertEqual([r.player_id for r in board[:3]], ["p3", "p7", "p11"])
        scores = [r.score for r in board]
        self.assertEqual(scores, sorted(scores, reverse=True))

    async def test_result_writes_are_idempotent_per_run(self):
        await self.gateway.put_result(_result("p", 3, 1))
        await self.gateway.put_result(_result("p", 3, 1))
        await self.gateway.put_result(_result("p", 1, 9, run=2))

        history = await self.gateway.list_results_by_player("p")
        self.assertEqual([(r.run, r.score) for r in history], [(2, 1), (1, 3)])

    async def test_owner_listing_search_is_literal_and_case_insensitive(self):
        await self.gateway.insert_quiz(_quiz("ROOM01", title="C++ basics"))
        await self.gateway.insert_quiz(_quiz("ROOM02", title="Python basics"))
        await self.gateway.insert_quiz(_quiz("ROOM03", owner_id="other", title="c++ advanced"))

        found = await self.gateway.list_quizzes_by_owner("owner", search="c++")
        self.assertEqual([q.id for q in found], ["ROOM01"])
        self.assertEqual(len(await self.gateway.list_quizzes_by_owner("owner")), 2)

    async def test_answers_are_keyed_per_player_and_question(self):
        for pick in (0, 1):
            await self.gateway.put_answer(
                AnswerSubmission(
                    quiz_id="ROOM01", player_id="p", question_index=0, selected_option_index=pick, submitted_at=T0
                )
            )

        await self.gateway.put_answer(
            AnswerSubmission(quiz_id="ROOM01", player_id="q", question_index=0, selected_option_index=0, submitted_at=T0)
        )
        await self.gateway.delete_answer("ROOM01", "q", 0)

        answers = await self.gateway.list_answers("ROOM01")
        self.assertEqual([(a.player_id, a.selected_option_index) for a in answers], [("p", 1)])
        await self.gateway.clear_answers("ROOM01")
        self.assertIsNone(await self.gateway.get_answer("ROOM01", "p", 0))

    async def test_slow_store_surfaces_as_transient(self):
        async def _hang(query):
            await asyncio.sleep(1)

        gateway = QuizGateway(Settings(_env_file=None, GATEWAY_TIMEOUT_SECONDS=0.01), database=self.db)
        with mock.patch.object(self.db.quizzes, "find_one", side_effect=_hang):
            with self.assertRaises(TransientError):
                await gateway.get_quiz("ROOM01")

    async def test_unreachable_store_surfaces_as_transient(self):
        failing = mock.AsyncMock(side_effect=ServerSelectionTimeoutError("no servers"))
        with mock.patch.object(self.db.quizzes, "find_one", failing):
            with self.assertRaises(TransientError):
                await self.gateway.get_quiz("ROOM01")

    async def test_closed_gateway_refuses_work(self):
        await self.gateway.close()
        with self.assertRaises(RuntimeError):
            await self.gateway.get_quiz("ROOM01")
