from __future__ import annotations

from datetime import datetime
from typing import Callable, List, Optional, Sequence

from .errors import AuthorizationError, InvalidStateError, NotFoundError, TransientError, ValidationError, VersionConflict
from .events import EventStore
from .gateway import QuizGateway
from .ledger import AnswerLedger
from .models import Leaderboard, OwnerStats, Player, Question, Quiz, ResultRecord
from .scoring import score
from .utils import generate_quiz_code, now, player_id_for


HOST_NAME = "Host"
CODE_ATTEMPTS = 5
RECENT_QUIZZES = 5


def validate_quiz_input(title: str, questions: Sequence[Question], owner_id: str) -> None:
    if not owner_id or not owner_id.strip():
        raise ValidationError("An owner is required to create a quiz")
    if not title or not title.strip():
        raise ValidationError("Quiz title must not be empty")
    if not questions:
        raise ValidationError("A quiz needs at least one question")

    for number, q in enumerate(questions, start=1):
        if not q.text.strip():
            raise ValidationError(f"Question {number} has no text")
        if len(q.options) < 2:
            raise ValidationError(f"Question {number} needs at least two options")
        if any(not option.strip() for option in q.options):
            raise ValidationError(f"Question {number} has an empty option")
        if not 0 <= q.correct_option_index < len(q.options):
            raise ValidationError(f"Question {number} has no option {q.correct_option_index}")


class QuizController:
    """Session state machine: lobby -> active -> finished.

    Every transition reads the quiz, checks the caller and the state, and
    writes the new state with a compare-and-swap on the version it read. A
    lost race surfaces as ``VersionConflict``; nothing here retries it.
    """

    def __init__(
        self,
        gateway: QuizGateway,
        events: Optional[EventStore] = None,
        clock: Callable[[], datetime] = now,
        code_length: int = 6,
    ):
        self.gateway = gateway
        self.events = events
        self.clock = clock
        self.code_length = code_length
        self.ledger = AnswerLedger(gateway, clock)

    async def get_quiz(self, quiz_id: str) -> Quiz:
        quiz = await self.gateway.get_quiz(quiz_id)
        if not quiz:
            raise NotFoundError("Quiz not found")
        return quiz

    def _require_owner(self, quiz: Quiz, by_owner_id: str) -> None:
        if by_owner_id != quiz.owner_id:
            raise AuthorizationError("Only the host can do that")

    async def create(self, title: str, questions: Sequence[Question], owner_id: str) -> Quiz:
        validate_quiz_input(title, questions, owner_id)

        for _ in range(CODE_ATTEMPTS):
            ts = self.clock()
            quiz = Quiz(
                id=generate_quiz_code(self.code_length),
                title=title.strip(),
                owner_id=owner_id,
                questions=[q.model_copy(deep=True) for q in questions],
                players=[Player(id=owner_id, display_name=HOST_NAME)],
                created_at=ts,
                updated_at=ts,
            )
            try:
                quiz = await self.gateway.insert_quiz(quiz)
            except VersionConflict:
                continue

            if self.events:
                await self.events.reset(quiz.id)
            await self._publish_players(quiz)
            return quiz

        raise TransientError("Could not allocate a free quiz code, try again")

    async def join(self, quiz_id: str, display_name: str, player_id: Optional[str] = None) -> Player:
        name = (display_name or "").strip()
        if not name:
            raise ValidationError("Display name must not be empty")
        pid = player_id or player_id_for(name)

        quiz = await self.get_quiz(quiz_id)
        if quiz.status != "lobby":
            raise InvalidStateError("Quiz has already started; you can no longer join")

        if not player_id and pid == quiz.owner_id:
            raise ValidationError(f"Display name {name!r} is reserved for the host")

        existing = quiz.player(pid)
        if existing:
            return existing

        player = Player(id=pid, display_name=name)
        saved = await self.gateway.put_quiz(
            quiz.model_copy(update={"players": [*quiz.players, player]}),
            quiz.version,
        )
        await self._publish_players(saved)
        return player

    async def start(self, quiz_id: str, by_owner_id: str) -> Quiz:
        quiz = await self.get_quiz(quiz_id)
        self._require_owner(quiz, by_owner_id)
        if quiz.status != "lobby":
            raise InvalidStateError(f"Cannot start a quiz that is {quiz.status}")

        saved = await self.gateway.put_quiz(
            quiz.model_copy(
                update={
                    "status": "active",
                    "current_question_index": 0,
                    "usage_count": quiz.usage_count + 1,
                    "last_used_at": self.clock(),
                }
            ),
            quiz.version,
        )
        await self._publish_question(saved)
        return saved

    async def advance(self, quiz_id: str, by_owner_id: str) -> Quiz | Leaderboard:
        """Move to the next question, or finish the quiz after the last one.

        Finishing returns the leaderboard and writes one result record per
        player; only the caller that wins the compare-and-swap gets there.
        If writing results fails part way, advancing the finished quiz again
        writes the missing records.
        """

        quiz = await self.get_quiz(quiz_id)
        self._require_owner(quiz, by_owner_id)
        if quiz.status == "finished" and not quiz.results_written:
            return await self._write_results(quiz)
        if quiz.status != "active":
            raise InvalidStateError(f"Cannot advance a quiz that is {quiz.status}")

        next_idx = quiz.current_question_index + 1
        if next_idx < len(quiz.questions):
            saved = await self.gateway.put_quiz(
                quiz.model_copy(update={"current_question_index": next_idx}),
                quiz.version,
            )
            await self._publish_question(saved)
            return saved

        saved = await self.gateway.put_quiz(
            quiz.model_copy(update={"status": "finished", "finished_at": self.clock()}),
            quiz.version,
        )
        return await self._write_results(saved)

    async def _write_results(self, quiz: Quiz) -> Leaderboard:
        # Answers are read after the status flip so no new ones can be accepted.
        leaderboard = score(quiz, await self.ledger.snapshot(quiz.id))
        for entry in leaderboard.entries:
            await self.gateway.put_result(
                ResultRecord(
                    quiz_id=quiz.id,
                    run=quiz.usage_count,
                    player_id=entry.player_id,
                    player_name=entry.player_name,
                    score=entry.score,
                    total_questions=leaderboard.total_questions,
                    completed_at=entry.completed_at or quiz.finished_at,
                )
            )

        try:
            await self.gateway.put_quiz(quiz.model_copy(update={"results_written": True}), quiz.version)
        except VersionConflict:
            current = await self.get_quiz(quiz.id)
            if current.results_written:
                return leaderboard
            raise

        if self.events:
            await self.events.publish(
                quiz.id,
                {"type": "game_over", "leaderboard": leaderboard.model_dump(mode="json")},
            )
        return leaderboard

    async def submit(self, quiz_id: str, player_id: str, question_index: int, selected_option_index: int) -> None:
        await self.ledger.submit(quiz_id, player_id, question_index, selected_option_index)

    async def rehost(self, quiz_id: str, by_owner_id: str) -> Quiz:
        """Open a finished quiz for another run with a fresh lobby."""

        quiz = await self.get_quiz(quiz_id)
        self._require_owner(quiz, by_owner_id)
        if quiz.status != "finished":
            raise InvalidStateError("Only a finished quiz can be hosted again")
        if not quiz.results_written:
            # Results of the last run are stored before its answers are cleared.
            await self._write_results(quiz)
            quiz = await self.get_quiz(quiz_id)

        host = quiz.player(quiz.owner_id) or Player(id=quiz.owner_id, display_name=HOST_NAME)
        saved = await self.gateway.put_quiz(
            quiz.model_copy(
                update={
                    "status": "lobby",
                    "current_question_index": 0,
                    "players": [host],
                    "finished_at": None,
                    "results_written": False,
                }
            ),
            quiz.version,
        )
        await self.ledger.clear(saved.id)
        if self.events:
            await self.events.reset(saved.id)
        await self._publish_players(saved)
        return saved

    async def delete(self, quiz_id: str, by_owner_id: str) -> None:
        quiz = await self.get_quiz(quiz_id)
        self._require_owner(quiz, by_owner_id)

        await self.gateway.delete_quiz(quiz_id, by_owner_id)
        await self.ledger.clear(quiz_id)
        if self.events:
            await self.events.drop(quiz_id)

    async def library(self, owner_id: str, search: Optional[str] = None) -> List[Quiz]:
        return await self.gateway.list_quizzes_by_owner(owner_id, search=search)

    async def owner_stats(self, owner_id: str) -> OwnerStats:
        quizzes = await self.gateway.list_quizzes_by_owner(owner_id)
        if not quizzes:
            return OwnerStats()

        most_used = max(quizzes, key=lambda q: q.usage_count)
        recent = [q for q in quizzes if q.last_used_at is not None][:RECENT_QUIZZES]
        return OwnerStats(
            total_quizzes=len(quizzes),
            total_questions=sum(len(q.questions) for q in quizzes),
            most_used_quiz_id=most_used.id if most_used.usage_count else None,
            recent_quiz_ids=[q.id for q in recent],
        )

    async def leaderboard(self, quiz_id: str) -> List[ResultRecord]:
        return await self.gateway.list_results_by_quiz(quiz_id)

    async def player_history(self, player_id: str) -> List[ResultRecord]:
        return await self.gateway.list_results_by_player(player_id)

    async def _publish_players(self, quiz: Quiz):
        if not self.events:
            return
        await self.events.publish(
            quiz.id,
            {
                "type": "players_update",
                "players": [p.model_dump() for p in quiz.players],
            },
        )

    async def _publish_question(self, quiz: Quiz):
        if not self.events:
            return
        q = quiz.questions[quiz.current_question_index]
        await self.events.publish(
            quiz.id,
            {
                "type": "question",
                "question_index": quiz.current_question_index,
                "total_questions": len(quiz.questions),
                "question": {"text": q.text, "options": q.options},
            },
        )
