from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, Iterable, Optional, Tuple

from .errors import InvalidStateError, NotFoundError, ValidationError
from .gateway import QuizGateway
from .models import AnswerSubmission
from .utils import now


class LedgerSnapshot:
    """Immutable view of one quiz's answers, keyed by (player_id, question_index)."""

    def __init__(self, quiz_id: str, submissions: Iterable[AnswerSubmission]):
        self.quiz_id = quiz_id
        self._entries: Dict[Tuple[str, int], AnswerSubmission] = {}
        for submission in submissions:
            if submission.quiz_id == quiz_id:
                self._entries[(submission.player_id, submission.question_index)] = submission

    def get(self, player_id: str, question_index: int) -> Optional[int]:
        entry = self._entries.get((player_id, question_index))
        return entry.selected_option_index if entry else None

    def completed_at(self, player_id: str) -> Optional[datetime]:
        """Time of the player's latest submission, if they submitted anything."""

        times = [e.submitted_at for (pid, _), e in self._entries.items() if pid == player_id]
        return max(times) if times else None

    def __len__(self) -> int:
        return len(self._entries)


class AnswerLedger:
    def __init__(self, gateway: QuizGateway, clock: Callable[[], datetime] = now):
        self.gateway = gateway
        self.clock = clock

    async def submit(self, quiz_id: str, player_id: str, question_index: int, selected_option_index: int) -> None:
        """Record a player's answer for the current question (last write wins)."""

        quiz = await self.gateway.get_quiz(quiz_id)
        if not quiz:
            raise NotFoundError("Quiz not found")

        if quiz.status != "active":
            raise InvalidStateError(f"Quiz is {quiz.status}; answers are not being accepted")

        if question_index != quiz.current_question_index:
            raise InvalidStateError(
                f"Question {question_index} is not the current question ({quiz.current_question_index})"
            )

        if quiz.player(player_id) is None:
            raise NotFoundError(f"Player {player_id} has not joined this quiz")

        options = quiz.questions[question_index].options
        if not 0 <= selected_option_index < len(options):
            raise ValidationError(f"Option {selected_option_index} is out of range")

        previous = await self.gateway.get_answer(quiz_id, player_id, question_index)
        await self.gateway.put_answer(
            AnswerSubmission(
                quiz_id=quiz_id,
                player_id=player_id,
                question_index=question_index,
                selected_option_index=selected_option_index,
                submitted_at=self.clock(),
            )
        )

        # While a quiz is active only advance changes its version, so a new
        # version means the question closed between the check and the write.
        current = await self.gateway.get_quiz(quiz_id)
        if current is None or current.version != quiz.version:
            if previous:
                await self.gateway.put_answer(previous)
            else:
                await self.gateway.delete_answer(quiz_id, player_id, question_index)
            if current is None:
                raise NotFoundError("Quiz not found")
            raise InvalidStateError(f"Question {question_index} closed before the answer was recorded")

    async def get(self, quiz_id: str, player_id: str, question_index: int) -> Optional[int]:
        answer = await self.gateway.get_answer(quiz_id, player_id, question_index)
        return answer.selected_option_index if answer else None

    async def snapshot(self, quiz_id: str) -> LedgerSnapshot:
        return LedgerSnapshot(quiz_id, await self.gateway.list_answers(quiz_id))

    async def clear(self, quiz_id: str) -> None:
        await self.gateway.clear_answers(quiz_id)
