from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest import TestCase

from .ledger import LedgerSnapshot
from .models import AnswerSubmission, Player, Question, Quiz
from .scoring import score

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _quiz(correct: list[int], players: list[str]) -> Quiz:
    return Quiz(
        id="ABC123",
        title="Capitals",
        owner_id=players[0],
        questions=[
            Question(text=f"Q{i}", options=["a", "b", "c"], correct_option_index=c) for i, c in enumerate(correct)
        ],
        status="finished",
        players=[Player(id=p, display_name=p.upper()) for p in players],
    )


def _answers(player_id: str, picks: list[int], start: datetime = T0) -> list[AnswerSubmission]:
    return [
        AnswerSubmission(
            quiz_id="ABC123",
            player_id=player_id,
            question_index=idx,
            selected_option_index=pick,
            submitted_at=start + timedelta(seconds=idx),
        )
        for idx, pick in enumerate(picks)
    ]


class ScoreTests(TestCase):
    def test_counts_matching_answers(self):
        quiz = _quiz([2, 1, 1], ["p"])
        board = score(quiz, LedgerSnapshot(quiz.id, _answers("p", [2, 1, 0])))

        self.assertEqual(board.total_questions, 3)
        self.assertEqual([(e.player_name, e.score) for e in board.entries], [("P", 2)])

    def test_missing_answers_count_as_incorrect(self):
        quiz = _quiz([0, 0], ["host", "quiet"])
        board = score(quiz, LedgerSnapshot(quiz.id, _answers("host", [0])))

        scores = {e.player_id: e.score for e in board.entries}
        self.assertEqual(scores, {"host": 1, "quiet": 0})
        quiet = next(e for e in board.entries if e.player_id == "quiet")
        self.assertIsNone(quiet.completed_at)

    def test_orders_by_score_then_completion_time(self):
        quiz = _quiz([1, 1], ["slow", "fast", "wrong"])
        answers = (
            _answers("slow", [1, 1], start=T0 + timedelta(minutes=1))
            + _answers("fast", [1, 1], start=T0)
            + _answers("wrong", [0, 0], start=T0)
        )
        board = score(quiz, LedgerSnapshot(quiz.id, answers))

        self.assertEqual([e.player_id for e in board.entries], ["fast", "slow", "wrong"])
        self.assertEqual([e.score for e in board.entries], [2, 2, 0])

    def test_ties_without_timestamps_keep_join_order(self):
        quiz = _quiz([1], ["c", "a", "b"])
        board = score(quiz, LedgerSnapshot(quiz.id, []))

        self.assertEqual([e.player_id for e in board.entries], ["c", "a", "b"])

    def test_answers_from_other_quizzes_are_ignored(self):
        quiz = _quiz([1], ["p"])
        foreign = AnswerSubmission(
            quiz_id="OTHER1", player_id="p", question_index=0, selected_option_index=1, submitted_at=T0
        )
        board = score(quiz, LedgerSnapshot(quiz.id, [foreign]))

        self.assertEqual(board.entries[0].score, 0)

    def test_is_deterministic_and_leaves_inputs_untouched(self):
        quiz = _quiz([0, 2, 1], ["a", "b"])
        snapshot = LedgerSnapshot(quiz.id, _answers("a", [0, 2, 2]) + _answers("b", [0, 2, 1]))
        before = quiz.model_dump()

        first = score(quiz, snapshot)
        second = score(quiz, snapshot)

        self.assertEqual(first, second)
        self.assertEqual(quiz.model_dump(), before)
        self.assertEqual(len(snapshot), 6)

    def test_entries_are_non_increasing_in_score(self):
        quiz = _quiz([0, 1, 2, 0], ["a", "b", "c", "d"])
        answers = (
            _answers("a", [1, 1, 1, 1])
            + _answers("b", [0, 1, 2, 0])
            + _answers("c", [0, 0, 0, 0])
            + _answers("d", [0, 1, 0, 0])
        )
        board = score(quiz, LedgerSnapshot(quiz.id, answers))

        points = [e.score for e in board.entries]
        self.assertEqual(points, sorted(points, reverse=True))
        self.assertEqual(board.entries[0].player_id, "b")
