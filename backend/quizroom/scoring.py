from __future__ import annotations

from typing import List

from .ledger import LedgerSnapshot
from .models import Leaderboard, LeaderboardEntry, Quiz


def sort_leaderboard(entries: List[LeaderboardEntry]) -> List[LeaderboardEntry]:
    # Score descending, then earliest completion; players without a completion
    # time keep their input (join) order after those with one.
    return sorted(
        entries,
        key=lambda e: (-e.score, e.completed_at is None, e.completed_at.timestamp() if e.completed_at else 0.0),
    )


def score(quiz: Quiz, ledger: LedgerSnapshot) -> Leaderboard:
    """Score every player of ``quiz`` against the answers in ``ledger``.

    A missing answer counts as incorrect. Pure: no I/O and no mutation of
    either input.
    """

    entries = []
    for player in quiz.players:
        points = sum(
            1
            for idx, question in enumerate(quiz.questions)
            if ledger.get(player.id, idx) == question.correct_option_index
        )
        entries.append(
            LeaderboardEntry(
                player_id=player.id,
                player_name=player.display_name,
                score=points,
                completed_at=ledger.completed_at(player.id),
            )
        )

    return Leaderboard(
        quiz_id=quiz.id,
        total_questions=len(quiz.questions),
        entries=sort_leaderboard(entries),
    )
