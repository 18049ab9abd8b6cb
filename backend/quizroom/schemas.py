
from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime
from .models import Leaderboard, Player, Question, Quiz, QuizStatus


class CreateQuizIn(BaseModel):
    title: str
    owner_id: str
    questions: List[Question]


class JoinIn(BaseModel):
    display_name: str
    player_id: Optional[str] = None


class AnswerIn(BaseModel):
    player_id: str
    question_index: int
    option_index: int


class PublicQuestionOut(BaseModel):
    text: str
    options: List[str]


class PublicQuizOut(BaseModel):
    id: str
    title: str
    status: QuizStatus
    players: List[Player]
    current_question_index: int
    total_questions: int
    current_question: Optional[PublicQuestionOut] = None
    updated_at: datetime

    @classmethod
    def from_quiz(cls, quiz: Quiz) -> "PublicQuizOut":
        current = None
        if quiz.status == "active":
            q = quiz.questions[quiz.current_question_index]
            current = PublicQuestionOut(text=q.text, options=q.options)
        return cls(
            id=quiz.id,
            title=quiz.title,
            status=quiz.status,
            players=quiz.players,
            current_question_index=quiz.current_question_index,
            total_questions=len(quiz.questions),
            current_question=current,
            updated_at=quiz.updated_at,
        )


class AdvanceOut(BaseModel):
    status: QuizStatus
    quiz: Optional[PublicQuizOut] = None
    leaderboard: Optional[Leaderboard] = None
