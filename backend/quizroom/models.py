from typing import List, Optional, Literal
from pydantic import BaseModel, Field
from datetime import datetime

from .utils import now

QuizStatus = Literal["lobby", "active", "finished"]


class Question(BaseModel):
    text: str
    options: List[str]
    correct_option_index: int


class Player(BaseModel):
    id: str
    display_name: str


# States: lobby -> active -> finished (rehost starts a new run back in lobby)
class Quiz(BaseModel):
    id: str
    title: str
    owner_id: str
    questions: List[Question]
    status: QuizStatus = "lobby"
    current_question_index: int = 0
    players: List[Player] = Field(default_factory=list)
    version: int = 0
    usage_count: int = 0
    created_at: datetime = Field(default_factory=now)
    updated_at: datetime = Field(default_factory=now)
    last_used_at: Optional[datetime] = None
    # Set when the run flips to finished; results_written once every result record is stored.
    finished_at: Optional[datetime] = None
    results_written: bool = False

    def player(self, player_id: str) -> Optional[Player]:
        return next((p for p in self.players if p.id == player_id), None)


class AnswerSubmission(BaseModel):
    quiz_id: str
    player_id: str
    question_index: int
    selected_option_index: int
    submitted_at: datetime


class ResultRecord(BaseModel):
    quiz_id: str
    run: int
    player_id: str
    player_name: str
    score: int
    total_questions: int
    completed_at: datetime


class LeaderboardEntry(BaseModel):
    player_id: str
    player_name: str
    score: int
    completed_at: Optional[datetime] = None


class Leaderboard(BaseModel):
    quiz_id: str
    total_questions: int
    entries: List[LeaderboardEntry] = Field(default_factory=list)


class OwnerStats(BaseModel):
    total_quizzes: int = 0
    total_questions: int = 0
    most_used_quiz_id: Optional[str] = None
    recent_quiz_ids: List[str] = Field(default_factory=list)
