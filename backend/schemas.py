# backend/schemas.py

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Literal
from datetime import datetime
from decimal import Decimal


class ChoiceOut(BaseModel):
    id: int
    text: str


class QuestionOut(BaseModel):
    """Question as presented to a test-taker (no correctness flags)"""
    id: int
    subject: str
    grade_level: Optional[str] = None
    body: str
    explanation: Optional[str] = None
    difficulty: int
    hint: str
    choices: List[ChoiceOut]


class AttemptStart(BaseModel):
    exam_id: int
    user_id: int


class AnswerSubmission(BaseModel):
    user_id: int
    question_id: int
    choice_id: int


class AttemptFinish(BaseModel):
    user_id: int


class AttemptSummary(BaseModel):
    attempt_id: int
    score: int
    total: int
    theta_start: Decimal
    theta_end: Decimal
    answered: int
    finished_at: datetime


class AttemptProgress(BaseModel):
    """Result of ensure_current_question / start"""
    attempt_id: int
    status: Literal["completed", "in-progress"]
    question: Optional[QuestionOut] = None
    answered_count: int
    total_questions: int
    theta: Decimal
    score: int
    summary: Optional[AttemptSummary] = None


class AnswerResult(BaseModel):
    attempt_id: int
    status: Literal["completed", "in-progress"]
    question: Optional[QuestionOut] = None
    answered_count: int
    total_questions: int
    theta_after: Decimal
    is_correct: bool
    score: int
    summary: Optional[AttemptSummary] = None


class AnswerDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    question_id: int
    choice_id: int
    is_correct: bool
    theta_before: Decimal
    theta_after: Decimal
    picked_at: datetime


class DifficultyScoreRequest(BaseModel):
    teacher_id: int


class DifficultyScoreOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    question_id: int
    difficulty: Optional[int]
    reason: str
    model_name: str


class StandardLinkRequest(BaseModel):
    teacher_id: int
    force: bool = False


class StandardLinkResult(BaseModel):
    exam_id: int
    linked: int = Field(ge=0)
