# backend/difficulty_scoring.py
"""
Difficulty scoring for bank questions.

Scores are appended to the question's difficulty history; the attempt
engine only ever reads the newest one. The daily counter is process-local
and best-effort: several API processes each keep their own count.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, Dict, Optional
import logging
import math
import random
import re
import threading

from sqlalchemy.orm import Session

from config import get_config
from errors import QuestionNotFoundError, UsageLimitExceeded
from models import DifficultyScore, Question

logger = logging.getLogger(__name__)

MATH_SUBJECT = re.compile(r"math|algebra|calculus|คณิต", re.IGNORECASE)
MATH_BODY = re.compile(r"equation|integral", re.IGNORECASE)
SCIENCE_SUBJECT = re.compile(r"physics|chemistry|science|ชีว|ฟิสิกส์", re.IGNORECASE)
SCIENCE_BODY = re.compile(r"velocity|energy|atom", re.IGNORECASE)


@dataclass
class ScoreResult:
    difficulty: int
    reason: str
    model_name: str


@dataclass
class UsageResult:
    allowed: bool
    remaining: float


def clamp_difficulty(value: float) -> int:
    # round half up
    return int(min(5, max(1, math.floor(value + 0.5))))


def extract_grade_level(grade_level: str) -> Optional[int]:
    match = re.search(r"\d+", grade_level or "")
    return int(match.group(0)) if match else None


def heuristic_score(subject: str, grade_level: str, body: str,
                    rng: random.Random = None) -> ScoreResult:
    """Local difficulty estimate from grade level, length and keyword hints"""
    rng = rng or random
    word_count = len((body or "").split())
    grade = extract_grade_level(grade_level)

    subject_hint = 1 if MATH_SUBJECT.search(subject or "") or MATH_BODY.search(body or "") else 0
    science_hint = 1 if SCIENCE_SUBJECT.search(subject or "") or SCIENCE_BODY.search(body or "") else 0

    base_from_grade = math.ceil(min(5, max(1, grade / 3))) if grade else 2
    base_from_length = clamp_difficulty(word_count / 40)
    jitter = rng.random() * 0.6 - 0.2
    combined = (base_from_grade + base_from_length + subject_hint + science_hint) / 2 + jitter

    reason = " | ".join([
        f"Estimated from {word_count} words at grade level {grade_level or 'unknown'}",
        "Technical keywords found" if subject_hint + science_hint > 0
        else "No prominent technical keywords",
        "Local heuristic scorer",
    ])
    return ScoreResult(
        difficulty=clamp_difficulty(combined),
        reason=reason,
        model_name=get_config().SCORING_CONFIG["model_name"],
    )


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


class DailyUsageCounter:
    """Counts scoring calls per calendar day (UTC date key)"""

    def __init__(self, today: Callable[[], date] = None):
        self._today = today or utc_today
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def increment(self, daily_limit: int) -> UsageResult:
        if daily_limit is None or daily_limit <= 0:
            return UsageResult(allowed=True, remaining=math.inf)

        key = self._today().isoformat()
        with self._lock:
            current = self._counts.get(key, 0)
            if current >= daily_limit:
                return UsageResult(allowed=False, remaining=0)
            self._counts[key] = current + 1
            return UsageResult(allowed=True, remaining=daily_limit - (current + 1))


class DifficultyScoringService:
    """Scores a teacher's question and appends the result to its history"""

    def __init__(self, counter: DailyUsageCounter = None, daily_limit: int = None,
                 rng: random.Random = None):
        self.counter = counter or DailyUsageCounter()
        if daily_limit is None:
            daily_limit = get_config().SCORING_CONFIG["max_calls_per_day"]
        self.daily_limit = daily_limit
        self.rng = rng

    def score_question(self, db: Session, question_id: int,
                       teacher_id: int) -> DifficultyScore:
        usage = self.counter.increment(self.daily_limit)
        if not usage.allowed:
            raise UsageLimitExceeded("Daily scoring limit reached, queued for nightly batch")

        question = db.query(Question).filter(
            Question.id == question_id,
            Question.created_by_id == teacher_id,
        ).first()
        if question is None:
            raise QuestionNotFoundError(f"Question {question_id} not found")

        result = heuristic_score(question.subject, question.grade_level,
                                 question.body, rng=self.rng)
        score = DifficultyScore(
            question_id=question.id,
            difficulty=result.difficulty,
            reason=result.reason,
            model_name=result.model_name,
        )
        db.add(score)
        db.commit()
        db.refresh(score)

        logger.info(f"Scored question {question_id}: difficulty={result.difficulty} "
                    f"(remaining today: {usage.remaining})")
        return score
