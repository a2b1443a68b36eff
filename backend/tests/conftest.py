import os

# Point the app at a throwaway database before any project module is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_FILE", "")

from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from adaptive_engine import AdaptiveEngine, EngineSettings
from database import Base
from models import Choice, DifficultyScore, Exam, Question
from services import AttemptService
from transactions import TransactionCoordinator

TEACHER_ID = 100
OTHER_TEACHER_ID = 200
STUDENT_ID = 1
OTHER_STUDENT_ID = 2


class BankFactory:
    """Creates exams and questions with deterministic creation order"""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._clock = datetime(2024, 1, 1, 8, 0, 0)

    def _tick(self):
        self._clock += timedelta(seconds=1)
        return self._clock

    def exam(self, question_count=10, is_adaptive=True, subject="Math",
             difficulty_min=None, difficulty_max=None, created_by_id=TEACHER_ID):
        with self.session_factory() as db:
            exam = Exam(
                title="Adaptive Math",
                is_adaptive=is_adaptive,
                question_count=question_count,
                difficulty_min=difficulty_min,
                difficulty_max=difficulty_max,
                subject=subject,
                created_by_id=created_by_id,
            )
            db.add(exam)
            db.commit()
            return exam.id

    def question(self, difficulty=None, subject="Math", created_by_id=TEACHER_ID,
                 body="What is 2 + 2?"):
        """Question with two choices; returns (question_id, correct_id, wrong_id)"""
        with self.session_factory() as db:
            question = Question(
                subject=subject,
                grade_level="Grade 6",
                body=body,
                explanation="Basic arithmetic",
                created_by_id=created_by_id,
                created_at=self._tick(),
                choices=[
                    Choice(text="4", is_correct=True, order=0),
                    Choice(text="5", is_correct=False, order=1),
                ],
            )
            if difficulty is not None:
                question.difficulty_scores.append(
                    DifficultyScore(difficulty=difficulty, reason=f"level {difficulty}",
                                    model_name="test")
                )
            db.add(question)
            db.commit()
            correct = next(c.id for c in question.choices if c.is_correct)
            wrong = next(c.id for c in question.choices if not c.is_correct)
            return question.id, correct, wrong

    def choices_of(self, question_id):
        """(correct_id, wrong_id) for a question"""
        with self.session_factory() as db:
            question = db.get(Question, question_id)
            correct = next(c.id for c in question.choices if c.is_correct)
            wrong = next(c.id for c in question.choices if not c.is_correct)
            return correct, wrong


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(test_engine)
    yield test_engine
    Base.metadata.drop_all(test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture
def adaptive_engine():
    return AdaptiveEngine(EngineSettings())


@pytest.fixture
def service(session_factory, adaptive_engine):
    return AttemptService(TransactionCoordinator(session_factory), adaptive_engine)


@pytest.fixture
def bank(session_factory):
    return BankFactory(session_factory)
