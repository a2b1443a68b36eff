# backend/models.py
"""Models for exams, the question bank and adaptive attempts"""

from datetime import datetime, timezone

from sqlalchemy import (Boolean, Column, DateTime, ForeignKey, Integer, Numeric,
                        String, Text, UniqueConstraint)
from sqlalchemy.orm import relationship

from database import Base

THETA_TYPE = Numeric(4, 2, asdecimal=True)


def utcnow() -> datetime:
    """Naive UTC timestamp with microseconds (stable ordering on SQLite)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Exam(Base):
    """Exam configuration: adaptivity, question budget and difficulty gate"""
    __tablename__ = "exams"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    is_adaptive = Column(Boolean, default=True, nullable=False)
    question_count = Column(Integer, default=10, nullable=False)
    difficulty_min = Column(Integer, nullable=True)
    difficulty_max = Column(Integer, nullable=True)
    subject = Column(String, nullable=True, index=True)
    created_by_id = Column(Integer, index=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)


class Choice(Base):
    __tablename__ = "choices"

    id = Column(Integer, primary_key=True, index=True)
    question_id = Column(Integer, ForeignKey("questions.id"), index=True, nullable=False)
    text = Column(Text, nullable=False)
    is_correct = Column(Boolean, default=False, nullable=False)
    order = Column(Integer, default=0, nullable=False)

    question = relationship("Question", back_populates="choices")


class DifficultyScore(Base):
    """Append-only difficulty history; the newest row is the current difficulty"""
    __tablename__ = "difficulty_scores"

    id = Column(Integer, primary_key=True, index=True)
    question_id = Column(Integer, ForeignKey("questions.id"), index=True, nullable=False)
    difficulty = Column(Integer, nullable=True)
    reason = Column(Text, default="")
    model_name = Column(String, default="")
    created_at = Column(DateTime, default=utcnow, index=True)

    question = relationship("Question", back_populates="difficulty_scores")


class Question(Base):
    """Questions in the bank (read-only from the attempt engine)"""
    __tablename__ = "questions"

    id = Column(Integer, primary_key=True, index=True)
    subject = Column(String, index=True, nullable=False)
    grade_level = Column(String, default="")
    body = Column(Text, nullable=False)
    explanation = Column(Text, default="")
    created_by_id = Column(Integer, index=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, index=True)

    choices = relationship("Choice", back_populates="question",
                           order_by=Choice.order, cascade="all, delete-orphan")
    difficulty_scores = relationship(
        "DifficultyScore", back_populates="question",
        order_by=[DifficultyScore.created_at.desc(), DifficultyScore.id.desc()],
        cascade="all, delete-orphan",
    )

    @property
    def latest_difficulty(self):
        """Difficulty of the newest score, None when unscored"""
        if not self.difficulty_scores:
            return None
        return self.difficulty_scores[0].difficulty

    @property
    def latest_reason(self):
        if not self.difficulty_scores:
            return None
        return self.difficulty_scores[0].reason


class ExamQuestion(Base):
    """Static question linkage used by standard (non-adaptive) exams"""
    __tablename__ = "exam_questions"
    __table_args__ = (UniqueConstraint("exam_id", "question_id", name="uq_exam_question"),)

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), index=True, nullable=False)
    question_id = Column(Integer, ForeignKey("questions.id"), nullable=False)
    order = Column(Integer, default=0, nullable=False)


class ExamAttempt(Base):
    """One run of an exam by one user"""
    __tablename__ = "exam_attempts"

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id"), index=True, nullable=False)
    user_id = Column(Integer, index=True, nullable=False)
    theta_start = Column(THETA_TYPE, nullable=False)
    theta_end = Column(THETA_TYPE, nullable=True)
    score = Column(Integer, default=0, nullable=False)
    current_question_id = Column(Integer, ForeignKey("questions.id"), nullable=True)
    started_at = Column(DateTime, default=utcnow)
    finished_at = Column(DateTime, nullable=True)
    # Optimistic lock: every UPDATE checks and bumps this counter
    version = Column(Integer, nullable=False, default=1)

    exam = relationship("Exam")
    current_question = relationship("Question")
    answers = relationship("AttemptAnswer", back_populates="attempt",
                           order_by="AttemptAnswer.id")

    __mapper_args__ = {"version_id_col": version}


class AttemptAnswer(Base):
    """Immutable record of one answered question"""
    __tablename__ = "attempt_answers"
    __table_args__ = (UniqueConstraint("attempt_id", "question_id", name="uq_attempt_question"),)

    id = Column(Integer, primary_key=True, index=True)
    attempt_id = Column(Integer, ForeignKey("exam_attempts.id"), index=True, nullable=False)
    question_id = Column(Integer, ForeignKey("questions.id"), nullable=False)
    choice_id = Column(Integer, ForeignKey("choices.id"), nullable=False)
    is_correct = Column(Boolean, nullable=False)
    theta_before = Column(THETA_TYPE, nullable=False)
    theta_after = Column(THETA_TYPE, nullable=False)
    picked_at = Column(DateTime, default=utcnow)

    attempt = relationship("ExamAttempt", back_populates="answers")
    question = relationship("Question")
