# backend/services.py
"""
Attempt services: question bank access, attempt context loading and the
adaptive attempt state machine.

Attempt states:
    Active-NoQuestion  (current_question_id is NULL, finished_at is NULL)
    Active-Presented   (current_question_id set)
    Completed          (finished_at set, terminal)
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional
import logging

import pandas as pd
from sqlalchemy import and_, not_
from sqlalchemy.orm import Session, selectinload

from adaptive_engine import AdaptiveEngine
from errors import (AssignmentFailedError, AttemptAlreadyFinishedError,
                    AttemptInProgressError, AttemptNotFoundError,
                    ChoiceNotFoundError, ExamNotFoundError,
                    QuestionMismatchError, StandardExamQuestionError)
from models import (AttemptAnswer, Choice, DifficultyScore, Exam, ExamAttempt,
                    ExamQuestion, Question, utcnow)
from transactions import TransactionCoordinator
import schemas

logger = logging.getLogger(__name__)

DEFAULT_HINT = "AI rationale unavailable"


@dataclass
class AnswerRef:
    question_id: int
    is_correct: bool


@dataclass
class AttemptContext:
    """An attempt with everything needed to decide its next transition"""
    attempt: ExamAttempt
    exam: Exam
    current_question: Optional[Question]
    answers: List[AnswerRef] = field(default_factory=list)

    @property
    def answered_ids(self) -> List[int]:
        return [a.question_id for a in self.answers]

    @property
    def theta(self) -> Decimal:
        if self.attempt.theta_end is not None:
            return self.attempt.theta_end
        return self.attempt.theta_start


@dataclass(frozen=True)
class AttemptSnapshot:
    """Detached, read-only copy of an attempt row"""
    id: int
    exam_id: int
    user_id: int
    theta_start: Decimal
    theta_end: Optional[Decimal]
    score: int
    current_question_id: Optional[int]
    started_at: datetime
    finished_at: Optional[datetime]
    answered: int
    total_questions: int


def format_attempt_summary(attempt: AttemptSnapshot) -> Dict:
    """Pure projection of an attempt snapshot into its summary"""
    theta_end = attempt.theta_end if attempt.theta_end is not None else attempt.theta_start
    return {
        "attempt_id": attempt.id,
        "score": attempt.score,
        "total": attempt.total_questions,
        "theta_start": attempt.theta_start,
        "theta_end": theta_end,
        "answered": attempt.answered,
        "finished_at": attempt.finished_at or utcnow(),
    }


class QuestionService:
    """Question bank reads used by the selector, plus bulk import"""

    def fetch_candidates(self, db: Session, exam: Exam, exclude_ids: List[int],
                         limit: int) -> List[Question]:
        """Bounded window of unseen questions in (created_at, id) order"""
        filters = [Question.created_by_id == exam.created_by_id]
        if exam.subject:
            filters.append(Question.subject == exam.subject)
        if exclude_ids:
            filters.append(not_(Question.id.in_(exclude_ids)))

        return (
            db.query(Question)
            .options(selectinload(Question.difficulty_scores))
            .filter(and_(*filters))
            .order_by(Question.created_at, Question.id)
            .limit(limit)
            .all()
        )

    def serialize_question(self, question: Question) -> schemas.QuestionOut:
        difficulty = question.latest_difficulty
        return schemas.QuestionOut(
            id=question.id,
            subject=question.subject,
            grade_level=question.grade_level,
            body=question.body,
            explanation=question.explanation,
            difficulty=3 if difficulty is None else difficulty,
            hint=question.latest_reason or DEFAULT_HINT,
            choices=[
                schemas.ChoiceOut(id=c.id, text=c.text)
                for c in sorted(question.choices, key=lambda c: c.order)
            ],
        )

    def import_questions_from_df(self, db: Session, df: pd.DataFrame,
                                 created_by_id: int) -> int:
        """
        Import questions from a sheet with columns subject, grade_level, body,
        explanation, choice_1..choice_n, answer (1-based correct choice) and
        an optional difficulty.
        """
        df = df.copy()
        df.columns = df.columns.str.lower().str.strip()

        missing = [c for c in ("subject", "body", "answer") if c not in df.columns]
        if missing:
            raise ValueError(f"Missing required columns: {missing}")

        choice_columns = sorted(
            (c for c in df.columns if c.startswith("choice_")),
            key=lambda c: int(c.split("_", 1)[1]),
        )
        if len(choice_columns) < 2:
            raise ValueError("At least two choice_<n> columns are required")

        imported_count = 0
        for index, row in df.iterrows():
            if pd.isna(row["body"]) or not str(row["body"]).strip():
                logger.warning(f"Skipping row {index}: empty body")
                continue

            # answer numbers are column positions; only trailing blanks are dropped
            texts = [self._optional_text(row, c) for c in choice_columns]
            while texts and not texts[-1]:
                texts.pop()
            if "" in texts:
                missing_choice = choice_columns[texts.index("")]
                raise ValueError(f"Row {index}: {missing_choice} is blank but later choices are filled")
            try:
                answer = int(row["answer"])
            except (TypeError, ValueError):
                raise ValueError(f"Row {index}: answer must be a choice number")
            if not 1 <= answer <= len(texts):
                raise ValueError(f"Row {index}: answer {answer} out of range 1..{len(texts)}")

            question = Question(
                subject=str(row["subject"]).strip(),
                grade_level=self._optional_text(row, "grade_level"),
                body=str(row["body"]).strip(),
                explanation=self._optional_text(row, "explanation"),
                created_by_id=created_by_id,
                choices=[
                    Choice(text=text, is_correct=(i + 1 == answer), order=i)
                    for i, text in enumerate(texts)
                ],
            )
            if "difficulty" in df.columns and not pd.isna(row["difficulty"]):
                question.difficulty_scores.append(DifficultyScore(
                    difficulty=min(5, max(1, int(row["difficulty"]))),
                    reason="Imported from question sheet",
                    model_name="import",
                ))
            db.add(question)
            imported_count += 1

        db.commit()
        logger.info(f"Imported {imported_count} questions for author {created_by_id}")
        return imported_count

    @staticmethod
    def _optional_text(row, column: str) -> str:
        if column not in row.index or pd.isna(row[column]):
            return ""
        return str(row[column]).strip()


class AttemptService:
    """Adaptive attempt state machine; every entry point is one transaction"""

    def __init__(self, coordinator: TransactionCoordinator,
                 engine: AdaptiveEngine = None,
                 question_service: QuestionService = None):
        self.coordinator = coordinator
        self.engine = engine or AdaptiveEngine()
        self.question_service = question_service or QuestionService()

    # ---------- context loader ----------

    def load_context(self, db: Session, attempt_id: int, user_id: int,
                     lock: bool = False) -> Optional[AttemptContext]:
        """Attempt owned by `user_id`; someone else's attempt is simply not found"""
        query = db.query(ExamAttempt).filter(
            ExamAttempt.id == attempt_id,
            ExamAttempt.user_id == user_id,
        )
        if lock:
            query = query.with_for_update()
        attempt = query.first()
        if attempt is None:
            return None

        answers = (
            db.query(AttemptAnswer.question_id, AttemptAnswer.is_correct)
            .filter(AttemptAnswer.attempt_id == attempt.id)
            .order_by(AttemptAnswer.id)
            .all()
        )
        return AttemptContext(
            attempt=attempt,
            exam=attempt.exam,
            current_question=attempt.current_question,
            answers=[AnswerRef(question_id=q, is_correct=c) for q, c in answers],
        )

    # ---------- entry points ----------

    def start_attempt(self, exam_id: int, user_id: int) -> schemas.AttemptProgress:
        """Create an attempt for an adaptive exam and present its first question"""
        with self.coordinator.scope(("start", exam_id, user_id)) as db:
            exam = db.query(Exam).filter(Exam.id == exam_id, Exam.is_adaptive == True).first()  # noqa: E712
            if exam is None:
                raise ExamNotFoundError(f"Adaptive exam {exam_id} not found")

            existing = db.query(ExamAttempt.id).filter(
                ExamAttempt.exam_id == exam_id,
                ExamAttempt.user_id == user_id,
                ExamAttempt.finished_at.is_(None),
            ).first()
            if existing is not None:
                raise AttemptInProgressError(existing.id)

            initial_theta = self.engine.clamp_theta(self.engine.settings.initial_theta)
            attempt = ExamAttempt(
                exam_id=exam_id,
                user_id=user_id,
                theta_start=initial_theta,
                theta_end=initial_theta,
                score=0,
            )
            db.add(attempt)
            db.flush()
            attempt_id = attempt.id

        logger.info(f"Started attempt {attempt_id} on exam {exam_id} for user {user_id}")
        return self.ensure_current_question(attempt_id, user_id)

    def ensure_current_question(self, attempt_id: int,
                                user_id: int) -> Optional[schemas.AttemptProgress]:
        """Idempotent resume/advance; None when the attempt is not the user's"""
        with self.coordinator.attempt_scope(attempt_id) as db:
            context = self.load_context(db, attempt_id, user_id, lock=True)
            if context is None:
                return None

            attempt = context.attempt
            total = self.engine.total_questions(context.exam.question_count)
            answered = len(context.answers)

            if attempt.finished_at is not None or answered >= total:
                if attempt.finished_at is None:
                    self._finalize(db, attempt, reason="question budget reached")
                return self._progress(context, total, completed=True)

            if context.current_question is not None:
                return self._progress(context, total)

            if self._assign_next_question(db, context) is None:
                self._finalize(db, attempt, reason="question pool exhausted")
                return self._progress(context, total, completed=True)

            return self._progress(context, total)

    def record_answer(self, attempt_id: int, user_id: int, question_id: int,
                      choice_id: int) -> schemas.AnswerResult:
        """Score the presented question, move theta, then finish or advance"""
        with self.coordinator.attempt_scope(attempt_id) as db:
            context = self.load_context(db, attempt_id, user_id, lock=True)
            if context is None:
                raise AttemptNotFoundError(f"Attempt {attempt_id} not found")

            attempt = context.attempt
            if attempt.finished_at is not None:
                raise AttemptAlreadyFinishedError(f"Attempt {attempt_id} is already finished")

            question = context.current_question
            if question is None or question.id != question_id:
                raise QuestionMismatchError(
                    f"Question {question_id} is not the current question of attempt {attempt_id}"
                )

            choice = next((c for c in question.choices if c.id == choice_id), None)
            if choice is None:
                raise ChoiceNotFoundError(
                    f"Choice {choice_id} does not belong to question {question_id}"
                )

            is_correct = bool(choice.is_correct)
            theta_before = context.theta
            theta_after = self.engine.update_theta(theta_before, is_correct,
                                                   question.latest_difficulty)

            db.add(AttemptAnswer(
                attempt_id=attempt.id,
                question_id=question.id,
                choice_id=choice.id,
                is_correct=is_correct,
                theta_before=theta_before,
                theta_after=theta_after,
            ))
            attempt.theta_end = theta_after
            attempt.score = attempt.score + (1 if is_correct else 0)
            attempt.current_question = None
            db.flush()

            context.answers.append(AnswerRef(question_id=question.id, is_correct=is_correct))
            context.current_question = None
            logger.info(f"Attempt {attempt.id}: question {question.id} answered "
                        f"correct={is_correct}, theta {theta_before} -> {theta_after}")

            total = self.engine.total_questions(context.exam.question_count)
            if len(context.answers) >= total:
                self._finalize(db, attempt, reason="question budget reached")
                completed = True
            elif self._assign_next_question(db, context) is None:
                self._finalize(db, attempt, reason="question pool exhausted")
                completed = True
            else:
                completed = False

            progress = self._progress(context, total, completed=completed)
            return schemas.AnswerResult(
                attempt_id=progress.attempt_id,
                status=progress.status,
                question=progress.question,
                answered_count=progress.answered_count,
                total_questions=progress.total_questions,
                theta_after=theta_after,
                is_correct=is_correct,
                score=progress.score,
                summary=progress.summary,
            )

    def finish_attempt(self, attempt_id: int, user_id: int) -> AttemptSnapshot:
        """Explicit early termination; finishing twice returns the same snapshot"""
        with self.coordinator.attempt_scope(attempt_id) as db:
            context = self.load_context(db, attempt_id, user_id, lock=True)
            if context is None:
                raise AttemptNotFoundError(f"Attempt {attempt_id} not found")

            if context.attempt.finished_at is None:
                self._finalize(db, context.attempt, reason="finished by user")
            return self._snapshot(context)

    def get_attempt(self, attempt_id: int, user_id: int) -> AttemptSnapshot:
        with self.coordinator.scope() as db:
            context = self.load_context(db, attempt_id, user_id)
            if context is None:
                raise AttemptNotFoundError(f"Attempt {attempt_id} not found")
            return self._snapshot(context)

    def get_attempt_report(self, attempt_id: int, user_id: int) -> Dict:
        """Summary plus per-answer theta trail, for exports"""
        with self.coordinator.scope() as db:
            context = self.load_context(db, attempt_id, user_id)
            if context is None:
                raise AttemptNotFoundError(f"Attempt {attempt_id} not found")

            answers = (
                db.query(AttemptAnswer)
                .filter(AttemptAnswer.attempt_id == attempt_id)
                .order_by(AttemptAnswer.id)
                .all()
            )
            return {
                "exam_title": context.exam.title,
                "summary": format_attempt_summary(self._snapshot(context)),
                "answers": [
                    schemas.AnswerDetail.model_validate(a).model_dump() for a in answers
                ],
            }

    # ---------- transitions ----------

    def _assign_next_question(self, db: Session,
                              context: AttemptContext) -> Optional[Question]:
        """Run the selector and present its pick; None when nothing is left"""
        exclude_ids = list(context.answered_ids)
        if context.attempt.current_question_id is not None:
            exclude_ids.append(context.attempt.current_question_id)

        window = self.question_service.fetch_candidates(
            db, context.exam, exclude_ids, self.engine.settings.candidate_window
        )
        by_id = {q.id: q for q in window}
        candidates = [{"id": q.id, "difficulty": q.latest_difficulty} for q in window]
        bounds = self.engine.difficulty_bounds(context.exam.difficulty_min,
                                               context.exam.difficulty_max)

        chosen = self.engine.select_next_question(context.theta, candidates, bounds)
        if chosen is None:
            return None

        question = by_id.get(chosen["id"])
        context.attempt.current_question = question
        db.flush()
        db.refresh(context.attempt)

        if question is None or context.attempt.current_question_id != chosen["id"]:
            logger.error(f"Attempt {context.attempt.id}: question {chosen['id']} "
                         f"could not be assigned")
            raise AssignmentFailedError(f"Question {chosen['id']} could not be assigned")

        context.current_question = question
        return question

    def _finalize(self, db: Session, attempt: ExamAttempt, reason: str):
        attempt.finished_at = utcnow()
        attempt.current_question = None
        db.flush()
        logger.info(f"Attempt {attempt.id} completed ({reason})")

    # ---------- projections ----------

    def _snapshot(self, context: AttemptContext) -> AttemptSnapshot:
        attempt = context.attempt
        return AttemptSnapshot(
            id=attempt.id,
            exam_id=attempt.exam_id,
            user_id=attempt.user_id,
            theta_start=attempt.theta_start,
            theta_end=attempt.theta_end,
            score=attempt.score,
            current_question_id=attempt.current_question_id,
            started_at=attempt.started_at,
            finished_at=attempt.finished_at,
            answered=len(context.answers),
            total_questions=self.engine.total_questions(context.exam.question_count),
        )

    def _progress(self, context: AttemptContext, total: int,
                  completed: bool = False) -> schemas.AttemptProgress:
        attempt = context.attempt
        question = None
        summary = None
        if completed:
            summary = schemas.AttemptSummary(**format_attempt_summary(self._snapshot(context)))
        elif context.current_question is not None:
            question = self.question_service.serialize_question(context.current_question)

        return schemas.AttemptProgress(
            attempt_id=attempt.id,
            status="completed" if completed else "in-progress",
            question=question,
            answered_count=len(context.answers),
            total_questions=total,
            theta=context.theta,
            score=attempt.score,
            summary=summary,
        )


def ensure_standard_exam_questions(db: Session, exam_id: int, teacher_id: int,
                                   subject_name: Optional[str], question_count: int,
                                   force: bool = False) -> int:
    """
    Link a deterministic question set to a standard exam.

    The linkage is rebuilt when `force` is set or fewer than the required
    number of questions are linked. Questions are taken in (created_at, id)
    order from the author's bank, restricted to the bound subject.
    """
    required = max(1, question_count)

    current_links = db.query(ExamQuestion).filter(ExamQuestion.exam_id == exam_id).count()
    if not force and current_links >= required:
        return current_links

    query = db.query(Question.id).filter(Question.created_by_id == teacher_id)
    if subject_name:
        query = query.filter(Question.subject == subject_name)

    available = query.count()
    if available < required:
        raise StandardExamQuestionError(required, available)

    question_ids = [
        row.id for row in query.order_by(Question.created_at, Question.id).limit(required).all()
    ]

    db.query(ExamQuestion).filter(ExamQuestion.exam_id == exam_id).delete(
        synchronize_session=False
    )
    db.add_all([
        ExamQuestion(exam_id=exam_id, question_id=question_id, order=index)
        for index, question_id in enumerate(question_ids)
    ])
    db.flush()

    logger.info(f"Linked {len(question_ids)} questions to standard exam {exam_id}")
    return required
