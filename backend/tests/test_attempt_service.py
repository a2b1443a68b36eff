from decimal import Decimal

import pytest

from adaptive_engine import AdaptiveEngine, EngineSettings
from errors import (AttemptAlreadyFinishedError, AttemptInProgressError,
                    AttemptNotFoundError, ChoiceNotFoundError, ExamNotFoundError,
                    QuestionMismatchError)
from models import AttemptAnswer, DifficultyScore, ExamAttempt
from services import AttemptService, format_attempt_summary
from transactions import TransactionCoordinator

from conftest import OTHER_STUDENT_ID, OTHER_TEACHER_ID, STUDENT_ID


def answer_current(service, bank, progress, correct=True):
    question_id = progress.question.id
    right, wrong = bank.choices_of(question_id)
    return service.record_answer(progress.attempt_id, STUDENT_ID, question_id,
                                 right if correct else wrong)


class TestStartAttempt:

    def test_start_presents_first_question(self, service, bank):
        exam_id = bank.exam(question_count=3)
        first_id, _, _ = bank.question()
        bank.question()

        progress = service.start_attempt(exam_id, STUDENT_ID)

        assert progress.status == "in-progress"
        assert progress.question.id == first_id
        assert progress.theta == Decimal("0.50")
        assert progress.answered_count == 0
        assert progress.total_questions == 3
        assert progress.question.difficulty == 3
        assert [c.text for c in progress.question.choices] == ["4", "5"]

    def test_start_unknown_exam(self, service):
        with pytest.raises(ExamNotFoundError):
            service.start_attempt(999, STUDENT_ID)

    def test_start_standard_exam_is_rejected(self, service, bank):
        exam_id = bank.exam(is_adaptive=False)
        bank.question()
        with pytest.raises(ExamNotFoundError):
            service.start_attempt(exam_id, STUDENT_ID)

    def test_second_start_while_active_conflicts(self, service, bank):
        exam_id = bank.exam()
        bank.question()
        progress = service.start_attempt(exam_id, STUDENT_ID)

        with pytest.raises(AttemptInProgressError) as exc_info:
            service.start_attempt(exam_id, STUDENT_ID)
        assert exc_info.value.attempt_id == progress.attempt_id

        # another user is unaffected
        other = service.start_attempt(exam_id, OTHER_STUDENT_ID)
        assert other.attempt_id != progress.attempt_id

    def test_restart_after_finish(self, service, bank):
        exam_id = bank.exam()
        bank.question()
        first = service.start_attempt(exam_id, STUDENT_ID)
        service.finish_attempt(first.attempt_id, STUDENT_ID)

        second = service.start_attempt(exam_id, STUDENT_ID)
        assert second.attempt_id != first.attempt_id
        assert second.status == "in-progress"

    def test_start_with_empty_bank_completes_immediately(self, service, bank):
        exam_id = bank.exam()
        progress = service.start_attempt(exam_id, STUDENT_ID)

        assert progress.status == "completed"
        assert progress.question is None
        assert progress.summary.score == 0
        assert progress.summary.answered == 0


class TestEnsureCurrentQuestion:

    def test_is_idempotent(self, service, bank):
        exam_id = bank.exam()
        bank.question()
        bank.question()
        started = service.start_attempt(exam_id, STUDENT_ID)

        first = service.ensure_current_question(started.attempt_id, STUDENT_ID)
        second = service.ensure_current_question(started.attempt_id, STUDENT_ID)

        assert first.question.id == second.question.id == started.question.id
        assert first.theta == second.theta == Decimal("0.50")

    def test_other_users_attempt_is_not_found(self, service, bank):
        exam_id = bank.exam()
        bank.question()
        started = service.start_attempt(exam_id, STUDENT_ID)

        assert service.ensure_current_question(started.attempt_id, OTHER_STUDENT_ID) is None
        assert service.ensure_current_question(9999, STUDENT_ID) is None

    def test_finished_attempt_returns_summary(self, service, bank):
        exam_id = bank.exam()
        bank.question()
        started = service.start_attempt(exam_id, STUDENT_ID)
        service.finish_attempt(started.attempt_id, STUDENT_ID)

        progress = service.ensure_current_question(started.attempt_id, STUDENT_ID)
        assert progress.status == "completed"
        assert progress.question is None
        assert progress.summary.attempt_id == started.attempt_id


class TestRecordAnswer:

    def test_three_correct_answers_complete_the_exam(self, service, bank):
        exam_id = bank.exam(question_count=3)
        for _ in range(5):
            bank.question()

        progress = service.start_attempt(exam_id, STUDENT_ID)
        thetas = []
        for _ in range(3):
            result = answer_current(service, bank, progress, correct=True)
            thetas.append(result.theta_after)
            progress = result

        assert thetas == [Decimal("0.68"), Decimal("0.86"), Decimal("1.00")]
        assert result.status == "completed"
        assert result.question is None
        assert result.score == 3
        assert result.summary.score == 3
        assert result.summary.total == 3
        assert result.summary.theta_start == Decimal("0.50")
        assert result.summary.theta_end == Decimal("1.00")
        assert result.summary.finished_at is not None

    def test_pool_exhaustion_completes_early(self, service, bank):
        exam_id = bank.exam(question_count=10)
        bank.question()
        bank.question()

        progress = service.start_attempt(exam_id, STUDENT_ID)
        progress = answer_current(service, bank, progress, correct=True)
        assert progress.status == "in-progress"
        result = answer_current(service, bank, progress, correct=False)

        assert result.status == "completed"
        assert result.answered_count == 2
        assert result.summary.answered == 2
        assert result.summary.score == 1

        resumed = service.ensure_current_question(progress.attempt_id, STUDENT_ID)
        assert resumed.status == "completed"
        assert resumed.answered_count == 2
        assert resumed.question is None

    def test_questions_are_never_repeated(self, service, bank):
        exam_id = bank.exam(question_count=4)
        for _ in range(4):
            bank.question()

        progress = service.start_attempt(exam_id, STUDENT_ID)
        seen = []
        while progress.status == "in-progress":
            seen.append(progress.question.id)
            progress = answer_current(service, bank, progress, correct=len(seen) % 2 == 0)

        assert len(seen) == len(set(seen)) == 4

    def test_selection_follows_theta(self, service, bank):
        exam_id = bank.exam(question_count=2)
        bank.question(difficulty=1)
        medium, _, _ = bank.question(difficulty=3)
        hard, _, _ = bank.question(difficulty=5)

        progress = service.start_attempt(exam_id, STUDENT_ID)
        assert progress.question.id == medium

        # 0.50 -> 0.68 targets difficulty 4, nearest remaining is 5
        progress = answer_current(service, bank, progress, correct=True)
        assert progress.theta_after == Decimal("0.68")
        assert progress.question.id == hard

        # a miss on difficulty 5 costs 0.28
        progress = answer_current(service, bank, progress, correct=False)
        assert progress.theta_after == Decimal("0.40")
        assert progress.status == "completed"

    def test_latest_difficulty_score_is_used(self, service, bank, session_factory):
        exam_id = bank.exam(question_count=1)
        question_id, right, _ = bank.question(difficulty=3)
        with session_factory() as db:
            db.add(DifficultyScore(question_id=question_id, difficulty=5,
                                   reason="rescored", model_name="test"))
            db.commit()

        progress = service.start_attempt(exam_id, STUDENT_ID)
        assert progress.question.difficulty == 5
        assert progress.question.hint == "rescored"

        result = service.record_answer(progress.attempt_id, STUDENT_ID, question_id, right)
        assert result.theta_after == Decimal("0.58")

    def test_scope_is_author_and_subject(self, service, bank):
        exam_id = bank.exam(question_count=5, subject="Math")
        bank.question(subject="Science")
        bank.question(created_by_id=OTHER_TEACHER_ID)
        own_math, right, _ = bank.question(subject="Math")

        progress = service.start_attempt(exam_id, STUDENT_ID)
        assert progress.question.id == own_math

        result = service.record_answer(progress.attempt_id, STUDENT_ID, own_math, right)
        assert result.status == "completed"
        assert result.answered_count == 1

    def test_unbound_subject_uses_whole_bank_of_author(self, service, bank):
        exam_id = bank.exam(question_count=5, subject=None)
        science, _, _ = bank.question(subject="Science")
        bank.question(subject="Math")

        progress = service.start_attempt(exam_id, STUDENT_ID)
        assert progress.question.id == science

    def test_difficulty_gate_with_fallback(self, service, bank):
        exam_id = bank.exam(question_count=2, difficulty_min=4, difficulty_max=5)
        bank.question(difficulty=1)
        two, _, _ = bank.question(difficulty=2)

        progress = service.start_attempt(exam_id, STUDENT_ID)
        assert progress.question.id == two

    def test_candidate_window_limits_selection(self, session_factory, bank):
        engine = AdaptiveEngine(EngineSettings(candidate_window=2))
        service = AttemptService(TransactionCoordinator(session_factory), engine)
        exam_id = bank.exam(question_count=5)
        first, _, _ = bank.question(difficulty=1)
        bank.question(difficulty=1)
        bank.question(difficulty=3)

        progress = service.start_attempt(exam_id, STUDENT_ID)
        assert progress.question.id == first

    def test_mismatch_leaves_state_unchanged(self, service, bank):
        exam_id = bank.exam()
        bank.question()
        other_id, other_right, _ = bank.question()
        progress = service.start_attempt(exam_id, STUDENT_ID)
        assert progress.question.id != other_id

        with pytest.raises(QuestionMismatchError):
            service.record_answer(progress.attempt_id, STUDENT_ID, other_id, other_right)

        snapshot = service.get_attempt(progress.attempt_id, STUDENT_ID)
        assert snapshot.score == 0
        assert snapshot.answered == 0
        assert snapshot.theta_end == Decimal("0.50")
        assert snapshot.current_question_id == progress.question.id

    def test_choice_from_another_question(self, service, bank):
        exam_id = bank.exam()
        bank.question()
        _, foreign_choice, _ = bank.question()
        progress = service.start_attempt(exam_id, STUDENT_ID)

        with pytest.raises(ChoiceNotFoundError):
            service.record_answer(progress.attempt_id, STUDENT_ID,
                                  progress.question.id, foreign_choice)

    def test_other_user_cannot_answer(self, service, bank):
        exam_id = bank.exam()
        question_id, right, _ = bank.question()
        progress = service.start_attempt(exam_id, STUDENT_ID)

        with pytest.raises(AttemptNotFoundError):
            service.record_answer(progress.attempt_id, OTHER_STUDENT_ID, question_id, right)

    def test_no_answers_after_finish(self, service, bank):
        exam_id = bank.exam()
        question_id, right, _ = bank.question()
        progress = service.start_attempt(exam_id, STUDENT_ID)
        service.finish_attempt(progress.attempt_id, STUDENT_ID)

        with pytest.raises(AttemptAlreadyFinishedError):
            service.record_answer(progress.attempt_id, STUDENT_ID, question_id, right)

    def test_replayed_answer_is_rejected(self, service, bank):
        exam_id = bank.exam()
        question_id, right, _ = bank.question()
        bank.question()
        progress = service.start_attempt(exam_id, STUDENT_ID)
        service.record_answer(progress.attempt_id, STUDENT_ID, question_id, right)

        with pytest.raises(QuestionMismatchError):
            service.record_answer(progress.attempt_id, STUDENT_ID, question_id, right)

    def test_answer_rows_record_theta_trail(self, service, bank, session_factory):
        exam_id = bank.exam(question_count=2)
        bank.question()
        bank.question()
        progress = service.start_attempt(exam_id, STUDENT_ID)
        progress = answer_current(service, bank, progress, correct=True)
        answer_current(service, bank, progress, correct=False)

        with session_factory() as db:
            rows = (db.query(AttemptAnswer)
                    .filter(AttemptAnswer.attempt_id == progress.attempt_id)
                    .order_by(AttemptAnswer.id).all())
            trail = [(r.theta_before, r.theta_after, r.is_correct) for r in rows]
            attempt = db.get(ExamAttempt, progress.attempt_id)
            assert attempt.score == 1
            assert attempt.current_question_id is None
            assert attempt.finished_at is not None

        assert trail == [
            (Decimal("0.50"), Decimal("0.68"), True),
            (Decimal("0.68"), Decimal("0.50"), False),
        ]


class TestFinishAttempt:

    def test_finish_is_idempotent(self, service, bank):
        exam_id = bank.exam()
        bank.question()
        progress = service.start_attempt(exam_id, STUDENT_ID)

        first = service.finish_attempt(progress.attempt_id, STUDENT_ID)
        second = service.finish_attempt(progress.attempt_id, STUDENT_ID)

        assert first.finished_at is not None
        assert first.finished_at == second.finished_at
        assert second.current_question_id is None

    def test_finish_unknown_attempt(self, service):
        with pytest.raises(AttemptNotFoundError):
            service.finish_attempt(12345, STUDENT_ID)

    def test_summary_after_early_finish(self, service, bank):
        exam_id = bank.exam(question_count=5)
        for _ in range(3):
            bank.question()
        progress = service.start_attempt(exam_id, STUDENT_ID)
        answer_current(service, bank, progress, correct=True)

        snapshot = service.finish_attempt(progress.attempt_id, STUDENT_ID)
        summary = format_attempt_summary(snapshot)

        assert summary["score"] == 1
        assert summary["answered"] == 1
        assert summary["total"] == 5
        assert summary["theta_end"] == Decimal("0.68")


class TestAttemptReport:

    def test_report_lists_answers_in_order(self, service, bank):
        exam_id = bank.exam(question_count=2)
        bank.question()
        bank.question()
        progress = service.start_attempt(exam_id, STUDENT_ID)
        first_question = progress.question.id
        progress = answer_current(service, bank, progress, correct=True)
        answer_current(service, bank, progress, correct=True)

        report = service.get_attempt_report(progress.attempt_id, STUDENT_ID)

        assert report["exam_title"] == "Adaptive Math"
        assert report["summary"]["score"] == 2
        assert [a["question_id"] for a in report["answers"]][0] == first_question
        assert [a["theta_after"] for a in report["answers"]] == [Decimal("0.68"),
                                                                  Decimal("0.86")]

    def test_report_for_other_user(self, service, bank):
        exam_id = bank.exam()
        bank.question()
        progress = service.start_attempt(exam_id, STUDENT_ID)
        with pytest.raises(AttemptNotFoundError):
            service.get_attempt_report(progress.attempt_id, OTHER_STUDENT_ID)
