# backend/errors.py
"""Domain errors raised by the attempt engine and its collaborators"""


class AttemptError(Exception):
    """Base error; `code` is stable and safe to show to API callers"""
    code = "ATTEMPT_ERROR"
    status_code = 400

    def __init__(self, message: str = None):
        super().__init__(message or self.code)


class AttemptNotFoundError(AttemptError):
    code = "ATTEMPT_NOT_FOUND"
    status_code = 404


class ChoiceNotFoundError(AttemptError):
    code = "CHOICE_NOT_FOUND"
    status_code = 404


class ExamNotFoundError(AttemptError):
    code = "EXAM_NOT_FOUND"
    status_code = 404


class QuestionNotFoundError(AttemptError):
    code = "QUESTION_NOT_FOUND"
    status_code = 404


class AttemptConflictError(AttemptError):
    """State conflict; callers should re-fetch with ensure_current_question"""
    code = "ATTEMPT_CONFLICT"
    status_code = 409


class AttemptAlreadyFinishedError(AttemptConflictError):
    code = "ATTEMPT_ALREADY_FINISHED"


class QuestionMismatchError(AttemptConflictError):
    code = "QUESTION_MISMATCH"


class AttemptInProgressError(AttemptConflictError):
    code = "ATTEMPT_IN_PROGRESS"

    def __init__(self, attempt_id: int):
        super().__init__(f"Attempt {attempt_id} is still in progress")
        self.attempt_id = attempt_id


class AssignmentFailedError(AttemptError):
    """Invariant violation: the selected question vanished before assignment"""
    code = "NEXT_QUESTION_ASSIGNMENT_FAILED"
    status_code = 500


class StandardExamQuestionError(AttemptError):
    code = "STANDARD_NOT_ENOUGH_QUESTIONS"

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Standard exam needs at least {required} questions, only {available} available"
        )
        self.required = required
        self.available = available


class UsageLimitExceeded(AttemptError):
    code = "DAILY_LIMIT_REACHED"
    status_code = 429
