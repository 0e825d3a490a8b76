"""Domain errors raised by the grading engine.

All of them are recoverable at the call site; the HTTP layer maps them to
4xx responses in ``gradebook.main``. Persistence failures are not wrapped.
"""

from typing import Iterable, List, Optional


class GradingError(Exception):
    """Base class for grading engine domain errors."""


class InvalidAnswerShape(GradingError):
    """A submitted answer does not match its question's type contract."""

    def __init__(self, question_id: Optional[int], message: str):
        self.question_id = question_id
        super().__init__(f"Question {question_id}: {message}")


class InvalidTransition(GradingError):
    """A lifecycle transition was requested from a state that forbids it."""

    def __init__(self, current_state: str, attempted: str, message: Optional[str] = None):
        self.current_state = current_state
        self.attempted = attempted
        detail = f"Cannot {attempted} an assignment in state '{current_state}'"
        if message:
            detail = f"{detail}: {message}"
        super().__init__(detail)


class InvalidEffectiveDate(GradingError):
    """A teacher replacement date conflicts with the existing history."""


class IncompleteGrading(GradingError):
    """Finalization was requested while manually graded questions remain unscored."""

    def __init__(self, pending_question_ids: Iterable[int]):
        self.pending_question_ids: List[int] = sorted(pending_question_ids)
        super().__init__(
            f"{len(self.pending_question_ids)} question(s) still awaiting a manual score: "
            f"{self.pending_question_ids}"
        )


class RecordNotFound(LookupError):
    """A referenced row does not exist."""

    def __init__(self, model: str, record_id):
        self.model = model
        self.record_id = record_id
        super().__init__(f"{model} with id={record_id} does not exist")
