"""Shared FastAPI dependencies for the grading services.

The services hold no per-request state, so one instance of each is built at
import time and handed out to every request.
"""

from gradebook.config import settings
from gradebook.services.answer_store import AssignmentAnswerStore
from gradebook.services.grading import GradeAggregator
from gradebook.services.lifecycle import AssignmentLifecycle
from gradebook.services.scoring import QuestionScorer
from gradebook.services.teaching_history import TeachingAssignmentHistory

_scorer = QuestionScorer()
_aggregator = GradeAggregator(scale=settings.GRADING_SCALE)
_store = AssignmentAnswerStore(_scorer, settings)
_lifecycle = AssignmentLifecycle(_scorer, _store, _aggregator)
_history = TeachingAssignmentHistory()


def get_aggregator() -> GradeAggregator:
    return _aggregator


def get_answer_store() -> AssignmentAnswerStore:
    return _store


def get_lifecycle() -> AssignmentLifecycle:
    return _lifecycle


def get_history() -> TeachingAssignmentHistory:
    return _history
