"""Per-question scoring rules.

The scorer is stateless: a score is a pure function of the question
definition, its choices and the submitted answer, so results can be
reproduced for audits and appeals. One instance is shared across requests.
"""

from __future__ import annotations

from typing import NamedTuple, Optional, Protocol, Sequence, Set

from gradebook.exceptions import InvalidAnswerShape
from gradebook.models import Choice, Question, QuestionType


class AnswerContent(Protocol):
    """Anything carrying answer content: an ``Answer`` row or an inbound payload."""

    choice_id: Optional[int]
    choice_ids: Optional[list[int]]
    answer_text: Optional[str]
    file_path: Optional[str]


class ScoreResult(NamedTuple):
    score: Optional[float]
    is_correct: Optional[bool]


PENDING = ScoreResult(score=None, is_correct=None)


class QuestionScorer:
    """Scores one answer against one question, keyed by question type."""

    def validate_shape(
        self,
        question: Question,
        choices: Sequence[Choice],
        answer: Optional[AnswerContent],
    ) -> None:
        """Raise ``InvalidAnswerShape`` if the answer does not fit the question type."""
        if answer is None:
            return

        qtype = question.question_type
        has_text = answer.answer_text is not None
        has_file = answer.file_path is not None
        has_single = answer.choice_id is not None
        has_multi = bool(answer.choice_ids)

        if qtype in (QuestionType.SINGLE_SELECT, QuestionType.BOOLEAN):
            if has_multi:
                raise InvalidAnswerShape(question.id, "only one choice may be selected")
            if has_text or has_file:
                raise InvalidAnswerShape(question.id, "expected a choice, got text or a file")
            self._check_owned(question, choices, {answer.choice_id} if has_single else set())
        elif qtype is QuestionType.MULTIPLE_SELECT:
            if has_single:
                raise InvalidAnswerShape(question.id, "expected a list of choices")
            if has_text or has_file:
                raise InvalidAnswerShape(question.id, "expected choices, got text or a file")
            selected = list(answer.choice_ids or [])
            if len(set(selected)) != len(selected):
                raise InvalidAnswerShape(question.id, "duplicate choice ids")
            self._check_owned(question, choices, set(selected))
        elif qtype is QuestionType.TEXT:
            if has_single or has_multi or has_file:
                raise InvalidAnswerShape(question.id, "expected free text")
        elif qtype is QuestionType.FILE_UPLOAD:
            if has_single or has_multi or has_text:
                raise InvalidAnswerShape(question.id, "expected an uploaded file")
        else:
            raise ValueError(f"Unsupported question type: {qtype!r}")

    def score(
        self,
        question: Question,
        choices: Sequence[Choice],
        answer: Optional[AnswerContent],
    ) -> ScoreResult:
        """Score an answer. Manual types always come back pending.

        A missing answer to an auto-gradable question scores 0 and is incorrect.
        """
        self.validate_shape(question, choices, answer)

        qtype = question.question_type
        if qtype in (QuestionType.SINGLE_SELECT, QuestionType.BOOLEAN):
            selected = {answer.choice_id} if answer is not None and answer.choice_id is not None else set()
            correct = {c.id for c in choices if c.is_correct}
            is_correct = len(selected) == 1 and selected <= correct
            return self._result(question, is_correct)
        elif qtype is QuestionType.MULTIPLE_SELECT:
            selected = set(answer.choice_ids or []) if answer is not None else set()
            correct = {c.id for c in choices if c.is_correct}
            # No partial credit: the selected set must match exactly
            return self._result(question, bool(selected) and selected == correct)
        elif qtype.requires_manual_grading:
            return PENDING
        raise ValueError(f"Unsupported question type: {qtype!r}")

    @staticmethod
    def _result(question: Question, is_correct: bool) -> ScoreResult:
        return ScoreResult(score=float(question.points) if is_correct else 0.0, is_correct=is_correct)

    @staticmethod
    def _check_owned(question: Question, choices: Sequence[Choice], selected: Set[int]) -> None:
        foreign = selected - {c.id for c in choices}
        if foreign:
            raise InvalidAnswerShape(
                question.id, f"choice id(s) {sorted(foreign)} do not belong to this question"
            )
