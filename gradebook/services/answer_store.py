"""Answer persistence for in-progress assignments."""

import logging
from typing import List, Optional

from pydantic import BaseModel
from sqlalchemy import update
from sqlmodel import Session, select

from gradebook.config import Settings, settings as default_settings
from gradebook.exceptions import InvalidAnswerShape, InvalidTransition, RecordNotFound
from gradebook.models import (
    Answer,
    Assignment,
    AssignmentState,
    Choice,
    Question,
    QuestionType,
    utcnow,
)
from gradebook.services.scoring import QuestionScorer

logger = logging.getLogger(__name__)


class AnswerPayload(BaseModel):
    """Answer content as sent by a client. Exactly one shape applies per question type."""

    choice_id: Optional[int] = None
    choice_ids: Optional[List[int]] = None
    answer_text: Optional[str] = None
    file_path: Optional[str] = None
    file_size_kb: Optional[int] = None


def _same_content(answer: Answer, payload: AnswerPayload) -> bool:
    return (
        answer.choice_id == payload.choice_id
        and sorted(answer.choice_ids or []) == sorted(payload.choice_ids or [])
        and answer.answer_text == payload.answer_text
        and answer.file_path == payload.file_path
    )


class AssignmentAnswerStore:
    """Creates or replaces the single answer a student holds per question."""

    def __init__(self, scorer: QuestionScorer, settings: Settings = default_settings):
        self.scorer = scorer
        self.settings = settings

    def _check_file(self, question: Question, payload: AnswerPayload) -> None:
        if question.question_type is not QuestionType.FILE_UPLOAD or payload.file_path is None:
            return
        extension = payload.file_path.rsplit(".", 1)[-1].lower() if "." in payload.file_path else ""
        allowed = [ext.lower() for ext in self.settings.UPLOAD_ALLOWED_EXTENSIONS]
        if extension not in allowed:
            raise InvalidAnswerShape(
                question.id, f"file type '.{extension}' is not allowed (allowed: {', '.join(allowed)})"
            )
        if payload.file_size_kb is not None and payload.file_size_kb > self.settings.UPLOAD_MAX_SIZE_KB:
            raise InvalidAnswerShape(
                question.id, f"file exceeds {self.settings.UPLOAD_MAX_SIZE_KB} KB"
            )

    def _hold_open(self, session: Session, assignment: Assignment) -> None:
        """Check that the assignment is still open, inside the writing transaction.

        The no-op UPDATE only matches an unsubmitted row and keeps it locked
        until commit, so a submission cannot land between this check and the
        answer write.
        """
        result = session.exec(
            update(Assignment)
            .where(
                Assignment.id == assignment.id,
                Assignment.submitted_at.is_(None),
                Assignment.graded_at.is_(None),
            )
            .values(assigned_at=Assignment.assigned_at)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            session.rollback()
            current = session.get(Assignment, assignment.id)
            state = current.state if current else AssignmentState.NOT_STARTED
            raise InvalidTransition(state.value, "record an answer for")

    def write(
        self,
        session: Session,
        assignment: Assignment,
        question_id: int,
        payload: AnswerPayload,
    ) -> Answer:
        """Validate and stage an answer without committing.

        Re-sending identical content is a no-op. Changed content replaces the
        previous answer and clears any score or feedback attached to it.
        """
        self._hold_open(session, assignment)

        question = session.get(Question, question_id)
        if not question or question.assessment_id != assignment.assessment_id:
            raise InvalidAnswerShape(question_id, "question does not belong to this assessment")

        choices = session.exec(select(Choice).where(Choice.question_id == question_id)).all()
        self.scorer.validate_shape(question, choices, payload)
        self._check_file(question, payload)

        answer = session.exec(
            select(Answer).where(
                Answer.assignment_id == assignment.id,
                Answer.question_id == question_id,
            )
        ).first()

        if answer is None:
            answer = Answer(assignment_id=assignment.id, question_id=question_id)
        elif _same_content(answer, payload):
            return answer

        answer.choice_id = payload.choice_id
        answer.choice_ids = list(payload.choice_ids) if payload.choice_ids else None
        answer.answer_text = payload.answer_text
        answer.file_path = payload.file_path
        answer.score = None
        answer.feedback = None
        answer.updated_at = utcnow()
        session.add(answer)
        session.flush()
        return answer

    def upsert_answer(
        self,
        session: Session,
        assignment_id: int,
        question_id: int,
        payload: AnswerPayload,
    ) -> Answer:
        """Create or replace the answer for one question of a persisted assignment."""
        assignment = session.get(Assignment, assignment_id)
        if not assignment:
            raise RecordNotFound("Assignment", assignment_id)
        answer = self.write(session, assignment, question_id, payload)
        session.commit()
        session.refresh(answer)
        logger.debug("Stored answer for assignment %s question %s", assignment_id, question_id)
        return answer

    def answers_for(self, session: Session, assignment_id: int) -> List[Answer]:
        stmt = select(Answer).where(Answer.assignment_id == assignment_id).order_by(Answer.question_id)
        return list(session.exec(stmt).all())
