"""Assessment authoring helpers: assessments, questions and their choices."""

from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from gradebook.models import (
    Assessment,
    Choice,
    ClassSubject,
    DeliveryMode,
    Question,
    QuestionType,
)
from gradebook.utils import sanitize_question_text


def create_assessment(
    session: Session,
    class_subject_id: int,
    title: str,
    coefficient: float = 1.0,
    delivery_mode: DeliveryMode = DeliveryMode.HOMEWORK,
    duration_minutes: Optional[int] = None,
    scheduled_at: Optional[datetime] = None,
    due_date: Optional[datetime] = None,
    is_published: bool = True,
) -> Assessment:
    if not session.get(ClassSubject, class_subject_id):
        raise ValueError(f"ClassSubject with id={class_subject_id} does not exist")
    if coefficient <= 0:
        raise ValueError("coefficient must be positive")
    if duration_minutes is not None and duration_minutes < 1:
        raise ValueError("duration_minutes must be at least 1")

    assessment = Assessment(
        class_subject_id=class_subject_id,
        title=sanitize_question_text(title),
        coefficient=coefficient,
        delivery_mode=delivery_mode,
        duration_minutes=duration_minutes,
        scheduled_at=scheduled_at,
        due_date=due_date,
        is_published=is_published,
    )
    session.add(assessment)
    session.commit()
    session.refresh(assessment)
    return assessment


def _validate_choices(question_type: QuestionType, choices: Sequence[Tuple[str, bool]]) -> None:
    correct = sum(1 for _, is_correct in choices if is_correct)

    if question_type.requires_manual_grading:
        if choices:
            raise ValueError(f"{question_type.value} questions cannot have choices")
        return

    if len(choices) < 2:
        raise ValueError("Choice questions need at least two choices")
    if question_type is QuestionType.MULTIPLE_SELECT and correct < 2:
        raise ValueError("Multiple-select questions need at least two correct choices")
    if question_type in (QuestionType.SINGLE_SELECT, QuestionType.BOOLEAN) and correct != 1:
        raise ValueError(f"{question_type.value} questions need exactly one correct choice")
    if question_type is QuestionType.BOOLEAN and len(choices) != 2:
        raise ValueError("Boolean questions have exactly two choices")


def add_question(
    session: Session,
    assessment_id: int,
    question_text: str,
    question_type: QuestionType,
    points: float,
    choices: Sequence[Tuple[str, bool]] = (),
    order_index: Optional[int] = None,
) -> Question:
    """Add a question and its choices to an assessment.

    ``choices`` is an ordered sequence of ``(content, is_correct)`` pairs.

    Raises:
        ValueError: If the assessment doesn't exist or the definition is invalid
    """
    if not session.get(Assessment, assessment_id):
        raise ValueError(f"Assessment with id={assessment_id} does not exist")

    sanitized_text = sanitize_question_text(question_text)
    if not sanitized_text:
        raise ValueError("Question text cannot be empty after sanitization")

    if points <= 0:
        raise ValueError("points must be positive")

    _validate_choices(question_type, choices)

    if order_index is None:
        current_max = session.exec(
            select(func.max(Question.order_index)).where(Question.assessment_id == assessment_id)
        ).one()
        order_index = 0 if current_max is None else current_max + 1

    question = Question(
        assessment_id=assessment_id,
        question_text=sanitized_text,
        question_type=question_type,
        points=points,
        order_index=order_index,
    )
    session.add(question)
    session.flush()

    for index, (content, is_correct) in enumerate(choices):
        session.add(
            Choice(
                question_id=question.id,
                content=sanitize_question_text(content),
                is_correct=is_correct,
                order_index=index,
            )
        )

    session.commit()
    session.refresh(question)
    return question


def list_questions(session: Session, assessment_id: int) -> List[Question]:
    stmt = (
        select(Question)
        .where(Question.assessment_id == assessment_id)
        .order_by(Question.order_index, Question.id)
    )
    return list(session.exec(stmt).all())


def choices_by_question(session: Session, question_ids: Sequence[int]) -> Dict[int, List[Choice]]:
    """Choices grouped by question id, in display order."""
    grouped: Dict[int, List[Choice]] = defaultdict(list)
    if not question_ids:
        return grouped
    stmt = (
        select(Choice)
        .where(Choice.question_id.in_(question_ids))
        .order_by(Choice.order_index, Choice.id)
    )
    for choice in session.exec(stmt).all():
        grouped[choice.question_id].append(choice)
    return grouped


def total_points(session: Session, assessment_id: int) -> float:
    """Total possible points, always computed from the questions."""
    total = session.exec(
        select(func.sum(Question.points)).where(Question.assessment_id == assessment_id)
    ).one()
    return float(total or 0.0)
