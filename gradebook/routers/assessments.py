"""API endpoints for authoring assessments."""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel
from sqlmodel import Session

from gradebook.database import get_session
from gradebook.exceptions import RecordNotFound
from gradebook.models import Assessment, DeliveryMode, QuestionType
from gradebook.services.assessments import (
    add_question,
    choices_by_question,
    create_assessment,
    list_questions,
    total_points,
)

router = APIRouter(prefix="/assessments", tags=["assessments"])


class CreateAssessmentIn(BaseModel):
    class_subject_id: int
    title: str
    coefficient: float = 1.0
    delivery_mode: DeliveryMode = DeliveryMode.HOMEWORK
    duration_minutes: Optional[int] = None
    scheduled_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    is_published: bool = True


class ChoiceIn(BaseModel):
    content: str
    is_correct: bool = False


class CreateQuestionIn(BaseModel):
    question_text: str
    question_type: QuestionType
    points: float
    choices: List[ChoiceIn] = []


@router.post("")
def api_create_assessment(payload: CreateAssessmentIn = Body(...), session: Session = Depends(get_session)):
    assessment = create_assessment(session, **payload.model_dump())
    return {
        "assessment_id": assessment.id,
        "class_subject_id": assessment.class_subject_id,
        "title": assessment.title,
        "coefficient": assessment.coefficient,
        "delivery_mode": assessment.delivery_mode,
        "duration_minutes": assessment.duration_minutes,
    }


@router.post("/{assessment_id}/questions")
def api_add_question(
    assessment_id: int,
    payload: CreateQuestionIn = Body(...),
    session: Session = Depends(get_session),
):
    q = add_question(
        session,
        assessment_id=assessment_id,
        question_text=payload.question_text,
        question_type=payload.question_type,
        points=payload.points,
        choices=[(c.content, c.is_correct) for c in payload.choices],
    )
    return {
        "question_id": q.id,
        "assessment_id": q.assessment_id,
        "question_text": q.question_text,
        "question_type": q.question_type,
        "points": q.points,
    }


@router.get("/{assessment_id}/questions")
def api_list_questions(assessment_id: int, session: Session = Depends(get_session)):
    assessment = session.get(Assessment, assessment_id)
    if not assessment:
        raise RecordNotFound("Assessment", assessment_id)
    qs = list_questions(session, assessment_id)
    choices = choices_by_question(session, [q.id for q in qs])
    # Correctness stays server-side
    return {
        "assessment_id": assessment_id,
        "total_points": total_points(session, assessment_id),
        "questions": [
            {
                "question_id": q.id,
                "question_text": q.question_text,
                "question_type": q.question_type,
                "points": q.points,
                "choices": [{"choice_id": c.id, "content": c.content} for c in choices.get(q.id, [])],
            }
            for q in qs
        ],
    }
