"""API endpoints for teaching periods and subject averages."""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel
from sqlmodel import Session

from gradebook.database import get_session
from gradebook.deps import get_aggregator, get_history
from gradebook.models import ClassSubject
from gradebook.services.grading import GradeAggregator, present
from gradebook.services.teaching_history import TeachingAssignmentHistory

router = APIRouter(prefix="/class-subjects", tags=["class-subjects"])


class ClassSubjectIn(BaseModel):
    class_id: int
    subject_id: int
    teacher_id: Optional[int] = None
    valid_from: date
    coefficient: float = 1.0


class TeacherChangeIn(BaseModel):
    teacher_id: int
    effective_date: date


class CoefficientIn(BaseModel):
    coefficient: float


def period_out(period: ClassSubject) -> dict:
    return {
        "class_subject_id": period.id,
        "class_id": period.class_id,
        "subject_id": period.subject_id,
        "teacher_id": period.teacher_id,
        "coefficient": period.coefficient,
        "valid_from": period.valid_from,
        "valid_to": period.valid_to,
    }


@router.post("")
def api_create_class_subject(
    payload: ClassSubjectIn = Body(...),
    session: Session = Depends(get_session),
    history: TeachingAssignmentHistory = Depends(get_history),
):
    period = history.open_first_period(
        session,
        class_id=payload.class_id,
        subject_id=payload.subject_id,
        teacher_id=payload.teacher_id,
        valid_from=payload.valid_from,
        coefficient=payload.coefficient,
    )
    return period_out(period)


@router.post("/{class_subject_id}/teacher")
def api_replace_teacher(
    class_subject_id: int,
    payload: TeacherChangeIn = Body(...),
    session: Session = Depends(get_session),
    history: TeachingAssignmentHistory = Depends(get_history),
):
    period = history.replace_teacher(
        session, class_subject_id, payload.teacher_id, payload.effective_date
    )
    return period_out(period)


@router.get("/{class_subject_id}/teacher")
def api_current_teacher(
    class_subject_id: int,
    as_of: Optional[date] = Query(None),
    session: Session = Depends(get_session),
    history: TeachingAssignmentHistory = Depends(get_history),
):
    period = history.period_at(session, class_subject_id, as_of)
    return {
        "as_of": as_of,
        "teacher_id": period.teacher_id if period else None,
        "class_subject_id": period.id if period else None,
    }


@router.get("/{class_subject_id}/history")
def api_history(
    class_subject_id: int,
    session: Session = Depends(get_session),
    history: TeachingAssignmentHistory = Depends(get_history),
):
    return [period_out(p) for p in history.history(session, class_subject_id)]


@router.put("/{class_subject_id}/coefficient")
def api_update_coefficient(
    class_subject_id: int,
    payload: CoefficientIn = Body(...),
    session: Session = Depends(get_session),
    history: TeachingAssignmentHistory = Depends(get_history),
):
    period = history.update_coefficient(session, class_subject_id, payload.coefficient)
    return period_out(period)


@router.get("/{class_subject_id}/students/{student_id}/average")
def api_subject_average(
    class_subject_id: int,
    student_id: int,
    as_of: Optional[date] = Query(None),
    session: Session = Depends(get_session),
    aggregator: GradeAggregator = Depends(get_aggregator),
):
    grades = aggregator.assessment_grades(session, student_id, class_subject_id, as_of)
    average = aggregator.subject_average(session, student_id, class_subject_id, as_of)
    return {
        "class_subject_id": class_subject_id,
        "student_id": student_id,
        "as_of": as_of,
        "average": present(average),
        "scale": aggregator.scale,
        "assessments": [
            {
                "assessment_id": g.assessment_id,
                "title": g.title,
                "coefficient": g.coefficient,
                "score": g.score,
                "total_points": g.total_points,
                "normalized": present(g.normalized),
                "graded_at": g.graded_at,
            }
            for g in grades
        ],
    }


@router.get("/{class_subject_id}/average")
def api_class_average(
    class_subject_id: int,
    as_of: Optional[date] = Query(None),
    session: Session = Depends(get_session),
    aggregator: GradeAggregator = Depends(get_aggregator),
):
    average = aggregator.class_average_for_subject(session, class_subject_id, as_of)
    return {"class_subject_id": class_subject_id, "as_of": as_of, "average": present(average)}
