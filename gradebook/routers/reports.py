"""Per-class student grade reports."""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlmodel import Session

from gradebook.database import get_session
from gradebook.deps import get_aggregator
from gradebook.exceptions import RecordNotFound
from gradebook.models import SchoolClass
from gradebook.services.grading import GradeAggregator, present

router = APIRouter(prefix="/classes", tags=["reports"])


@router.get("/{class_id}/students/{student_id}/report")
def api_student_report(
    class_id: int,
    student_id: int,
    as_of: Optional[date] = Query(None),
    session: Session = Depends(get_session),
    aggregator: GradeAggregator = Depends(get_aggregator),
):
    if not session.get(SchoolClass, class_id):
        raise RecordNotFound("SchoolClass", class_id)

    subjects = aggregator.grade_breakdown(session, student_id, class_id, as_of)
    return {
        "class_id": class_id,
        "student_id": student_id,
        "annual_average": present(aggregator.annual_average(session, student_id, class_id, as_of)),
        "scale": aggregator.scale,
        "subjects": [
            {
                "subject_id": s.subject_id,
                "subject_name": s.subject_name,
                "class_subject_id": s.class_subject_id,
                "teacher_id": s.teacher_id,
                "coefficient": s.coefficient,
                "average": present(s.average),
                "completed": s.completed,
                "total": s.total,
            }
            for s in subjects
        ],
    }
