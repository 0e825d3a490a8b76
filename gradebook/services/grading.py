"""Grade aggregation: raw assignment scores, normalized grades and averages.

Intermediate values keep full precision; use ``present()`` only when a value
leaves the engine.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Sequence, Union

from sqlalchemy import func
from sqlmodel import Session, select

from gradebook.config import settings
from gradebook.exceptions import RecordNotFound
from gradebook.models import (
    Answer,
    Assessment,
    Assignment,
    ClassSubject,
    Enrollment,
    Question,
    Subject,
)
from gradebook.services.assessments import total_points
from gradebook.services.teaching_history import open_period_for, subject_periods

logger = logging.getLogger(__name__)

AsOf = Union[date, datetime, None]


def present(value: Optional[float]) -> Optional[float]:
    """Round a grade for display."""
    return None if value is None else round(value, 2)


def _graded_before(as_of: AsOf):
    """SQL condition selecting assignments graded no later than ``as_of``."""
    if as_of is None:
        return Assignment.graded_at.is_not(None)
    if isinstance(as_of, datetime):
        return Assignment.graded_at <= as_of
    # A plain date covers the whole day
    return Assignment.graded_at < datetime.combine(as_of + timedelta(days=1), time.min)


@dataclass
class AssessmentGrade:
    assignment_id: int
    assessment_id: int
    title: str
    coefficient: float
    score: float
    total_points: float
    normalized: Optional[float]
    graded_at: datetime


@dataclass
class SubjectBreakdown:
    subject_id: int
    subject_name: str
    class_subject_id: int
    teacher_id: Optional[int]
    coefficient: float
    average: Optional[float]
    completed: int
    total: int


class GradeAggregator:
    """Stateless aggregation over persisted answers and assignments."""

    def __init__(self, scale: Optional[float] = None):
        self.scale = settings.GRADING_SCALE if scale is None else scale

    def total_possible_points(self, session: Session, assessment_id: int) -> float:
        return total_points(session, assessment_id)

    def assignment_score(self, session: Session, assignment: Assignment) -> float:
        """Sum of the answer scores; ungraded answers count as 0."""
        total = session.exec(
            select(func.sum(Answer.score))
            .join(Question, Question.id == Answer.question_id)
            .where(
                Answer.assignment_id == assignment.id,
                Question.assessment_id == assignment.assessment_id,
            )
        ).one()
        return float(total or 0.0)

    def pending_manual_questions(self, session: Session, assignment: Assignment) -> List[int]:
        """Ids of manually graded questions that have no score yet."""
        questions = session.exec(
            select(Question)
            .where(Question.assessment_id == assignment.assessment_id)
            .order_by(Question.order_index, Question.id)
        ).all()
        manual_ids = [q.id for q in questions if q.question_type.requires_manual_grading]
        if not manual_ids:
            return []
        scored = set(
            session.exec(
                select(Answer.question_id).where(
                    Answer.assignment_id == assignment.id,
                    Answer.question_id.in_(manual_ids),
                    Answer.score.is_not(None),
                )
            ).all()
        )
        return [qid for qid in manual_ids if qid not in scored]

    def is_complete(self, session: Session, assignment: Assignment) -> bool:
        return not self.pending_manual_questions(session, assignment)

    def normalize(self, score: float, total: float) -> Optional[float]:
        if total <= 0:
            return None
        return score / total * self.scale

    def normalized_score(self, session: Session, assignment: Assignment) -> Optional[float]:
        total = self.total_possible_points(session, assignment.assessment_id)
        return self.normalize(self.assignment_score(session, assignment), total)

    def assessment_grades(
        self,
        session: Session,
        student_id: int,
        class_subject_id: int,
        as_of: AsOf = None,
    ) -> List[AssessmentGrade]:
        """Graded assessments of a student in one subject, across every teaching period."""
        period_ids = [p.id for p in subject_periods(session, class_subject_id)]

        rows = session.exec(
            select(Assignment, Assessment)
            .join(Assessment, Assessment.id == Assignment.assessment_id)
            .join(Enrollment, Enrollment.id == Assignment.enrollment_id)
            .where(
                Assessment.class_subject_id.in_(period_ids),
                Enrollment.student_id == student_id,
                Assignment.graded_at.is_not(None),
                _graded_before(as_of),
            )
            .order_by(Assignment.graded_at, Assessment.id)
        ).all()
        if not rows:
            return []

        assessment_ids = list({assessment.id for _, assessment in rows})
        assignment_ids = [assignment.id for assignment, _ in rows]
        totals = self._totals_by_assessment(session, assessment_ids)
        scores = self._scores_by_assignment(session, assignment_ids)

        grades = []
        for assignment, assessment in rows:
            total = totals.get(assessment.id, 0.0)
            score = scores.get(assignment.id, 0.0)
            normalized = self.normalize(score, total)
            if normalized is None:
                logger.warning(
                    "Assessment %s has no possible points; excluded from averages", assessment.id
                )
            grades.append(
                AssessmentGrade(
                    assignment_id=assignment.id,
                    assessment_id=assessment.id,
                    title=assessment.title,
                    coefficient=assessment.coefficient,
                    score=score,
                    total_points=total,
                    normalized=normalized,
                    graded_at=assignment.graded_at,
                )
            )
        return grades

    def subject_average(
        self,
        session: Session,
        student_id: int,
        class_subject_id: int,
        as_of: AsOf = None,
    ) -> Optional[float]:
        """Coefficient-weighted average of normalized grades, or None if nothing is graded."""
        grades = [
            g for g in self.assessment_grades(session, student_id, class_subject_id, as_of)
            if g.normalized is not None
        ]
        return self._weighted(
            [g.normalized for g in grades], [g.coefficient for g in grades]
        )

    def annual_average(
        self,
        session: Session,
        student_id: int,
        class_id: int,
        as_of: AsOf = None,
    ) -> Optional[float]:
        """Subject averages weighted by each subject's class coefficient."""
        values, weights = [], []
        for period in self._class_subjects(session, class_id):
            average = self.subject_average(session, student_id, period.id, as_of)
            if average is not None:
                values.append(average)
                weights.append(period.coefficient)
        return self._weighted(values, weights)

    def class_average_for_subject(
        self,
        session: Session,
        class_subject_id: int,
        as_of: AsOf = None,
    ) -> Optional[float]:
        """Mean subject average over the active students that have one."""
        period = session.get(ClassSubject, class_subject_id)
        if not period:
            raise RecordNotFound("ClassSubject", class_subject_id)
        student_ids = session.exec(
            select(Enrollment.student_id).where(
                Enrollment.class_id == period.class_id, Enrollment.status == "active"
            )
        ).all()
        averages = [
            avg for avg in (
                self.subject_average(session, sid, class_subject_id, as_of) for sid in student_ids
            )
            if avg is not None
        ]
        if not averages:
            return None
        return sum(averages) / len(averages)

    def grade_breakdown(
        self,
        session: Session,
        student_id: int,
        class_id: int,
        as_of: AsOf = None,
    ) -> List[SubjectBreakdown]:
        """Per-subject report for a student: average and completed/total assessments as of ``as_of``."""
        breakdown = []
        for period in self._class_subjects(session, class_id):
            period_ids = [p.id for p in subject_periods(session, period.id)]
            total = session.exec(
                select(func.count(Assessment.id)).where(
                    Assessment.class_subject_id.in_(period_ids),
                    Assessment.is_published == True,  # noqa: E712
                )
            ).one()
            grades = self.assessment_grades(session, student_id, period.id, as_of)
            subject = session.get(Subject, period.subject_id)
            breakdown.append(
                SubjectBreakdown(
                    subject_id=period.subject_id,
                    subject_name=subject.name if subject else "",
                    class_subject_id=period.id,
                    teacher_id=period.teacher_id,
                    coefficient=period.coefficient,
                    average=self.subject_average(session, student_id, period.id, as_of),
                    completed=len(grades),
                    total=total,
                )
            )
        return breakdown

    # ------------------------------------------------------------------

    @staticmethod
    def _weighted(values: Sequence[float], weights: Sequence[float]) -> Optional[float]:
        weight_sum = sum(weights)
        if not values or weight_sum <= 0:
            return None
        return sum(v * w for v, w in zip(values, weights)) / weight_sum

    @staticmethod
    def _class_subjects(session: Session, class_id: int) -> List[ClassSubject]:
        """The current period of every subject taught in the class."""
        subject_ids = session.exec(
            select(ClassSubject.subject_id).where(ClassSubject.class_id == class_id).distinct()
        ).all()
        periods = [open_period_for(session, class_id, sid) for sid in sorted(subject_ids)]
        return [p for p in periods if p is not None]

    @staticmethod
    def _totals_by_assessment(session: Session, assessment_ids: List[int]) -> Dict[int, float]:
        rows = session.exec(
            select(Question.assessment_id, func.sum(Question.points))
            .where(Question.assessment_id.in_(assessment_ids))
            .group_by(Question.assessment_id)
        ).all()
        return {assessment_id: float(total or 0.0) for assessment_id, total in rows}

    @staticmethod
    def _scores_by_assignment(session: Session, assignment_ids: List[int]) -> Dict[int, float]:
        rows = session.exec(
            select(Answer.assignment_id, func.sum(Answer.score))
            .where(Answer.assignment_id.in_(assignment_ids))
            .group_by(Answer.assignment_id)
        ).all()
        return {assignment_id: float(total or 0.0) for assignment_id, total in rows}
