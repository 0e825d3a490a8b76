"""Persisted and virtual assignments.

Every enrolled student logically has an assignment for every published
assessment of their class, but a row is only written on the first
interaction. Until then the assignment is *virtual* and reads as
``not_started``.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from gradebook.exceptions import RecordNotFound
from gradebook.models import (
    Assessment,
    Assignment,
    AssignmentState,
    ClassSubject,
    Enrollment,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Persisted:
    id: int


@dataclass(frozen=True)
class Virtual:
    assessment_id: int
    enrollment_id: int


AssignmentRef = Union[Persisted, Virtual]


@dataclass
class AssignmentView:
    """Read model for one (assessment, enrollment) pair."""

    assessment: Assessment
    enrollment_id: int
    assignment: Optional[Assignment] = None

    @property
    def ref(self) -> AssignmentRef:
        if self.assignment is not None:
            return Persisted(self.assignment.id)
        return Virtual(self.assessment.id, self.enrollment_id)

    @property
    def state(self) -> AssignmentState:
        if self.assignment is None:
            return AssignmentState.NOT_STARTED
        return self.assignment.state

    @property
    def is_virtual(self) -> bool:
        return self.assignment is None


def get_assignment(session: Session, assignment_id: int) -> Assignment:
    assignment = session.get(Assignment, assignment_id)
    if not assignment:
        raise RecordNotFound("Assignment", assignment_id)
    return assignment


def _find(session: Session, assessment_id: int, enrollment_id: int) -> Optional[Assignment]:
    stmt = select(Assignment).where(
        Assignment.assessment_id == assessment_id,
        Assignment.enrollment_id == enrollment_id,
    )
    return session.exec(stmt).first()


def _check_eligible(session: Session, ref: Virtual) -> None:
    assessment = session.get(Assessment, ref.assessment_id)
    if not assessment:
        raise RecordNotFound("Assessment", ref.assessment_id)
    enrollment = session.get(Enrollment, ref.enrollment_id)
    if not enrollment:
        raise RecordNotFound("Enrollment", ref.enrollment_id)
    class_subject = session.get(ClassSubject, assessment.class_subject_id)
    if class_subject is None or class_subject.class_id != enrollment.class_id:
        raise ValueError(
            f"Enrollment {ref.enrollment_id} is not in the class of assessment {ref.assessment_id}"
        )


def resolve(session: Session, ref: AssignmentRef) -> Optional[Assignment]:
    """Read-only lookup. A virtual reference with no row yet resolves to None."""
    if isinstance(ref, Persisted):
        return get_assignment(session, ref.id)
    _check_eligible(session, ref)
    return _find(session, ref.assessment_id, ref.enrollment_id)


def materialize(session: Session, ref: AssignmentRef) -> Assignment:
    """Return the persisted row for ``ref``, creating it if needed.

    Idempotent: materializing the same virtual reference twice, even from
    two racing requests, yields one row. Must run before any other write in
    the current transaction, since losing the insert race rolls it back.
    The new row is flushed, not committed.
    """
    if isinstance(ref, Persisted):
        return get_assignment(session, ref.id)

    _check_eligible(session, ref)
    existing = _find(session, ref.assessment_id, ref.enrollment_id)
    if existing:
        return existing

    assignment = Assignment(assessment_id=ref.assessment_id, enrollment_id=ref.enrollment_id)
    session.add(assignment)
    try:
        session.flush()
    except IntegrityError:
        # Another request created the row first
        session.rollback()
        existing = _find(session, ref.assessment_id, ref.enrollment_id)
        if existing is None:
            raise
        return existing

    logger.info(
        "Materialized assignment %s (assessment=%s, enrollment=%s)",
        assignment.id, ref.assessment_id, ref.enrollment_id,
    )
    return assignment


def list_enrollment_assignments(
    session: Session,
    enrollment_id: int,
    state: Optional[AssignmentState] = None,
) -> List[AssignmentView]:
    """Every published assessment of the enrollment's class, persisted or not.

    Assessments of earlier teaching periods of the same subject are included.
    """
    enrollment = session.get(Enrollment, enrollment_id)
    if not enrollment:
        raise RecordNotFound("Enrollment", enrollment_id)

    assessments = session.exec(
        select(Assessment)
        .join(ClassSubject, ClassSubject.id == Assessment.class_subject_id)
        .where(ClassSubject.class_id == enrollment.class_id, Assessment.is_published == True)  # noqa: E712
        .order_by(Assessment.scheduled_at, Assessment.id)
    ).all()

    rows = session.exec(select(Assignment).where(Assignment.enrollment_id == enrollment_id)).all()
    by_assessment = {a.assessment_id: a for a in rows}

    views = [
        AssignmentView(assessment=a, enrollment_id=enrollment_id, assignment=by_assessment.get(a.id))
        for a in assessments
    ]
    if state is not None:
        views = [v for v in views if v.state == state]
    return views
