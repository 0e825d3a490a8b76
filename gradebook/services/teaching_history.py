"""Time-bounded record of which teacher owns a (class, subject) pairing.

Periods are inclusive on both ends. Replacing a teacher on ``effective_date``
closes the open period on the day before and opens a new one on that date,
so consecutive periods never overlap and never leave a gap.
"""

import logging
from datetime import date, datetime, timedelta
from typing import List, Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from gradebook.exceptions import InvalidEffectiveDate, RecordNotFound
from gradebook.models import Assessment, Assignment, ClassSubject, SchoolClass, Subject, User, utcnow

logger = logging.getLogger(__name__)


def _get_period(session: Session, class_subject_id: int) -> ClassSubject:
    period = session.get(ClassSubject, class_subject_id)
    if not period:
        raise RecordNotFound("ClassSubject", class_subject_id)
    return period


def subject_periods(session: Session, class_subject_id: int) -> List[ClassSubject]:
    """Every period of the (class, subject) pairing ``class_subject_id`` belongs to."""
    period = _get_period(session, class_subject_id)
    stmt = (
        select(ClassSubject)
        .where(
            ClassSubject.class_id == period.class_id,
            ClassSubject.subject_id == period.subject_id,
        )
        .order_by(ClassSubject.valid_from)
    )
    return list(session.exec(stmt).all())


def open_period_for(session: Session, class_id: int, subject_id: int) -> Optional[ClassSubject]:
    stmt = select(ClassSubject).where(
        ClassSubject.class_id == class_id,
        ClassSubject.subject_id == subject_id,
        ClassSubject.valid_to.is_(None),
    )
    return session.exec(stmt).first()


def _check_teacher(session: Session, teacher_id: int) -> None:
    teacher = session.get(User, teacher_id)
    if not teacher:
        raise RecordNotFound("User", teacher_id)
    if teacher.role != "teacher":
        raise ValueError(f"User {teacher_id} is not a teacher")


class TeachingAssignmentHistory:
    """Reads and forward-only writes of teaching periods."""

    def open_first_period(
        self,
        session: Session,
        class_id: int,
        subject_id: int,
        teacher_id: Optional[int],
        valid_from: date,
        coefficient: float = 1.0,
    ) -> ClassSubject:
        """Start teaching a subject in a class."""
        if not session.get(SchoolClass, class_id):
            raise RecordNotFound("SchoolClass", class_id)
        if not session.get(Subject, subject_id):
            raise RecordNotFound("Subject", subject_id)
        if teacher_id is not None:
            _check_teacher(session, teacher_id)
        if coefficient <= 0:
            raise ValueError("coefficient must be positive")
        if open_period_for(session, class_id, subject_id):
            raise InvalidEffectiveDate(
                f"Subject {subject_id} already has an open teaching period in class {class_id}"
            )

        period = ClassSubject(
            class_id=class_id,
            subject_id=subject_id,
            teacher_id=teacher_id,
            coefficient=coefficient,
            valid_from=valid_from,
        )
        session.add(period)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise InvalidEffectiveDate(
                f"Subject {subject_id} already has an open teaching period in class {class_id}"
            )
        session.refresh(period)
        return period

    def assign_teacher(
        self,
        session: Session,
        class_subject_id: int,
        teacher_id: int,
        effective_date: date,
    ) -> ClassSubject:
        """Hand the pairing over to ``teacher_id`` from ``effective_date`` on.

        Returns the newly opened period. The effective date must fall strictly
        after the start of the currently open period.

        Raises:
            InvalidEffectiveDate: If the date would rewrite existing history, or a
                concurrent replacement closed the open period first
        """
        _check_teacher(session, teacher_id)
        period = _get_period(session, class_subject_id)
        current = open_period_for(session, period.class_id, period.subject_id)
        if current is None:
            raise InvalidEffectiveDate("No open teaching period to replace")
        if effective_date <= current.valid_from:
            raise InvalidEffectiveDate(
                f"Effective date {effective_date} must be after {current.valid_from}, "
                f"the start of the current period"
            )

        # Check-and-set on the open period; a concurrent writer that got here
        # first leaves nothing to close
        result = session.exec(
            update(ClassSubject)
            .where(
                ClassSubject.id == current.id,
                ClassSubject.valid_to.is_(None),
                ClassSubject.valid_from < effective_date,
            )
            .values(valid_to=effective_date - timedelta(days=1))
        )
        if result.rowcount != 1:
            session.rollback()
            raise InvalidEffectiveDate("The open teaching period was modified concurrently")

        replacement = ClassSubject(
            class_id=current.class_id,
            subject_id=current.subject_id,
            teacher_id=teacher_id,
            coefficient=current.coefficient,
            valid_from=effective_date,
        )
        session.add(replacement)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            raise InvalidEffectiveDate("Another teaching period was opened concurrently")
        session.refresh(replacement)

        logger.info(
            "Class %s subject %s: teacher %s -> %s effective %s",
            current.class_id, current.subject_id, current.teacher_id, teacher_id, effective_date,
        )
        return replacement

    replace_teacher = assign_teacher

    def period_at(
        self,
        session: Session,
        class_subject_id: int,
        as_of: Union[date, datetime, None] = None,
    ) -> Optional[ClassSubject]:
        """The single period covering ``as_of`` (today by default)."""
        if as_of is None:
            as_of = utcnow().date()
        elif isinstance(as_of, datetime):
            as_of = as_of.date()

        period = _get_period(session, class_subject_id)
        matches = session.exec(
            select(ClassSubject)
            .where(
                ClassSubject.class_id == period.class_id,
                ClassSubject.subject_id == period.subject_id,
                ClassSubject.valid_from <= as_of,
                (ClassSubject.valid_to.is_(None)) | (ClassSubject.valid_to >= as_of),
            )
            .order_by(ClassSubject.valid_from.desc())
        ).all()
        if len(matches) > 1:
            logger.error(
                "Overlapping teaching periods for class %s subject %s on %s: %s",
                period.class_id, period.subject_id, as_of, [m.id for m in matches],
            )
        return matches[0] if matches else None

    def current_teacher(
        self,
        session: Session,
        class_subject_id: int,
        as_of: Union[date, datetime, None] = None,
    ) -> Optional[int]:
        """Teacher of record on ``as_of``; None before the first period starts."""
        period = self.period_at(session, class_subject_id, as_of)
        return period.teacher_id if period else None

    def history(self, session: Session, class_subject_id: int) -> List[ClassSubject]:
        return subject_periods(session, class_subject_id)

    def update_coefficient(self, session: Session, class_subject_id: int, coefficient: float) -> ClassSubject:
        if coefficient <= 0:
            raise ValueError("coefficient must be positive")
        period = _get_period(session, class_subject_id)
        if period.valid_to is not None:
            raise ValueError("Closed teaching periods cannot be changed")
        period.coefficient = coefficient
        session.add(period)
        session.commit()
        session.refresh(period)
        return period

    def teacher_of_record(self, session: Session, assignment: Assignment) -> Optional[int]:
        """Who owned the subject when the assignment was graded (or submitted)."""
        moment = assignment.graded_at or assignment.submitted_at
        if moment is None:
            return None
        assessment = session.get(Assessment, assignment.assessment_id)
        return self.current_teacher(session, assessment.class_subject_id, moment)
