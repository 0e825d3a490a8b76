"""Assignment state machine.

``not_started -> in_progress -> submitted -> graded``, plus teacher reopen
(back to ``in_progress``) and reassignment (back to ``not_started``).
The state is derived from the assignment timestamps; every transition that
races with another writer is a single conditional UPDATE whose row count
decides the winner. Each public method commits once.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Union

from sqlalchemy import update
from sqlmodel import Session, select

from gradebook.exceptions import IncompleteGrading, InvalidTransition
from gradebook.models import (
    Answer,
    Assessment,
    Assignment,
    AssignmentActivityLog,
    AssignmentState,
    Choice,
    DeliveryMode,
    Question,
    ViolationType,
    utcnow,
)
from gradebook.services import timing
from gradebook.services.answer_store import AnswerPayload, AssignmentAnswerStore
from gradebook.services.assignments import AssignmentRef, Persisted, get_assignment, materialize
from gradebook.services.grading import GradeAggregator
from gradebook.services.scoring import QuestionScorer
from gradebook.utils import require_reason, sanitize_feedback, validate_marks

logger = logging.getLogger(__name__)

_CLOSED = (AssignmentState.SUBMITTED, AssignmentState.GRADED)


@dataclass
class ManualGrade:
    question_id: int
    score: float
    feedback: Optional[str] = None


@dataclass
class GradingResult:
    assignment: Assignment
    score: float
    pending_question_ids: List[int] = field(default_factory=list)

    @property
    def is_complete(self) -> bool:
        return not self.pending_question_ids


@dataclass
class ViolationOutcome:
    assignment: Assignment
    violation: ViolationType
    forced: bool


def _as_ref(ref: Union[int, AssignmentRef]) -> AssignmentRef:
    return Persisted(ref) if isinstance(ref, int) else ref


class AssignmentLifecycle:
    def __init__(
        self,
        scorer: QuestionScorer,
        store: AssignmentAnswerStore,
        aggregator: GradeAggregator,
    ):
        self.scorer = scorer
        self.store = store
        self.aggregator = aggregator

    # ------------------------------------------------------------------
    # helpers

    def _log(
        self,
        session: Session,
        assignment: Assignment,
        action: str,
        detail: Optional[str] = None,
        actor_id: Optional[int] = None,
    ) -> None:
        session.add(
            AssignmentActivityLog(
                assignment_id=assignment.id, action=action, detail=detail, actor_id=actor_id
            )
        )

    def _reject(self, session: Session, assignment_id: int, attempted: str, message: Optional[str] = None):
        """Roll back and raise ``InvalidTransition`` with the committed state."""
        session.rollback()
        current = session.get(Assignment, assignment_id)
        # A row materialized in this transaction is gone again: still virtual
        state = current.state.value if current else AssignmentState.NOT_STARTED.value
        logger.info("Rejected %s on assignment %s in state %s", attempted, assignment_id, state)
        raise InvalidTransition(state, attempted, message)

    def _mark_started(self, session: Session, assignment: Assignment, actor_id: Optional[int] = None) -> None:
        result = session.exec(
            update(Assignment)
            .where(Assignment.id == assignment.id, Assignment.started_at.is_(None))
            .values(started_at=utcnow())
        )
        session.refresh(assignment)
        if result.rowcount == 1:
            self._log(session, assignment, "started", actor_id=actor_id)
            logger.info("Assignment %s started", assignment.id)

    def _score_answers(self, session: Session, assignment: Assignment) -> float:
        """Auto-score every answer of the assignment and return the provisional total."""
        questions = session.exec(
            select(Question).where(Question.assessment_id == assignment.assessment_id)
        ).all()
        auto = [q for q in questions if not q.question_type.requires_manual_grading]
        if auto:
            choices: Dict[int, List[Choice]] = {q.id: [] for q in auto}
            for choice in session.exec(
                select(Choice).where(Choice.question_id.in_(list(choices)))
            ).all():
                choices[choice.question_id].append(choice)
            answers = {
                a.question_id: a
                for a in session.exec(select(Answer).where(Answer.assignment_id == assignment.id)).all()
            }
            for question in auto:
                answer = answers.get(question.id)
                if answer is None:
                    # Unanswered questions contribute 0 without a row
                    continue
                answer.score = self.scorer.score(question, choices[question.id], answer).score
                session.add(answer)
            session.flush()
        return self.aggregator.assignment_score(session, assignment)

    def _close_submission(
        self,
        session: Session,
        assignment: Assignment,
        attempted: str,
        submitted_at: datetime,
        violation: Optional[ViolationType] = None,
        actor_id: Optional[int] = None,
    ) -> Assignment:
        result = session.exec(
            update(Assignment)
            .where(
                Assignment.id == assignment.id,
                Assignment.started_at.is_not(None),
                Assignment.submitted_at.is_(None),
                Assignment.graded_at.is_(None),
            )
            .values(
                submitted_at=submitted_at,
                forced_submission=violation is not None,
                security_violation=violation.value if violation else None,
            )
        )
        if result.rowcount != 1:
            self._reject(session, assignment.id, attempted)
        session.refresh(assignment)

        assignment.score = self._score_answers(session, assignment)
        if violation is not None:
            self._log(session, assignment, "forced_submission", violation.value, actor_id)
            logger.warning("Assignment %s force-submitted: %s", assignment.id, violation.value)
        else:
            self._log(session, assignment, "submitted", actor_id=actor_id)
            logger.info("Assignment %s submitted", assignment.id)

        if self.aggregator.is_complete(session, assignment):
            # Nothing left for a human to grade
            assignment.graded_at = submitted_at
            self._log(session, assignment, "graded", "auto", actor_id)
            logger.info("Assignment %s auto-graded with score %s", assignment.id, assignment.score)
        session.add(assignment)
        return assignment

    # ------------------------------------------------------------------
    # student side

    def start(self, session: Session, ref: Union[int, AssignmentRef], actor_id: Optional[int] = None) -> Assignment:
        """Begin (or resume) an attempt. Starting twice is a no-op."""
        assignment = materialize(session, _as_ref(ref))
        state = assignment.state
        if state in _CLOSED:
            self._reject(session, assignment.id, "start")
        if state is AssignmentState.NOT_STARTED:
            self._mark_started(session, assignment, actor_id)
        session.commit()
        session.refresh(assignment)
        return assignment

    def record_answer(
        self,
        session: Session,
        ref: Union[int, AssignmentRef],
        question_id: int,
        payload: AnswerPayload,
    ) -> Answer:
        """Store an answer; the first write also starts the attempt."""
        assignment = materialize(session, _as_ref(ref))
        if assignment.state in _CLOSED:
            self._reject(session, assignment.id, "record an answer for")
        if assignment.state is AssignmentState.NOT_STARTED:
            self._mark_started(session, assignment)
        answer = self.store.write(session, assignment, question_id, payload)
        session.commit()
        session.refresh(answer)
        return answer

    def submit(self, session: Session, ref: Union[int, AssignmentRef], actor_id: Optional[int] = None) -> Assignment:
        assignment = materialize(session, _as_ref(ref))
        self._close_submission(session, assignment, "submit", utcnow(), actor_id=actor_id)
        session.commit()
        session.refresh(assignment)
        return assignment

    def report_security_violation(
        self,
        session: Session,
        ref: Union[int, AssignmentRef],
        violation: Union[str, ViolationType],
        answers: Optional[Dict[int, AnswerPayload]] = None,
        details: Optional[str] = None,
    ) -> ViolationOutcome:
        """Record an integrity event reported by the client.

        Terminal violations on a supervised delivery submit the attempt on the
        spot, after storing the in-flight ``answers`` snapshot. Anything else is
        only written to the activity log.
        """
        try:
            violation = ViolationType(violation)
        except ValueError:
            raise ValueError(f"Unknown violation type: {violation!r}")

        assignment = materialize(session, _as_ref(ref))
        assessment = session.get(Assessment, assignment.assessment_id)
        detail = violation.value if not details else f"{violation.value}: {sanitize_feedback(details)}"

        forcing = violation.is_terminal and assessment.delivery_mode is DeliveryMode.SUPERVISED
        if not forcing:
            self._log(session, assignment, "violation", detail)
            session.commit()
            session.refresh(assignment)
            logger.warning("Assignment %s reported %s (recorded only)", assignment.id, violation.value)
            return ViolationOutcome(assignment=assignment, violation=violation, forced=False)

        if assignment.state is not AssignmentState.IN_PROGRESS:
            self._reject(session, assignment.id, "force-submit")

        for question_id, payload in (answers or {}).items():
            self.store.write(session, assignment, question_id, payload)
        self._log(session, assignment, "violation", detail)
        self._close_submission(session, assignment, "force-submit", utcnow(), violation=violation)
        session.commit()
        session.refresh(assignment)
        return ViolationOutcome(assignment=assignment, violation=violation, forced=True)

    def auto_submit_if_expired(
        self,
        session: Session,
        assignment_id: int,
        now: Optional[datetime] = None,
    ) -> bool:
        """Force-submit an attempt that ran past its deadline plus grace.

        Applies to homework as well: a due date is a hard limit, unlike the
        client-reported violations that only force supervised attempts. The
        submission is stamped at the deadline itself and tagged
        ``time_expired``. Returns whether a submission happened.
        """
        assignment = get_assignment(session, assignment_id)
        assessment = session.get(Assessment, assignment.assessment_id)
        if not timing.is_time_expired(assignment, assessment, with_grace=True, now=now):
            return False
        deadline = timing.deadline(assignment, assessment)
        self._close_submission(
            session, assignment, "expire", deadline, violation=ViolationType.TIME_EXPIRED
        )
        session.commit()
        session.refresh(assignment)
        return True

    # ------------------------------------------------------------------
    # teacher side

    def _apply_grade(
        self,
        session: Session,
        assignment: Assignment,
        question_id: int,
        score: float,
        feedback: Optional[str],
    ) -> None:
        question = session.get(Question, question_id)
        if not question or question.assessment_id != assignment.assessment_id:
            raise ValueError(f"Question {question_id} does not belong to this assessment")
        if not question.question_type.requires_manual_grading:
            raise ValueError(f"Question {question_id} is auto-graded")
        try:
            validate_marks(score, question.points)
        except ValueError as e:
            raise ValueError(f"Question {question_id}: {str(e)}")

        answer = session.exec(
            select(Answer).where(
                Answer.assignment_id == assignment.id, Answer.question_id == question_id
            )
        ).first()
        if answer is None:
            # Unanswered questions can still be graded
            answer = Answer(assignment_id=assignment.id, question_id=question_id)
        answer.score = float(score)
        if feedback is not None:
            answer.feedback = sanitize_feedback(feedback)
        session.add(answer)

    def _refresh_totals(self, session: Session, assignment: Assignment, grader_id: Optional[int]) -> GradingResult:
        session.flush()
        assignment.score = self.aggregator.assignment_score(session, assignment)
        if grader_id is not None:
            assignment.graded_by = grader_id
        pending = self.aggregator.pending_manual_questions(session, assignment)
        if not pending and assignment.state is AssignmentState.SUBMITTED:
            assignment.graded_at = utcnow()
            self._log(session, assignment, "graded", actor_id=grader_id)
            logger.info("Assignment %s graded with score %s", assignment.id, assignment.score)
        session.add(assignment)
        return GradingResult(assignment=assignment, score=assignment.score, pending_question_ids=pending)

    def grade_manual_answer(
        self,
        session: Session,
        assignment_id: int,
        question_id: int,
        score: float,
        feedback: Optional[str] = None,
        grader_id: Optional[int] = None,
    ) -> GradingResult:
        """Score one manually graded answer.

        The assignment becomes ``graded`` as soon as no manual question is left
        without a score. Regrading a graded assignment updates its total.
        """
        assignment = get_assignment(session, assignment_id)
        if assignment.state not in _CLOSED:
            self._reject(session, assignment_id, "grade")
        self._apply_grade(session, assignment, question_id, score, feedback)
        result = self._refresh_totals(session, assignment, grader_id)
        session.commit()
        session.refresh(assignment)
        return result

    def save_manual_grades(
        self,
        session: Session,
        assignment_id: int,
        grades: Iterable[ManualGrade],
        teacher_notes: Optional[str] = None,
        grader_id: Optional[int] = None,
    ) -> GradingResult:
        """Save several manual grades at once. Partial progress is kept."""
        assignment = get_assignment(session, assignment_id)
        if assignment.state not in _CLOSED:
            self._reject(session, assignment_id, "grade")
        for grade in grades:
            self._apply_grade(session, assignment, grade.question_id, grade.score, grade.feedback)
        if teacher_notes is not None:
            assignment.teacher_notes = sanitize_feedback(teacher_notes)
        result = self._refresh_totals(session, assignment, grader_id)
        session.commit()
        session.refresh(assignment)
        return result

    def finalize_grading(
        self,
        session: Session,
        assignment_id: int,
        grader_id: Optional[int] = None,
    ) -> Assignment:
        """Move a fully graded submission to ``graded``.

        Raises:
            IncompleteGrading: If any manual question still has no score
        """
        assignment = get_assignment(session, assignment_id)
        if assignment.state is AssignmentState.GRADED:
            return assignment
        if assignment.state is not AssignmentState.SUBMITTED:
            self._reject(session, assignment_id, "finalize")
        pending = self.aggregator.pending_manual_questions(session, assignment)
        if pending:
            raise IncompleteGrading(pending)
        self._refresh_totals(session, assignment, grader_id)
        session.commit()
        session.refresh(assignment)
        return assignment

    def reopen(
        self,
        session: Session,
        assignment_id: int,
        reason: str,
        actor_id: Optional[int] = None,
    ) -> Assignment:
        """Let a student resume a supervised attempt that was cut off by a violation.

        Answers are kept; submission and grading data are cleared. The clock
        is not reset, so an attempt with no time left cannot be reopened.
        """
        reason = require_reason(reason)
        assignment = get_assignment(session, assignment_id)
        assessment = session.get(Assessment, assignment.assessment_id)
        if assignment.state not in _CLOSED:
            self._reject(session, assignment_id, "reopen")
        if assessment.delivery_mode is not DeliveryMode.SUPERVISED or not assignment.forced_submission:
            self._reject(
                session, assignment_id, "reopen",
                "only supervised attempts ended by a violation can be reopened",
            )
        if timing.remaining_seconds(assignment, assessment) == 0:
            self._reject(session, assignment_id, "reopen", "time fully elapsed")

        result = session.exec(
            update(Assignment)
            .where(
                Assignment.id == assignment_id,
                Assignment.forced_submission == True,  # noqa: E712
                Assignment.submitted_at.is_not(None),
            )
            .values(
                submitted_at=None,
                graded_at=None,
                score=None,
                graded_by=None,
                forced_submission=False,
                security_violation=None,
            )
        )
        if result.rowcount != 1:
            self._reject(session, assignment_id, "reopen")
        session.refresh(assignment)
        self._log(session, assignment, "reopened", reason, actor_id)
        session.commit()
        session.refresh(assignment)
        logger.info("Assignment %s reopened: %s", assignment_id, reason)
        return assignment

    def reassign(
        self,
        session: Session,
        ref: Union[int, AssignmentRef],
        reason: str,
        actor_id: Optional[int] = None,
    ) -> Assignment:
        """Give the student a fresh attempt on an assignment with no answers."""
        reason = require_reason(reason)
        assignment = materialize(session, _as_ref(ref))
        has_answers = (
            select(Answer.id)
            .where(Answer.assignment_id == Assignment.id)
            .correlate(Assignment)
            .exists()
        )
        result = session.exec(
            update(Assignment)
            .where(Assignment.id == assignment.id, ~has_answers)
            .values(
                assigned_at=utcnow(),
                started_at=None,
                submitted_at=None,
                graded_at=None,
                score=None,
                graded_by=None,
                security_violation=None,
                forced_submission=False,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self._reject(session, assignment.id, "reassign", "answers have already been recorded")
        session.refresh(assignment)
        self._log(session, assignment, "reassigned", reason, actor_id)
        session.commit()
        session.refresh(assignment)
        logger.info("Assignment %s reassigned: %s", assignment.id, reason)
        return assignment

    def activity(self, session: Session, assignment_id: int) -> List[AssignmentActivityLog]:
        stmt = (
            select(AssignmentActivityLog)
            .where(AssignmentActivityLog.assignment_id == assignment_id)
            .order_by(AssignmentActivityLog.timestamp, AssignmentActivityLog.id)
        )
        return list(session.exec(stmt).all())
