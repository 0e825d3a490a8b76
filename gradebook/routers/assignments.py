"""API endpoints for taking and grading assignments."""

from typing import Dict, List, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel
from sqlmodel import Session

from gradebook.database import get_session
from gradebook.deps import get_aggregator, get_answer_store, get_lifecycle
from gradebook.models import Answer, Assessment, Assignment, AssignmentState
from gradebook.services import timing
from gradebook.services.answer_store import AnswerPayload, AssignmentAnswerStore
from gradebook.services.assignments import (
    Virtual,
    get_assignment,
    list_enrollment_assignments,
    materialize,
)
from gradebook.services.grading import GradeAggregator, present
from gradebook.services.lifecycle import AssignmentLifecycle, GradingResult, ManualGrade

router = APIRouter()


# --- Request schemas ---


class ViolationIn(BaseModel):
    violation: str
    details: Optional[str] = None
    # In-flight answers keyed by question id, stored before a forced submission
    answers: Optional[Dict[int, AnswerPayload]] = None


class GradeIn(BaseModel):
    score: float
    feedback: Optional[str] = None
    grader_id: Optional[int] = None


class ManualGradeIn(BaseModel):
    question_id: int
    score: float
    feedback: Optional[str] = None


class BatchGradeIn(BaseModel):
    grades: List[ManualGradeIn]
    teacher_notes: Optional[str] = None
    grader_id: Optional[int] = None


class FinalizeIn(BaseModel):
    grader_id: Optional[int] = None


class ReasonIn(BaseModel):
    reason: str
    actor_id: Optional[int] = None


# --- Serializers ---


def assignment_out(session: Session, assignment: Assignment, aggregator: GradeAggregator) -> dict:
    assessment = session.get(Assessment, assignment.assessment_id)
    state = assignment.state
    normalized = None
    if state is AssignmentState.GRADED:
        normalized = present(aggregator.normalized_score(session, assignment))
    return {
        "assignment_id": assignment.id,
        "assessment_id": assignment.assessment_id,
        "enrollment_id": assignment.enrollment_id,
        "status": state.value,
        "assigned_at": assignment.assigned_at,
        "started_at": assignment.started_at,
        "submitted_at": assignment.submitted_at,
        "graded_at": assignment.graded_at,
        "score": assignment.score,
        "total_points": aggregator.total_possible_points(session, assignment.assessment_id),
        "normalized_score": normalized,
        "security_violation": assignment.security_violation,
        "forced_submission": assignment.forced_submission,
        "teacher_notes": assignment.teacher_notes,
        "graded_by": assignment.graded_by,
        "remaining_seconds": timing.remaining_seconds(assignment, assessment)
        if state is AssignmentState.IN_PROGRESS
        else None,
    }


def answer_out(answer: Answer) -> dict:
    return {
        "answer_id": answer.id,
        "assignment_id": answer.assignment_id,
        "question_id": answer.question_id,
        "choice_id": answer.choice_id,
        "choice_ids": answer.choice_ids,
        "answer_text": answer.answer_text,
        "file_path": answer.file_path,
        "score": answer.score,
        "feedback": answer.feedback,
        "updated_at": answer.updated_at,
    }


def grading_out(session: Session, result: GradingResult, aggregator: GradeAggregator) -> dict:
    out = assignment_out(session, result.assignment, aggregator)
    out["pending_question_ids"] = result.pending_question_ids
    return out


# --- Student side ---


@router.post("/assignments/{assignment_id}/start")
def api_start(
    assignment_id: int,
    session: Session = Depends(get_session),
    lifecycle: AssignmentLifecycle = Depends(get_lifecycle),
    aggregator: GradeAggregator = Depends(get_aggregator),
):
    assignment = lifecycle.start(session, assignment_id)
    return assignment_out(session, assignment, aggregator)


@router.put("/assignments/{assignment_id}/answers/{question_id}")
def api_record_answer(
    assignment_id: int,
    question_id: int,
    payload: AnswerPayload = Body(...),
    session: Session = Depends(get_session),
    lifecycle: AssignmentLifecycle = Depends(get_lifecycle),
):
    answer = lifecycle.record_answer(session, assignment_id, question_id, payload)
    return answer_out(answer)


@router.get("/assignments/{assignment_id}/answers")
def api_list_answers(
    assignment_id: int,
    session: Session = Depends(get_session),
    store: AssignmentAnswerStore = Depends(get_answer_store),
):
    get_assignment(session, assignment_id)
    return [answer_out(a) for a in store.answers_for(session, assignment_id)]


@router.post("/assignments/{assignment_id}/submit")
def api_submit(
    assignment_id: int,
    session: Session = Depends(get_session),
    lifecycle: AssignmentLifecycle = Depends(get_lifecycle),
    aggregator: GradeAggregator = Depends(get_aggregator),
):
    assignment = lifecycle.submit(session, assignment_id)
    return assignment_out(session, assignment, aggregator)


@router.post("/assignments/{assignment_id}/violations")
def api_report_violation(
    assignment_id: int,
    payload: ViolationIn = Body(...),
    session: Session = Depends(get_session),
    lifecycle: AssignmentLifecycle = Depends(get_lifecycle),
    aggregator: GradeAggregator = Depends(get_aggregator),
):
    outcome = lifecycle.report_security_violation(
        session,
        assignment_id,
        payload.violation,
        answers=payload.answers,
        details=payload.details,
    )
    out = assignment_out(session, outcome.assignment, aggregator)
    out["violation"] = outcome.violation.value
    out["forced"] = outcome.forced
    return out


# --- Teacher side ---


@router.post("/assignments/{assignment_id}/grades/{question_id}")
def api_grade_answer(
    assignment_id: int,
    question_id: int,
    payload: GradeIn = Body(...),
    session: Session = Depends(get_session),
    lifecycle: AssignmentLifecycle = Depends(get_lifecycle),
    aggregator: GradeAggregator = Depends(get_aggregator),
):
    result = lifecycle.grade_manual_answer(
        session,
        assignment_id,
        question_id,
        payload.score,
        feedback=payload.feedback,
        grader_id=payload.grader_id,
    )
    return grading_out(session, result, aggregator)


@router.post("/assignments/{assignment_id}/grades")
def api_save_grades(
    assignment_id: int,
    payload: BatchGradeIn = Body(...),
    session: Session = Depends(get_session),
    lifecycle: AssignmentLifecycle = Depends(get_lifecycle),
    aggregator: GradeAggregator = Depends(get_aggregator),
):
    grades = [ManualGrade(g.question_id, g.score, g.feedback) for g in payload.grades]
    result = lifecycle.save_manual_grades(
        session,
        assignment_id,
        grades,
        teacher_notes=payload.teacher_notes,
        grader_id=payload.grader_id,
    )
    return grading_out(session, result, aggregator)


@router.post("/assignments/{assignment_id}/finalize")
def api_finalize(
    assignment_id: int,
    payload: Optional[FinalizeIn] = Body(None),
    session: Session = Depends(get_session),
    lifecycle: AssignmentLifecycle = Depends(get_lifecycle),
    aggregator: GradeAggregator = Depends(get_aggregator),
):
    grader_id = payload.grader_id if payload else None
    assignment = lifecycle.finalize_grading(session, assignment_id, grader_id=grader_id)
    return assignment_out(session, assignment, aggregator)


@router.post("/assignments/{assignment_id}/reopen")
def api_reopen(
    assignment_id: int,
    payload: ReasonIn = Body(...),
    session: Session = Depends(get_session),
    lifecycle: AssignmentLifecycle = Depends(get_lifecycle),
    aggregator: GradeAggregator = Depends(get_aggregator),
):
    assignment = lifecycle.reopen(session, assignment_id, payload.reason, actor_id=payload.actor_id)
    return assignment_out(session, assignment, aggregator)


@router.post("/assignments/{assignment_id}/reassign")
def api_reassign(
    assignment_id: int,
    payload: ReasonIn = Body(...),
    session: Session = Depends(get_session),
    lifecycle: AssignmentLifecycle = Depends(get_lifecycle),
    aggregator: GradeAggregator = Depends(get_aggregator),
):
    assignment = lifecycle.reassign(session, assignment_id, payload.reason, actor_id=payload.actor_id)
    return assignment_out(session, assignment, aggregator)


# --- Reads ---


@router.get("/assignments/{assignment_id}")
def api_get_assignment(
    assignment_id: int,
    session: Session = Depends(get_session),
    aggregator: GradeAggregator = Depends(get_aggregator),
):
    return assignment_out(session, get_assignment(session, assignment_id), aggregator)


@router.get("/assignments/{assignment_id}/activity")
def api_activity(
    assignment_id: int,
    session: Session = Depends(get_session),
    lifecycle: AssignmentLifecycle = Depends(get_lifecycle),
):
    get_assignment(session, assignment_id)
    return [
        {
            "action": entry.action,
            "detail": entry.detail,
            "actor_id": entry.actor_id,
            "timestamp": entry.timestamp,
        }
        for entry in lifecycle.activity(session, assignment_id)
    ]


# --- Virtual assignments ---


@router.post("/assessments/{assessment_id}/enrollments/{enrollment_id}/materialize")
def api_materialize(
    assessment_id: int,
    enrollment_id: int,
    session: Session = Depends(get_session),
    aggregator: GradeAggregator = Depends(get_aggregator),
):
    assignment = materialize(session, Virtual(assessment_id, enrollment_id))
    session.commit()
    session.refresh(assignment)
    return assignment_out(session, assignment, aggregator)


@router.post("/assessments/{assessment_id}/enrollments/{enrollment_id}/start")
def api_start_virtual(
    assessment_id: int,
    enrollment_id: int,
    session: Session = Depends(get_session),
    lifecycle: AssignmentLifecycle = Depends(get_lifecycle),
    aggregator: GradeAggregator = Depends(get_aggregator),
):
    assignment = lifecycle.start(session, Virtual(assessment_id, enrollment_id))
    return assignment_out(session, assignment, aggregator)


@router.get("/enrollments/{enrollment_id}/assignments")
def api_enrollment_assignments(
    enrollment_id: int,
    status: Optional[AssignmentState] = Query(None),
    session: Session = Depends(get_session),
    aggregator: GradeAggregator = Depends(get_aggregator),
):
    views = list_enrollment_assignments(session, enrollment_id, state=status)
    out = []
    for view in views:
        if view.is_virtual:
            out.append(
                {
                    "assignment_id": None,
                    "assessment_id": view.assessment.id,
                    "enrollment_id": enrollment_id,
                    "status": view.state.value,
                    "virtual": True,
                }
            )
        else:
            item = assignment_out(session, view.assignment, aggregator)
            item["virtual"] = False
            out.append(item)
    return out
