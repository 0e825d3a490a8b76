"""Tests for the assignment state machine."""

import pytest
from sqlmodel import select

from factories import AUTO_QUIZ, ESSAY_QUIZ, MIXED_QUIZ, correct_ids, wrong_ids
from gradebook.exceptions import IncompleteGrading, InvalidTransition
from gradebook.models import (
    Answer,
    Assignment,
    AssignmentActivityLog,
    AssignmentState,
    DeliveryMode,
    QuestionType,
)
from gradebook.services.answer_store import AnswerPayload
from gradebook.services.assignments import Virtual
from gradebook.services.lifecycle import ManualGrade


def _answers(session, assignment_id):
    session.expire_all()
    return session.exec(
        select(Answer).where(Answer.assignment_id == assignment_id).order_by(Answer.question_id)
    ).all()


def _actions(session, assignment_id):
    return [
        entry.action
        for entry in session.exec(
            select(AssignmentActivityLog)
            .where(AssignmentActivityLog.assignment_id == assignment_id)
            .order_by(AssignmentActivityLog.id)
        ).all()
    ]


@pytest.fixture
def mixed(make_assessment, enrollment):
    assessment, questions = make_assessment(MIXED_QUIZ)
    return Virtual(assessment.id, enrollment.id), questions


@pytest.fixture
def supervised(make_assessment, enrollment):
    specs = [(QuestionType.SINGLE_SELECT, 2, [("a", True), ("b", False)])] * 5
    assessment, questions = make_assessment(specs, delivery_mode=DeliveryMode.SUPERVISED, duration_minutes=30)
    return Virtual(assessment.id, enrollment.id), questions


class TestStart:
    def test_start_materializes_and_sets_started_at(self, session, lifecycle, mixed):
        ref, _ = mixed
        assignment = lifecycle.start(session, ref)
        assert assignment.id is not None
        assert assignment.started_at is not None
        assert assignment.state is AssignmentState.IN_PROGRESS
        assert _actions(session, assignment.id) == ["started"]

    def test_start_twice_is_a_noop(self, session, lifecycle, mixed):
        ref, _ = mixed
        first = lifecycle.start(session, ref)
        started_at = first.started_at
        again = lifecycle.start(session, first.id)
        assert again.id == first.id
        assert again.started_at == started_at
        assert _actions(session, first.id) == ["started"]

    def test_first_answer_starts_the_attempt(self, session, lifecycle, mixed):
        ref, questions = mixed
        answer = lifecycle.record_answer(session, ref, questions[3].id, AnswerPayload(answer_text="hello"))
        assignment = session.get(Assignment, answer.assignment_id)
        assert assignment.state is AssignmentState.IN_PROGRESS

    def test_cannot_start_after_submission(self, session, lifecycle, mixed):
        ref, _ = mixed
        assignment = lifecycle.start(session, ref)
        lifecycle.submit(session, assignment.id)
        with pytest.raises(InvalidTransition):
            lifecycle.start(session, assignment.id)


class TestSubmit:
    def test_submit_scores_auto_questions_and_leaves_manual_pending(self, session, lifecycle, mixed):
        ref, (single, multi, boolean, text_q) = mixed
        lifecycle.record_answer(session, ref, single.id, AnswerPayload(choice_id=correct_ids(session, single)[0]))
        assignment_id = session.exec(select(Assignment.id)).one()
        lifecycle.record_answer(session, assignment_id, multi.id, AnswerPayload(choice_ids=correct_ids(session, multi)[:1]))
        lifecycle.record_answer(session, assignment_id, boolean.id, AnswerPayload(choice_id=correct_ids(session, boolean)[0]))
        lifecycle.record_answer(session, assignment_id, text_q.id, AnswerPayload(answer_text="x = 4"))

        assignment = lifecycle.submit(session, assignment_id)

        assert assignment.state is AssignmentState.SUBMITTED
        # 2 (single) + 0 (partial multi) + 1 (boolean); the essay is not counted yet
        assert assignment.score == 3.0
        scores = {a.question_id: a.score for a in _answers(session, assignment_id)}
        assert scores == {single.id: 2.0, multi.id: 0.0, boolean.id: 1.0, text_q.id: None}

    def test_second_submit_fails_and_leaves_answers_unchanged(self, session, lifecycle, mixed):
        ref, questions = mixed
        answer = lifecycle.record_answer(session, ref, questions[3].id, AnswerPayload(answer_text="draft"))
        lifecycle.submit(session, answer.assignment_id)
        before = [(a.id, a.answer_text, a.score) for a in _answers(session, answer.assignment_id)]

        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle.submit(session, answer.assignment_id)

        assert exc_info.value.current_state == "submitted"
        assert exc_info.value.attempted == "submit"
        after = [(a.id, a.answer_text, a.score) for a in _answers(session, answer.assignment_id)]
        assert after == before

    def test_submit_not_started_is_rejected(self, session, lifecycle, mixed):
        ref, _ = mixed
        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle.submit(session, ref)
        assert exc_info.value.current_state == "not_started"

    def test_no_answers_after_submission(self, session, lifecycle, mixed):
        ref, questions = mixed
        assignment = lifecycle.start(session, ref)
        lifecycle.submit(session, assignment.id)
        with pytest.raises(InvalidTransition):
            lifecycle.record_answer(session, assignment.id, questions[3].id, AnswerPayload(answer_text="late"))

    def test_fully_auto_assessment_is_graded_on_submit(self, session, lifecycle, make_assessment, enrollment):
        assessment, (q1, q2) = make_assessment(AUTO_QUIZ)
        ref = Virtual(assessment.id, enrollment.id)
        answer = lifecycle.record_answer(session, ref, q1.id, AnswerPayload(choice_id=correct_ids(session, q1)[0]))
        lifecycle.record_answer(session, answer.assignment_id, q2.id, AnswerPayload(choice_id=wrong_ids(session, q2)[0]))

        assignment = lifecycle.submit(session, answer.assignment_id)

        assert assignment.state is AssignmentState.GRADED
        assert assignment.graded_at == assignment.submitted_at
        assert assignment.score == 5.0
        assert _actions(session, assignment.id) == ["started", "submitted", "graded"]


class TestSecurityViolations:
    def test_forced_submission_preserves_partial_work(self, session, lifecycle, supervised):
        """Two of five answered: only those two are scored, the rest stay absent."""
        ref, questions = supervised
        first = lifecycle.record_answer(session, ref, questions[0].id, AnswerPayload(choice_id=correct_ids(session, questions[0])[0]))
        assignment_id = first.assignment_id
        lifecycle.record_answer(session, assignment_id, questions[1].id, AnswerPayload(choice_id=wrong_ids(session, questions[1])[0]))

        outcome = lifecycle.report_security_violation(session, assignment_id, "tab_switch")

        assert outcome.forced is True
        assignment = outcome.assignment
        assert assignment.state is AssignmentState.GRADED  # nothing manual to grade
        assert assignment.submitted_at is not None
        assert assignment.forced_submission is True
        assert assignment.security_violation == "tab_switch"
        answers = _answers(session, assignment_id)
        assert [a.question_id for a in answers] == [questions[0].id, questions[1].id]
        assert [a.score for a in answers] == [2.0, 0.0]
        assert assignment.score == 2.0

    def test_in_flight_answers_are_snapshotted(self, session, lifecycle, supervised):
        ref, questions = supervised
        assignment = lifecycle.start(session, ref)
        snapshot = {questions[2].id: AnswerPayload(choice_id=correct_ids(session, questions[2])[0])}

        outcome = lifecycle.report_security_violation(session, assignment.id, "fullscreen_exit", answers=snapshot)

        assert outcome.forced is True
        answers = _answers(session, assignment.id)
        assert [(a.question_id, a.score) for a in answers] == [(questions[2].id, 2.0)]

    def test_non_terminal_violation_is_only_logged(self, session, lifecycle, supervised):
        ref, _ = supervised
        assignment = lifecycle.start(session, ref)
        outcome = lifecycle.report_security_violation(session, assignment.id, "copy_paste", details="ctrl+c")
        assert outcome.forced is False
        assert outcome.assignment.state is AssignmentState.IN_PROGRESS
        log = session.exec(
            select(AssignmentActivityLog).where(AssignmentActivityLog.action == "violation")
        ).one()
        assert log.detail == "copy_paste: ctrl+c"

    def test_homework_violation_never_forces(self, session, lifecycle, mixed):
        ref, _ = mixed
        assignment = lifecycle.start(session, ref)
        outcome = lifecycle.report_security_violation(session, assignment.id, "tab_switch")
        assert outcome.forced is False
        assert outcome.assignment.state is AssignmentState.IN_PROGRESS

    def test_violation_after_submission_is_rejected(self, session, lifecycle, supervised):
        ref, _ = supervised
        assignment = lifecycle.start(session, ref)
        lifecycle.submit(session, assignment.id)
        with pytest.raises(InvalidTransition):
            lifecycle.report_security_violation(session, assignment.id, "browser_change")

    def test_unknown_violation_tag_is_rejected(self, session, lifecycle, supervised):
        ref, _ = supervised
        assignment = lifecycle.start(session, ref)
        with pytest.raises(ValueError):
            lifecycle.report_security_violation(session, assignment.id, "sneezed")


class TestManualGrading:
    @pytest.fixture
    def submitted_essay(self, session, lifecycle, make_assessment, enrollment):
        assessment, questions = make_assessment(ESSAY_QUIZ)
        answer = lifecycle.record_answer(
            session, Virtual(assessment.id, enrollment.id), questions[0].id, AnswerPayload(answer_text="essay")
        )
        lifecycle.submit(session, answer.assignment_id)
        return answer.assignment_id, questions

    def test_partial_grading_keeps_submitted_state(self, session, lifecycle, submitted_essay, teacher):
        assignment_id, (essay, upload) = submitted_essay
        result = lifecycle.grade_manual_answer(
            session, assignment_id, essay.id, 7, feedback="<b>Good</b> work", grader_id=teacher.id
        )
        assert result.pending_question_ids == [upload.id]
        assert result.assignment.state is AssignmentState.SUBMITTED
        assert result.score == 7.0
        stored = session.exec(select(Answer).where(Answer.question_id == essay.id)).one()
        assert stored.feedback == "Good work"

    def test_last_manual_grade_moves_to_graded(self, session, lifecycle, submitted_essay, teacher):
        assignment_id, (essay, upload) = submitted_essay
        lifecycle.grade_manual_answer(session, assignment_id, essay.id, 7, grader_id=teacher.id)
        # The upload was never answered; it can still be graded
        result = lifecycle.grade_manual_answer(session, assignment_id, upload.id, 0, grader_id=teacher.id)
        assert result.is_complete
        assignment = result.assignment
        assert assignment.state is AssignmentState.GRADED
        assert assignment.score == 7.0
        assert assignment.graded_by == teacher.id

    def test_score_out_of_range_is_rejected(self, session, lifecycle, submitted_essay):
        assignment_id, (essay, _) = submitted_essay
        with pytest.raises(ValueError):
            lifecycle.grade_manual_answer(session, assignment_id, essay.id, 11)
        with pytest.raises(ValueError):
            lifecycle.grade_manual_answer(session, assignment_id, essay.id, -1)

    @pytest.mark.parametrize("score", [float("nan"), float("inf")])
    def test_non_finite_score_is_rejected(self, session, lifecycle, submitted_essay, score):
        assignment_id, (essay, upload) = submitted_essay
        with pytest.raises(ValueError):
            lifecycle.grade_manual_answer(session, assignment_id, essay.id, score)
        session.rollback()
        assignment = session.get(Assignment, assignment_id)
        assert assignment.state is AssignmentState.SUBMITTED
        assert _answers(session, assignment_id)[0].score is None

    def test_grading_in_progress_assignment_is_rejected(self, session, lifecycle, make_assessment, enrollment):
        assessment, questions = make_assessment(ESSAY_QUIZ)
        answer = lifecycle.record_answer(
            session, Virtual(assessment.id, enrollment.id), questions[0].id, AnswerPayload(answer_text="wip")
        )
        with pytest.raises(InvalidTransition):
            lifecycle.grade_manual_answer(session, answer.assignment_id, questions[0].id, 5)

    def test_finalize_with_pending_questions_raises(self, session, lifecycle, submitted_essay):
        assignment_id, (essay, upload) = submitted_essay
        lifecycle.grade_manual_answer(session, assignment_id, essay.id, 5)
        with pytest.raises(IncompleteGrading) as exc_info:
            lifecycle.finalize_grading(session, assignment_id)
        assert exc_info.value.pending_question_ids == [upload.id]
        assert session.get(Assignment, assignment_id).state is AssignmentState.SUBMITTED

    def test_batch_grades_with_notes(self, session, lifecycle, submitted_essay, teacher):
        assignment_id, (essay, upload) = submitted_essay
        result = lifecycle.save_manual_grades(
            session,
            assignment_id,
            [ManualGrade(essay.id, 8, "clear"), ManualGrade(upload.id, 9)],
            teacher_notes="Well done",
            grader_id=teacher.id,
        )
        assert result.is_complete
        assignment = session.get(Assignment, assignment_id)
        assert assignment.state is AssignmentState.GRADED
        assert assignment.score == 17.0
        assert assignment.teacher_notes == "Well done"

    def test_auto_graded_question_cannot_be_graded_by_hand(self, session, lifecycle, mixed):
        ref, questions = mixed
        assignment = lifecycle.start(session, ref)
        lifecycle.submit(session, assignment.id)
        with pytest.raises(ValueError):
            lifecycle.grade_manual_answer(session, assignment.id, questions[0].id, 2)


class TestReopen:
    def test_voluntary_submission_cannot_be_reopened(self, session, lifecycle, supervised):
        ref, questions = supervised
        answer = lifecycle.record_answer(session, ref, questions[0].id, AnswerPayload(choice_id=correct_ids(session, questions[0])[0]))
        lifecycle.submit(session, answer.assignment_id)
        with pytest.raises(InvalidTransition):
            lifecycle.reopen(session, answer.assignment_id, "network issue")

    def test_forced_submission_reopens_with_answers_intact(self, session, lifecycle, supervised, teacher):
        ref, questions = supervised
        answer = lifecycle.record_answer(session, ref, questions[0].id, AnswerPayload(choice_id=correct_ids(session, questions[0])[0]))
        assignment_id = answer.assignment_id
        lifecycle.report_security_violation(session, assignment_id, "browser_change")

        assignment = lifecycle.reopen(session, assignment_id, "Browser crashed", actor_id=teacher.id)

        assert assignment.state is AssignmentState.IN_PROGRESS
        assert assignment.submitted_at is None
        assert assignment.graded_at is None
        assert assignment.score is None
        assert assignment.forced_submission is False
        assert assignment.security_violation is None
        answers = _answers(session, assignment_id)
        assert [(a.question_id, a.choice_id) for a in answers] == [
            (questions[0].id, correct_ids(session, questions[0])[0])
        ]
        log = session.exec(
            select(AssignmentActivityLog).where(AssignmentActivityLog.action == "reopened")
        ).one()
        assert log.detail == "Browser crashed"
        assert log.actor_id == teacher.id

    def test_reopen_requires_a_reason(self, session, lifecycle, supervised):
        ref, _ = supervised
        assignment = lifecycle.start(session, ref)
        lifecycle.report_security_violation(session, assignment.id, "tab_switch")
        with pytest.raises(ValueError):
            lifecycle.reopen(session, assignment.id, "   ")

    def test_reopen_in_progress_is_rejected(self, session, lifecycle, supervised):
        ref, _ = supervised
        assignment = lifecycle.start(session, ref)
        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle.reopen(session, assignment.id, "why not")
        assert exc_info.value.current_state == "in_progress"


class TestReassign:
    def test_reassign_resets_an_unanswered_assignment(self, session, lifecycle, supervised):
        ref, _ = supervised
        assignment = lifecycle.start(session, ref)
        lifecycle.report_security_violation(session, assignment.id, "tab_switch")

        reassigned = lifecycle.reassign(session, assignment.id, "Fresh attempt")

        assert reassigned.id == assignment.id
        assert reassigned.state is AssignmentState.NOT_STARTED
        assert reassigned.forced_submission is False
        assert reassigned.security_violation is None
        assert session.exec(select(Assignment)).all() == [reassigned]

    def test_reassign_with_answers_is_rejected(self, session, lifecycle, mixed):
        ref, questions = mixed
        answer = lifecycle.record_answer(session, ref, questions[3].id, AnswerPayload(answer_text="hi"))
        with pytest.raises(InvalidTransition):
            lifecycle.reassign(session, answer.assignment_id, "Fresh attempt")

    def test_reassign_virtual_assignment_materializes_it(self, session, lifecycle, mixed):
        ref, _ = mixed
        assignment = lifecycle.reassign(session, ref, "Extra time granted")
        assert assignment.id is not None
        assert _actions(session, assignment.id) == ["reassigned"]


class TestConcurrentWriters:
    """Two sessions acting on the same assignment, the second one holding stale state."""

    def test_answer_after_concurrent_submission_is_rejected(self, session, other_session, lifecycle, mixed):
        ref, questions = mixed
        assignment = lifecycle.start(session, ref)
        assert assignment.state is AssignmentState.IN_PROGRESS

        lifecycle.submit(other_session, assignment.id)

        choice_id = correct_ids(session, questions[0])[0]
        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle.record_answer(session, assignment.id, questions[0].id, AnswerPayload(choice_id=choice_id))

        assert exc_info.value.current_state == "submitted"
        assert other_session.exec(select(Answer)).all() == []
        assert _answers(session, assignment.id) == []

    def test_only_one_of_two_submissions_wins(self, session, other_session, lifecycle, mixed):
        ref, questions = mixed
        answer = lifecycle.record_answer(session, ref, questions[3].id, AnswerPayload(answer_text="draft"))
        assignment_id = answer.assignment_id
        stale = other_session.get(Assignment, assignment_id)
        assert stale.state is AssignmentState.IN_PROGRESS

        winner = lifecycle.submit(session, assignment_id)

        with pytest.raises(InvalidTransition) as exc_info:
            lifecycle.submit(other_session, assignment_id)
        assert exc_info.value.current_state == "submitted"

        session.expire_all()
        assert _actions(session, assignment_id).count("submitted") == 1
        assert session.get(Assignment, assignment_id).submitted_at == winner.submitted_at

    def test_reassign_loses_to_a_concurrent_answer(self, session, other_session, lifecycle, mixed):
        ref, questions = mixed
        assignment = lifecycle.start(session, ref)
        started_at = assignment.started_at

        lifecycle.record_answer(other_session, assignment.id, questions[3].id, AnswerPayload(answer_text="mine"))

        with pytest.raises(InvalidTransition):
            lifecycle.reassign(session, assignment.id, "Fresh attempt")

        session.expire_all()
        assert session.get(Assignment, assignment.id).started_at == started_at
        assert [a.answer_text for a in _answers(session, assignment.id)] == ["mine"]
        assert "reassigned" not in _actions(session, assignment.id)
