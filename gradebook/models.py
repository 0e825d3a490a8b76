"""SQLModel models for the school assessment grading engine."""

from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import JSON, Column, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class QuestionType(str, Enum):
    TEXT = "text"
    MULTIPLE_SELECT = "multiple"
    SINGLE_SELECT = "one_choice"
    BOOLEAN = "boolean"
    FILE_UPLOAD = "file"

    @property
    def requires_manual_grading(self) -> bool:
        return self in (QuestionType.TEXT, QuestionType.FILE_UPLOAD)


class DeliveryMode(str, Enum):
    SUPERVISED = "supervised"
    HOMEWORK = "homework"


class AssignmentState(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    GRADED = "graded"


class ViolationType(str, Enum):
    TAB_SWITCH = "tab_switch"
    FULLSCREEN_EXIT = "fullscreen_exit"
    BROWSER_CHANGE = "browser_change"
    COPY_PASTE = "copy_paste"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    NETWORK_DISCONNECT = "network_disconnect"
    TIME_EXPIRED = "time_expired"

    @property
    def is_terminal(self) -> bool:
        """Whether this violation ends a supervised attempt on the spot."""
        return self in (
            ViolationType.TAB_SWITCH,
            ViolationType.FULLSCREEN_EXIT,
            ViolationType.BROWSER_CHANGE,
            ViolationType.TIME_EXPIRED,
        )


def derive_state(
    started_at: Optional[datetime],
    submitted_at: Optional[datetime],
    graded_at: Optional[datetime],
) -> AssignmentState:
    """Single source of truth for an assignment's logical state.

    The timestamps are kept for audit and reporting; the state is never stored.
    """
    if graded_at is not None:
        return AssignmentState.GRADED
    if submitted_at is not None:
        return AssignmentState.SUBMITTED
    if started_at is not None:
        return AssignmentState.IN_PROGRESS
    return AssignmentState.NOT_STARTED


class User(SQLModel, table=True):
    """Application user: admin, teacher or student."""

    __table_args__ = (UniqueConstraint("email", name="uq_user_email"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str
    role: str = Field(default="student")  # "admin", "teacher", "student"
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)


class SchoolClass(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    academic_year: Optional[str] = None  # e.g. "2025-2026"
    created_at: datetime = Field(default_factory=utcnow)


class Subject(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("code", name="uq_subject_code"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    code: str


class Enrollment(SQLModel, table=True):
    """A student's membership in a class for one academic year."""

    __table_args__ = (
        UniqueConstraint("class_id", "student_id", name="uq_class_student"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    class_id: int = Field(foreign_key="schoolclass.id")
    student_id: int = Field(foreign_key="user.id")
    status: str = Field(default="active")  # active, inactive
    enrolled_at: datetime = Field(default_factory=utcnow)


class ClassSubject(SQLModel, table=True):
    """One period during which a teacher owns a (class, subject) pairing.

    Periods are closed by setting ``valid_to`` and never edited afterwards.
    """

    __table_args__ = (
        Index(
            "uq_open_class_subject",
            "class_id",
            "subject_id",
            unique=True,
            sqlite_where=text("valid_to IS NULL"),
            postgresql_where=text("valid_to IS NULL"),
        ),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    class_id: int = Field(foreign_key="schoolclass.id")
    subject_id: int = Field(foreign_key="subject.id")
    teacher_id: Optional[int] = Field(default=None, foreign_key="user.id")
    coefficient: float = Field(default=1.0)
    valid_from: date
    valid_to: Optional[date] = None
    created_at: datetime = Field(default_factory=utcnow)


class Assessment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    class_subject_id: int = Field(foreign_key="classsubject.id")
    title: str
    coefficient: float = Field(default=1.0)
    delivery_mode: DeliveryMode = Field(default=DeliveryMode.HOMEWORK)
    duration_minutes: Optional[int] = None
    scheduled_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    is_published: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow)


class Question(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    assessment_id: int = Field(foreign_key="assessment.id")
    question_text: str
    question_type: QuestionType
    points: float
    order_index: int = Field(default=0)


class Choice(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    question_id: int = Field(foreign_key="question.id")
    content: str
    is_correct: bool = Field(default=False)
    order_index: int = Field(default=0)


class Assignment(SQLModel, table=True):
    """Binding of one enrolled student to one assessment."""

    __table_args__ = (
        UniqueConstraint("assessment_id", "enrollment_id", name="uq_assessment_enrollment"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    assessment_id: int = Field(foreign_key="assessment.id")
    enrollment_id: int = Field(foreign_key="enrollment.id")
    assigned_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    graded_at: Optional[datetime] = None
    score: Optional[float] = None
    security_violation: Optional[str] = None
    forced_submission: bool = Field(default=False)
    teacher_notes: Optional[str] = None
    # Teacher who actually graded; independent of later teacher replacements
    graded_by: Optional[int] = Field(default=None, foreign_key="user.id")

    @property
    def state(self) -> AssignmentState:
        return derive_state(self.started_at, self.submitted_at, self.graded_at)


class Answer(SQLModel, table=True):
    """A student's answer to one question of an assignment."""

    __table_args__ = (
        UniqueConstraint("assignment_id", "question_id", name="uq_assignment_question"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    assignment_id: int = Field(foreign_key="assignment.id")
    question_id: int = Field(foreign_key="question.id")
    choice_id: Optional[int] = Field(default=None, foreign_key="choice.id")
    choice_ids: Optional[List[int]] = Field(default=None, sa_column=Column(JSON))
    answer_text: Optional[str] = None
    file_path: Optional[str] = None
    score: Optional[float] = None  # None means not graded yet
    feedback: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


# ===================== AUDIT =====================


class AssignmentActivityLog(SQLModel, table=True):
    """Audit trail of lifecycle transitions and integrity events."""

    id: Optional[int] = Field(default=None, primary_key=True)
    assignment_id: int = Field(foreign_key="assignment.id")
    action: str  # e.g. "started", "submitted", "forced_submission", "violation", "reopened"
    detail: Optional[str] = None  # reason, violation tag, etc.
    actor_id: Optional[int] = Field(default=None, foreign_key="user.id")
    timestamp: datetime = Field(default_factory=utcnow)
