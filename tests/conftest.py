import asyncio
from datetime import date

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, text

from gradebook.config import Settings
from gradebook.models import (
    DeliveryMode,
    Enrollment,
    SchoolClass,
    Subject,
    User,
)
from gradebook.services.answer_store import AssignmentAnswerStore
from gradebook.services.assessments import add_question, create_assessment
from gradebook.services.grading import GradeAggregator
from gradebook.services.lifecycle import AssignmentLifecycle
from gradebook.services.scoring import QuestionScorer
from gradebook.services.teaching_history import TeachingAssignmentHistory

# ============================================================================
# IN-MEMORY DATABASE FOR TESTING
# ============================================================================

# StaticPool shares the one in-memory database across threads
test_engine = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


@pytest.fixture(scope="session", autouse=True)
def setup_test_db():
    """Create all tables in the test database once per session."""
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture(autouse=True)
def cleanup_db_between_tests():
    """Clean up test data after each test."""
    yield

    # FK-safe order
    with Session(test_engine) as session:
        session.exec(text("DELETE FROM assignmentactivitylog"))
        session.exec(text("DELETE FROM answer"))
        session.exec(text("DELETE FROM assignment"))
        session.exec(text("DELETE FROM choice"))
        session.exec(text("DELETE FROM question"))
        session.exec(text("DELETE FROM assessment"))
        session.exec(text("DELETE FROM classsubject"))
        session.exec(text("DELETE FROM enrollment"))
        session.exec(text("DELETE FROM subject"))
        session.exec(text("DELETE FROM schoolclass"))
        session.exec(text("DELETE FROM user"))
        session.commit()


@pytest.fixture
def session():
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def other_session():
    """A second, independent session, standing in for a concurrent request."""
    with Session(test_engine) as session:
        yield session


# ============================================================================
# SERVICES
# ============================================================================


@pytest.fixture
def test_settings():
    return Settings(
        DATABASE_URL="sqlite://",
        UPLOAD_MAX_SIZE_KB=100,
        UPLOAD_ALLOWED_EXTENSIONS=["pdf", "txt"],
    )


@pytest.fixture
def scorer():
    return QuestionScorer()


@pytest.fixture
def aggregator():
    return GradeAggregator(scale=20.0)


@pytest.fixture
def store(scorer, test_settings):
    return AssignmentAnswerStore(scorer, test_settings)


@pytest.fixture
def lifecycle(scorer, store, aggregator):
    return AssignmentLifecycle(scorer, store, aggregator)


@pytest.fixture
def history():
    return TeachingAssignmentHistory()


# ============================================================================
# ENTITIES
# ============================================================================


def _user(session, name, email, role):
    user = User(name=name, email=email, role=role)
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


@pytest.fixture
def teacher(session):
    return _user(session, "Marie Curie", "curie@school.test", "teacher")


@pytest.fixture
def other_teacher(session):
    return _user(session, "Alan Turing", "turing@school.test", "teacher")


@pytest.fixture
def student(session):
    return _user(session, "Ada Student", "ada@school.test", "student")


@pytest.fixture
def other_student(session):
    return _user(session, "Bo Student", "bo@school.test", "student")


@pytest.fixture
def school_class(session):
    klass = SchoolClass(name="4A", academic_year="2025-2026")
    session.add(klass)
    session.commit()
    session.refresh(klass)
    return klass


@pytest.fixture
def subject(session):
    subj = Subject(name="Mathematics", code="MATH")
    session.add(subj)
    session.commit()
    session.refresh(subj)
    return subj


@pytest.fixture
def class_subject(session, history, school_class, subject, teacher):
    return history.open_first_period(
        session,
        class_id=school_class.id,
        subject_id=subject.id,
        teacher_id=teacher.id,
        valid_from=date(2025, 9, 1),
        coefficient=2.0,
    )


@pytest.fixture
def enrollment(session, school_class, student):
    e = Enrollment(class_id=school_class.id, student_id=student.id)
    session.add(e)
    session.commit()
    session.refresh(e)
    return e


@pytest.fixture
def other_enrollment(session, school_class, other_student):
    e = Enrollment(class_id=school_class.id, student_id=other_student.id)
    session.add(e)
    session.commit()
    session.refresh(e)
    return e


@pytest.fixture
def make_assessment(session, class_subject):
    """Factory building an assessment from ``(type, points, choices)`` specs.

    Returns the assessment and its questions in order.
    """

    def _make(specs, delivery_mode=DeliveryMode.HOMEWORK, coefficient=1.0, duration_minutes=None, class_subject_id=None):
        assessment = create_assessment(
            session,
            class_subject_id=class_subject_id or class_subject.id,
            title="Quiz",
            coefficient=coefficient,
            delivery_mode=delivery_mode,
            duration_minutes=duration_minutes,
        )
        questions = [
            add_question(session, assessment.id, f"Question {i + 1}", qtype, points, choices)
            for i, (qtype, points, choices) in enumerate(specs)
        ]
        return assessment, questions

    return _make


# ============================================================================
# FASTAPI APP & TEST CLIENT
# ============================================================================

from gradebook.database import get_session  # noqa: E402
from gradebook.main import app  # noqa: E402


@pytest.fixture
def client():
    """Create test client using httpx AsyncClient with sync wrapper."""

    def override_get_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    loop = asyncio.new_event_loop()
    transport = httpx.ASGITransport(app=app)
    async_client = httpx.AsyncClient(transport=transport, base_url="http://testserver")

    class SyncClientWrapper:
        def __init__(self, async_client, loop):
            self.async_client = async_client
            self.loop = loop

        def get(self, *args, **kwargs):
            return self.loop.run_until_complete(self.async_client.get(*args, **kwargs))

        def post(self, *args, **kwargs):
            return self.loop.run_until_complete(self.async_client.post(*args, **kwargs))

        def put(self, *args, **kwargs):
            return self.loop.run_until_complete(self.async_client.put(*args, **kwargs))

    yield SyncClientWrapper(async_client, loop)

    loop.run_until_complete(async_client.aclose())
    loop.close()
    app.dependency_overrides.clear()
