"""
College Library Backend - Test Configuration and Fixtures
"""
import os
import itertools
from datetime import datetime
import pytest

# Set testing environment before the app reads its settings
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['JWT_SECRET_KEY'] = 'test-jwt-secret-key-for-testing'
os.environ['MQTT_ENABLED'] = 'false'
os.environ['APP_TIMEZONE'] = 'Asia/Kolkata'

from fastapi.testclient import TestClient
from app.main import app
from app.database import Base, engine, SessionLocal
from app.models import User, Student, Book
from app.services.auth import create_access_token
from app.services.realtime import realtime_gateway
from app.utils.timezone import FixedClock, get_clock


class RecordingNotifier:
    """Notification collaborator that remembers what it was asked to send."""

    def __init__(self):
        self.sent = []

    def notify(self, recipient_id, kind, payload):
        self.sent.append((recipient_id, kind, payload))
        return True

    def kinds(self):
        return [kind for _, kind, _ in self.sent]


class FailingNotifier:
    def notify(self, recipient_id, kind, payload):
        raise RuntimeError("broker unreachable")


class RecordingTransport:
    """Stands in for the websocket gateway; keeps every emitted room event."""

    def __init__(self):
        self.events = []

    async def emit_to_room(self, room_id, event, payload, exclude=None):
        self.events.append((room_id, event, payload, exclude))

    def named(self, event):
        return [e for e in self.events if e[1] == event]


@pytest.fixture
def db():
    """Fresh schema and session for each test"""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 1, 10, 0))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def failing_notifier():
    return FailingNotifier()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def make_user(db):
    """Factory for users; passwords are not hashed since tests authenticate with tokens."""
    counter = itertools.count(1)

    def _make(role='student', fname=None, lname='Tester', email=None):
        n = next(counter)
        user = User(
            user_fname=fname or f"User{n}",
            user_lname=lname,
            user_email=email or f"user{n}@college.edu",
            user_password_hash="unused",
            user_role=role,
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def make_student(db, make_user):
    counter = itertools.count(1)

    def _make(semester=4, issued=0, returned=0, user=None, with_user=True):
        n = next(counter)
        if user is None and with_user:
            user = make_user(role='student')
        student = Student(
            user_id=user.user_id if user else None,
            university_reg_number=f"REG{n:05d}",
            name=f"Student {n}",
            email=f"student{n}@college.edu",
            course_code="BTECH-CSE",
            current_semester=semester,
            total_books_issued_all_semesters=issued,
            total_books_returned_all_semesters=returned,
        )
        db.add(student)
        db.commit()
        db.refresh(student)
        return student

    return _make


@pytest.fixture
def make_book(db):
    counter = itertools.count(1)

    def _make(total=1, daily_fine=10, replacement_cost=750, max_borrow_days=14, title=None):
        n = next(counter)
        book = Book(
            isbn=f"978000000{n:04d}",
            title=title or f"Book {n}",
            author="A. Author",
            department="CSE",
            total_copies=total,
            available_copies=total,
            lost_copies=0,
            status='available',
            price=500,
            replacement_cost=replacement_cost,
            daily_fine=daily_fine,
            max_borrow_days=max_borrow_days,
        )
        db.add(book)
        db.commit()
        db.refresh(book)
        return book

    return _make


def headers_for(user) -> dict:
    """Authentication headers for ``user``"""
    token = create_access_token({"sub": str(user.user_id)})
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def auth_headers():
    return headers_for


@pytest.fixture
def client(db, clock):
    """Test client with the request clock frozen"""
    app.dependency_overrides[get_clock] = lambda: clock
    realtime_gateway.reset()
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    realtime_gateway.reset()
