"""
Ilaw ng Bayan LMS - Test Configuration and Fixtures
"""
import os
from datetime import datetime

# Set testing environment before the app modules read it
os.environ['DATABASE_URL'] = 'sqlite:///:memory:'
os.environ['SECRET_KEY'] = 'test-secret-key-for-testing-only-0123456789'
os.environ.pop('POSTGRES_URL', None)
os.environ.pop('VERCEL', None)
os.environ.pop('AWS_LAMBDA_FUNCTION_NAME', None)

import pytest
from fastapi.testclient import TestClient

from main import app
from config import Settings, get_settings
from database import Base, SessionLocal, engine
from models.schema import Book, Progress, ReadingSession, User
from security import create_access_token, get_password_hash, normalize_security_answer
from utils import FixedClock, get_clock

TEST_PASSWORD = 'reading-is-fun'


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        secret_key=os.environ['SECRET_KEY'],
        upload_dir=str(tmp_path / 'uploads'),
        max_upload_bytes=1024,
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 3, 1, 9, 0, 0))


@pytest.fixture
def db():
    """Fresh schema for each test"""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client(db, settings, clock):
    """Test client with settings and clock overridden"""
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {'n': 0}

    def factory(role='student', approval_status='approved', security_question=None,
                security_answer=None, **fields):
        counter['n'] += 1
        n = counter['n']
        user = User(
            username=fields.pop('username', f'{role}{n}'),
            email=fields.pop('email', f'{role}{n}@school.edu.ph'),
            hashed_password=get_password_hash(fields.pop('password', TEST_PASSWORD)),
            first_name=fields.pop('first_name', role.capitalize()),
            last_name=fields.pop('last_name', f'Number{n}'),
            role=role,
            approval_status=approval_status,
            security_question=security_question,
            security_answer_hash=(
                get_password_hash(normalize_security_answer(security_answer)) if security_answer else None
            ),
            **fields
        )
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return factory


@pytest.fixture
def make_book(db):
    def factory(title='The Coconut Man', **fields):
        book = Book(title=title, description=fields.pop('description', 'A story for young readers'), **fields)
        db.add(book)
        db.commit()
        db.refresh(book)
        return book

    return factory


@pytest.fixture
def student(make_user):
    return make_user('student')


@pytest.fixture
def teacher(make_user):
    return make_user('teacher')


@pytest.fixture
def admin(make_user):
    return make_user('admin')


@pytest.fixture
def book(make_book):
    return make_book()


@pytest.fixture
def auth_headers(settings):
    """Build bearer headers for a user (or for an arbitrary role)"""
    def build(user=None, role=None, user_id=None):
        claims = {
            'sub': user.email if user else 'someone@school.edu.ph',
            'user_id': user.id if user else (user_id or 'no-such-user'),
            'role': role or user.role,
        }
        return {'Authorization': f'Bearer {create_access_token(claims, settings)}'}

    return build


@pytest.fixture
def add_progress(db):
    def factory(user, book, percent_complete=0, total_reading_time=0):
        progress = Progress(
            user_id=user.id,
            book_id=book.id,
            percent_complete=percent_complete,
            total_reading_time=total_reading_time,
        )
        db.add(progress)
        db.commit()
        return progress

    return factory


@pytest.fixture
def add_closed_session(db, clock):
    def factory(user, book, seconds):
        start = clock.now()
        session = ReadingSession(
            user_id=user.id,
            book_id=book.id,
            start_time=start,
            end_time=start,
            total_seconds=seconds,
        )
        db.add(session)
        db.commit()
        return session

    return factory
