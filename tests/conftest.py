import sys
import os
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import random
import uuid
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.cache import CacheManager, MemoryCacheBackend, cache
from app.core.config import settings
from app.core.database import Base, get_db
from app.core.security import create_access_token
from app.crud.user import user as crud_user
from app.models.user import User
from app.models.exam import Exam
from app.models.question import Question
from app.models.exam_participant import ExamParticipant
from app.models.exam_attempt import ExamAttempt
from app.schemas.exam import ExamCreate
from app.schemas.exam_participant import ExamParticipantAdd
from app.schemas.question import QuestionCreate
from app.schemas.user import UserCreate
from app.services.concurrency import ConcurrencyGuard
from app.services.exam import ExamService
from app.services.exam_attempt import ExamAttemptService
from app.services.exam_participant import ExamParticipantService
from app.utils import deps as deps_utils
import main
from tests.helpers.exam_data import DEFAULT_QUESTIONS

test_db_url = settings.TEST_DATABASE_URL or "sqlite://"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture(scope="function")
def database_engine():
    if test_db_url.startswith("sqlite"):
        engine = create_engine(test_db_url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    else:
        engine = create_engine(test_db_url)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()

@pytest.fixture(scope="function")
def db_session(database_engine):
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=database_engine)
    db = SessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()

@pytest.fixture(scope="function")
def client(db_session, monkeypatch):
    # Each test gets an empty results cache
    monkeypatch.setattr(cache, "backend", MemoryCacheBackend())
    main.app.dependency_overrides[get_db] = lambda: db_session
    main.app.dependency_overrides[deps_utils.get_db] = lambda: db_session
    main.app.dependency_overrides[deps_utils.get_transactional_db] = lambda: db_session
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()

@pytest.fixture
def user_factory(db_session):
    def _create(full_name: str = "Test User", is_active: bool = True) -> User:
        email = f"user-{uuid.uuid4().hex[:12]}@test.com"
        return crud_user.create(db_session, obj_in=UserCreate(full_name=full_name, email=email, is_active=is_active))
    return _create

@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}
    return _headers

@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, 0))

@pytest.fixture
def memory_cache():
    return CacheManager(MemoryCacheBackend())

@pytest.fixture
def guard():
    return ConcurrencyGuard()

@pytest.fixture
def exam_svc(guard):
    return ExamService(guard=guard)

@pytest.fixture
def participant_svc(exam_svc, guard, clock):
    return ExamParticipantService(exams=exam_svc, guard=guard, clock=clock)

@pytest.fixture
def attempt_svc(guard, clock, memory_cache):
    return ExamAttemptService(guard=guard, cache=memory_cache, clock=clock, rng=random.Random(7))

@pytest.fixture
def exam_setup(db_session, user_factory, exam_svc, participant_svc):
    """Exam owned by a fresh creator, with questions and one enrolled student."""
    def _setup(questions=None, **exam_fields):
        creator = user_factory("Exam Creator")
        student = user_factory("Exam Student")
        exam = exam_svc.create_exam(
            db_session,
            ExamCreate(**{"title": "Arithmetic Check", "duration_minutes": 30, **exam_fields}),
            creator.id
        )
        created = [
            exam_svc.add_question(db_session, exam.id, QuestionCreate(**q), creator.id)
            for q in (DEFAULT_QUESTIONS if questions is None else questions)
        ]
        participant = participant_svc.add_participant(
            db_session, exam.id, ExamParticipantAdd(email=student.email), creator.id
        )
        return SimpleNamespace(
            exam=exam,
            creator=creator,
            student=student,
            questions=created,
            participant=participant,
            access_code=participant.access_code
        )
    return _setup
