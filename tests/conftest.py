"""
Bidding service - test configuration and fixtures
"""
import pytest
from fastapi.testclient import TestClient

from bidding_service import database, enrollments, opportunities
from bidding_service.main import app, get_db
from helpers import window


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite database, fresh for every test"""
    engine = database.init_db(f"sqlite:///{tmp_path / 'bidding.db'}")
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = database.SessionLocal()
    yield session
    session.close()


@pytest.fixture
def client(engine):
    """Test client whose requests use the per-test database"""
    def override_get_db():
        session = database.SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_class(db):
    def factory(name="Distributed Systems", default_capacity=7):
        with database.transaction(db):
            return opportunities.create_class(db, name, default_capacity).id
    return factory


@pytest.fixture
def make_student(db):
    counter = {"n": 0}

    def factory(class_id, name=None, email=None):
        counter["n"] += 1
        n = counter["n"]
        with database.transaction(db):
            enrollment = enrollments.enroll_student(
                db, class_id, name or f"Student {n}", email or f"student{n}@example.edu", f"S{1000 + n}",
            )
            return enrollment.student_id
    return factory


@pytest.fixture
def make_opportunity(db):
    def factory(class_id, status="open", capacity=7, title="Dinner with the professor"):
        opens_at, closes_at, event_date = window(status)
        with database.transaction(db):
            opportunity = opportunities.create_opportunity(
                db, class_id, title, opens_at, closes_at, event_date, capacity=capacity,
            )
            return opportunity.id
    return factory


@pytest.fixture
def class_id(make_class):
    return make_class()
