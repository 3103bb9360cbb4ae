import pytest
from fastapi.testclient import TestClient

from cms_api import models
from cms_api.bootstrap import initialize
from cms_api.config import Settings
from cms_api.database import Database
from cms_api.main import create_app

ADMIN_EMAIL = "admin@cms.test"
ADMIN_PASSWORD = "admin-pass"


@pytest.fixture
def settings(tmp_path, monkeypatch):
    """Settings pointing at a fresh SQLite file per test."""
    monkeypatch.setenv("ENV", "dev")
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cms_test.db'}")
    monkeypatch.setenv("JWT_SECRET", "test-secret")
    monkeypatch.setenv("ADMIN_EMAIL", ADMIN_EMAIL)
    monkeypatch.setenv("ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.setenv("SEED_DEMO_DATA", "true")
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    return Settings()


@pytest.fixture
def db(settings):
    database = Database(settings.DATABASE_URL, lock_timeout=settings.LOCK_TIMEOUT_SECONDS)
    initialize(database, settings)
    yield database
    database.dispose()


@pytest.fixture
def make_course(db):
    def _make(code, capacity=30, semester=1):
        with db.unit_of_work() as session:
            course = models.Course(code=code, name=f"Course {code}", instructor="Staff",
                                   semester=semester, capacity=capacity)
            session.add(course)
        return course
    return _make


@pytest.fixture
def make_student(db):
    def _make(student_id):
        with db.unit_of_work() as session:
            session.add(models.Student(id=student_id, name=f"Student {student_id}", semester=1))
        return student_id
    return _make


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as c:
        yield c


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(client):
    r = client.post("/auth/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD})
    assert r.status_code == 200
    return bearer(r.json()["token"])


@pytest.fixture
def student_headers(client):
    """Token for an identity linked to the seeded student CSC-23S-061."""
    r = client.post("/auth/register", json={
        "name": "Ayesha Khan",
        "email": "ayesha@cms.test",
        "password": "secret123",
        "student_id": "CSC-23S-061",
    })
    assert r.status_code == 201
    return bearer(r.json()["token"])
