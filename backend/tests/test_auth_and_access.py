from datetime import datetime, timedelta, timezone

import jwt
from fastapi.testclient import TestClient

from cms_api import repositories
from cms_api.main import create_app
from cms_api.utils.rate_limit import LoginThrottle

NEW_COURSE = {
    "code": "CSC-700",
    "name": "Distributed Systems",
    "description": "Consensus, replication and failure",
    "semester": 7,
    "credits": 3,
    "instructor": "Grace Hopper",
    "capacity": 2,
}


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _token(settings, **claims):
    payload = {"user_id": 1, "exp": int((datetime.now(timezone.utc) + timedelta(hours=1)).timestamp())}
    payload.update(claims)
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def test_register_login_and_profile(client):
    r = client.post("/auth/register", json={
        "name": "Bilal Ahmed", "email": "Bilal@CMS.test", "password": "pass1234",
        "student_id": "CSC-23S-099", "semester": 2, "contact": "0300-1234567",
    })
    assert r.status_code == 201
    body = r.json()
    assert body["success"] is True
    assert body["user"]["email"] == "bilal@cms.test"
    assert body["user"]["role"] == "student"
    assert "password_hash" not in body["user"]

    login = client.post("/auth/login", json={"email": "bilal@cms.test", "password": "pass1234"})
    assert login.status_code == 200
    token = login.json()["token"]

    profile = client.get("/users/profile", headers=_bearer(token))
    assert profile.status_code == 200
    assert profile.json()["user"]["student_id"] == "CSC-23S-099"
    assert profile.json()["user"]["enrollment_count"] == 0

    # the student record was created with the account
    student = client.get("/students/CSC-23S-099", headers=_bearer(token))
    assert student.status_code == 200
    assert student.json()["student"]["semester"] == 2


def test_register_conflicts_and_validation(client, student_headers):
    dup_email = client.post("/auth/register", json={
        "name": "Someone", "email": "ayesha@cms.test", "password": "secret123",
    })
    assert dup_email.status_code == 409
    assert dup_email.json()["success"] is False

    taken_student = client.post("/auth/register", json={
        "name": "Impostor", "email": "imp@cms.test", "password": "secret123", "student_id": "CSC-23S-061",
    })
    assert taken_student.status_code == 409

    bad = client.post("/auth/register", json={"name": "X", "email": "not-an-email", "password": "secret123"})
    assert bad.status_code == 400
    assert bad.json()["success"] is False
    assert bad.json()["errors"]

    blank_id = client.post("/auth/register", json={
        "name": "Blank", "email": "blank@cms.test", "password": "secret123", "student_id": "  ",
    })
    assert blank_id.status_code == 400
    assert blank_id.json()["code"] == "VALIDATION_ERROR"


def test_role_cannot_be_self_assigned(client):
    r = client.post("/auth/register", json={
        "name": "Mallory", "email": "mallory@cms.test", "password": "secret123", "role": "admin",
    })
    assert r.status_code == 201
    assert r.json()["user"]["role"] == "student"


def test_bad_credentials_are_401(client):
    r = client.post("/auth/login", json={"email": "admin@cms.test", "password": "wrong"})
    assert r.status_code == 401
    assert r.json() == {"success": False, "message": "invalid credentials", "code": "UNAUTHORIZED"}


def test_missing_malformed_and_expired_tokens_are_401(client, settings):
    assert client.get("/courses").status_code == 401
    assert client.get("/courses", headers={"Authorization": "Basic abc"}).status_code == 401
    assert client.get("/courses", headers=_bearer("not.a.jwt")).status_code == 401

    forged = jwt.encode({"user_id": 1}, "some-other-secret", algorithm="HS256")
    assert client.get("/courses", headers=_bearer(forged)).status_code == 401

    expired = _token(settings, exp=int((datetime.now(timezone.utc) - timedelta(minutes=1)).timestamp()))
    r = client.get("/courses", headers=_bearer(expired))
    assert r.status_code == 401
    assert r.json()["message"] == "token expired"


def test_token_for_vanished_identity_is_403(client, settings):
    r = client.get("/courses", headers=_bearer(_token(settings, user_id=424242)))
    assert r.status_code == 403
    assert r.json()["message"] == "user not found"


def test_token_lifetime_is_24_hours(client, settings):
    r = client.post("/auth/login", json={"email": "admin@cms.test", "password": "admin-pass"})
    claims = jwt.decode(r.json()["token"], settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    assert claims["exp"] - claims["iat"] == 24 * 3600
    assert claims["role"] == "admin"


def test_course_creation_requires_admin(client, admin_headers, student_headers):
    assert client.post("/courses", json=NEW_COURSE, headers=student_headers).status_code == 403
    created = client.post("/courses", json=NEW_COURSE, headers=admin_headers)
    assert created.status_code == 201
    course = created.json()["course"]
    assert course["enrolled_count"] == 0
    assert course["available_seats"] == 2
    assert client.post("/courses", json=NEW_COURSE, headers=admin_headers).status_code == 409

    negative = dict(NEW_COURSE, code="CSC-701", capacity=-1)
    assert client.post("/courses", json=negative, headers=admin_headers).status_code == 400


def test_student_creation_requires_admin(client, admin_headers, student_headers):
    payload = {"id": "EE-22F-010", "name": "Sara Malik", "semester": 4}
    assert client.post("/students", json=payload, headers=student_headers).status_code == 403
    assert client.post("/students", json=payload, headers=admin_headers).status_code == 201
    assert client.post("/students", json=payload, headers=admin_headers).status_code == 409
    listing = client.get("/students", headers=admin_headers).json()
    assert "EE-22F-010" in [s["id"] for s in listing["students"]]


def test_login_attempts_are_throttled(client):
    client.app.state.login_throttle = LoginThrottle(max_attempts=2, window_seconds=60)
    creds = {"email": "admin@cms.test", "password": "wrong"}
    assert client.post("/auth/login", json=creds).status_code == 401
    assert client.post("/auth/login", json=creds).status_code == 401
    blocked = client.post("/auth/login", json=creds)
    assert blocked.status_code == 429
    assert int(blocked.headers["Retry-After"]) >= 1


def test_auth_can_be_disabled(settings):
    settings.AUTH_ENABLED = False
    with TestClient(create_app(settings)) as c:
        r = c.post("/courses", json=NEW_COURSE)
        assert r.status_code == 201
        assert c.get("/enrollments").status_code == 200


def test_insert_losing_a_unique_race_is_a_conflict(client, admin_headers, monkeypatch):
    # the existence checks miss, as they would for a concurrent request on PostgreSQL
    monkeypatch.setattr(repositories.CourseRepository, "get", lambda self, code: None)
    monkeypatch.setattr(repositories.StudentRepository, "get", lambda self, student_id: None)
    monkeypatch.setattr(repositories.UserRepository, "get_by_email", lambda self, email: None)

    course = client.post("/courses", headers=admin_headers, json=dict(NEW_COURSE, code="CSC-601"))
    assert course.status_code == 409
    assert course.json()["message"] == "course CSC-601 already exists"

    student = client.post("/students", headers=admin_headers, json={"id": "CSC-23S-061", "name": "Twin"})
    assert student.status_code == 409

    user = client.post("/auth/register", json={
        "name": "Admin Twin", "email": "admin@cms.test", "password": "secret123",
    })
    assert user.status_code == 409
    assert user.json()["message"] == "user already exists"
