from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import backend.services.notifications as notifications
import backend.services.storage as storage
import database.db as db
from backend.clock import get_clock

PASSWORD = "pass1234"


class FrozenClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture()
def clock():
    return FrozenClock(datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture()
def isolated_db(tmp_path, monkeypatch):
    test_db = tmp_path / "markly_test.db"
    photos_dir = tmp_path / "photos"

    # Point DB and photo store to temp locations for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)
    monkeypatch.setattr(storage, "PHOTOS_DIR", photos_dir)

    db.create_tables()
    return test_db


@pytest.fixture()
def sent_mail(monkeypatch):
    outbox: list[dict] = []

    def fake_send(to: str, subject: str, html: str) -> bool:
        outbox.append({"to": to, "subject": subject, "html": html})
        return True

    monkeypatch.setattr(notifications, "send_mail", fake_send)
    return outbox


@pytest.fixture()
def school(isolated_db):
    """A teacher with one class of three enrolled students, plus an outsider of each role."""
    teacher_id = db.create_user("teacher@school.test", "Tina Teacher", "teacher", PASSWORD)
    other_teacher_id = db.create_user("other@school.test", "Omar Other", "teacher", PASSWORD)
    students = [
        db.create_user(f"student{i}@school.test", f"Student {i}", "student", PASSWORD)
        for i in (1, 2, 3)
    ]
    outsider_id = db.create_user("outsider@school.test", "Uma Outsider", "student", PASSWORD)

    class_id = db.create_class(
        "Physics 101",
        teacher_id,
        description="Intro physics",
        schedule=[{"day": "monday", "time": "09:00", "duration_minutes": 60}],
    )
    for idx, student_id in enumerate(students, start=1):
        db.enroll_student(class_id, student_id, f"R{idx:03d}")

    return SimpleNamespace(
        teacher_id=teacher_id,
        other_teacher_id=other_teacher_id,
        students=students,
        outsider_id=outsider_id,
        class_id=class_id,
    )


@pytest.fixture()
def client(isolated_db, clock):
    main.app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


def login(client, email: str, password: str = PASSWORD) -> dict:
    res = client.post("/auth/login", json={"email": email, "password": password})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


@pytest.fixture()
def login_as(client):
    return lambda email, password=PASSWORD: login(client, email, password)


@pytest.fixture()
def admin_headers(client):
    return login(client, config.ADMIN_EMAIL, config.ADMIN_PASSWORD)


@pytest.fixture()
def teacher_headers(client, school):
    return login(client, "teacher@school.test")


@pytest.fixture()
def student_headers(client, school):
    return login(client, "student1@school.test")
