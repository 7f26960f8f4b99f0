from datetime import timedelta

import pytest

from backend.errors import AlreadyExtended, Forbidden, NotFound, SessionExpiredOrNotFound
from backend.services import checkin, sessions
from backend.tokens import decode_token, encode_token
from database import db


def _session_rows(class_id: int) -> int:
    conn = db.connect_db()
    try:
        return conn.execute("SELECT COUNT(*) FROM sessions WHERE class_id = ?", (class_id,)).fetchone()[0]
    finally:
        conn.close()


def test_start_session_seeds_absent_records(school, clock):
    session = sessions.start_session(school.class_id, school.teacher_id, clock=clock)

    assert session["status"] == "active"
    assert session["extended"] is False
    assert session["end_time"] - session["start_time"] == timedelta(seconds=90)
    assert sessions.is_live(session, clock())

    rows = db.list_session_attendance(session["id"])
    assert len(rows) == 3
    assert {r["status"] for r in rows} == {"absent"}
    assert {r["student_id"] for r in rows} == set(school.students)


def test_restart_same_day_reactivates_without_resetting_attendance(school, clock):
    first = sessions.start_session(school.class_id, school.teacher_id, clock=clock)
    token = encode_token(first["id"], first["qr_secret"], clock())
    checkin.acknowledge_scan(token, school.students[0], clock=clock)

    clock.advance(5)
    second = sessions.start_session(school.class_id, school.teacher_id, clock=clock)

    assert second["id"] == first["id"]
    assert second["qr_secret"] != first["qr_secret"]
    assert second["end_time"] == clock() + timedelta(seconds=90)
    assert _session_rows(school.class_id) == 1

    statuses = {r["student_id"]: r["status"] for r in db.list_session_attendance(first["id"])}
    assert statuses[school.students[0]] == "pending"
    assert statuses[school.students[1]] == "absent"
    assert len(statuses) == 3


def test_restart_after_end_reopens_session(school, clock):
    first = sessions.start_session(school.class_id, school.teacher_id, clock=clock)
    sessions.end_session(first["id"], clock=clock)

    clock.advance(600)
    reopened = sessions.start_session(school.class_id, school.teacher_id, clock=clock)

    assert reopened["id"] == first["id"]
    assert reopened["status"] == "active"
    assert sessions.is_live(reopened, clock())


def test_next_day_creates_new_session(school, clock):
    first = sessions.start_session(school.class_id, school.teacher_id, clock=clock)
    clock.advance(24 * 3600)
    second = sessions.start_session(school.class_id, school.teacher_id, clock=clock)

    assert second["id"] != first["id"]
    assert _session_rows(school.class_id) == 2


def test_start_session_checks_class_ownership(school, clock):
    with pytest.raises(Forbidden):
        sessions.start_session(school.class_id, school.other_teacher_id, clock=clock)
    with pytest.raises(NotFound):
        sessions.start_session(9999, school.teacher_id, clock=clock)


def test_extend_is_one_shot(school, clock):
    session = sessions.start_session(school.class_id, school.teacher_id, clock=clock)

    extended = sessions.extend_session(session["id"], clock=clock)
    assert extended["extended"] is True
    assert extended["end_time"] == session["end_time"] + timedelta(seconds=30)

    with pytest.raises(AlreadyExtended):
        sessions.extend_session(session["id"], clock=clock)

    assert db.get_session(session["id"])["end_time"] == extended["end_time"]


def test_extend_missing_session(isolated_db, clock):
    with pytest.raises(NotFound):
        sessions.extend_session(12345, clock=clock)


def test_end_session_clamps_end_time_and_is_idempotent(school, clock):
    session = sessions.start_session(school.class_id, school.teacher_id, clock=clock)
    clock.advance(20)

    ended = sessions.end_session(session["id"], clock=clock)
    assert ended["status"] == "ended"
    assert ended["end_time"] == clock()
    assert not sessions.is_live(ended, clock())

    clock.advance(60)
    again = sessions.end_session(session["id"], clock=clock)
    assert again["end_time"] == ended["end_time"]


def test_session_expires_with_time(school, clock):
    session = sessions.start_session(school.class_id, school.teacher_id, clock=clock)

    clock.advance(90)
    assert sessions.is_live(db.get_session(session["id"]), clock())
    clock.advance(1)
    assert not sessions.is_live(db.get_session(session["id"]), clock())

    with pytest.raises(SessionExpiredOrNotFound):
        sessions.mint_token(session["id"], clock=clock)


def test_mint_token_uses_current_secret(school, clock):
    session = sessions.start_session(school.class_id, school.teacher_id, clock=clock)
    minted = sessions.mint_token(session["id"], clock=clock)

    parsed = decode_token(minted["token"])
    assert parsed["session_id"] == session["id"]
    assert parsed["secret"] == session["qr_secret"]
    assert minted["rotation_seconds"] == 10
    assert minted["valid_until"] > int(clock().timestamp())


def test_require_owned_session(school, clock):
    session = sessions.start_session(school.class_id, school.teacher_id, clock=clock)

    assert sessions.require_owned_session(session["id"], {"id": school.teacher_id, "role": "teacher"})
    assert sessions.require_owned_session(session["id"], {"id": 1, "role": "admin"})
    with pytest.raises(Forbidden):
        sessions.require_owned_session(session["id"], {"id": school.other_teacher_id, "role": "teacher"})
    with pytest.raises(Forbidden):
        sessions.require_owned_session(session["id"], {"id": school.students[0], "role": "student"})
