import sqlite3

import cv2
import numpy as np
import pytest

import backend.services.storage as storage
from backend.errors import (
    AlreadyPresent,
    Forbidden,
    InvalidToken,
    MalformedToken,
    NotEnrolled,
    PhotoRejected,
    ReasonRequired,
    SessionExpiredOrNotFound,
    StorageConflict,
)
from backend.services import checkin, sessions
from backend.tokens import encode_token
from database import db


def _png_bytes(width: int = 64, height: int = 48) -> bytes:
    frame = np.full((height, width, 3), 127, dtype=np.uint8)
    ok, encoded = cv2.imencode(".png", frame)
    assert ok
    return encoded.tobytes()


@pytest.fixture()
def live_session(school, clock):
    return sessions.start_session(school.class_id, school.teacher_id, clock=clock)


def _token(session, clock) -> str:
    current = db.get_session(session["id"])
    return encode_token(current["id"], current["qr_secret"], clock())


def test_scan_marks_pending_and_rescan_keeps_single_row(school, clock, live_session):
    student = school.students[0]
    record = checkin.acknowledge_scan(_token(live_session, clock), student, clock=clock)

    assert record["status"] == "pending"
    assert record["checkin_time"] == clock()

    clock.advance(2)
    again = checkin.acknowledge_scan(_token(live_session, clock), student, clock=clock)
    assert again["id"] == record["id"]
    assert again["status"] == "pending"
    assert len(db.list_session_attendance(live_session["id"])) == 3


def test_verification_with_liveness_marks_present_and_sticks(school, clock, live_session):
    student = school.students[0]
    token = _token(live_session, clock)

    result = checkin.submit_verification(token, student, True, clock=clock)
    assert result["status"] == "present"
    assert result["record"]["liveness"] is True

    with pytest.raises(AlreadyPresent) as exc:
        checkin.submit_verification(token, student, False, clock=clock)
    assert exc.value.record["status"] == "present"

    with pytest.raises(AlreadyPresent):
        checkin.acknowledge_scan(token, student, clock=clock)

    assert db.get_attendance(live_session["id"], student)["status"] == "present"


def test_verification_without_liveness_stays_pending(school, clock, live_session):
    result = checkin.submit_verification(_token(live_session, clock), school.students[1], False, clock=clock)
    assert result["status"] == "pending"
    assert result["message"] == checkin.STATUS_MESSAGES["pending"]


def test_old_secret_rejected_after_reactivation(school, clock, live_session):
    stale_token = _token(live_session, clock)

    clock.advance(30)
    sessions.start_session(school.class_id, school.teacher_id, clock=clock)

    with pytest.raises(InvalidToken):
        checkin.submit_verification(stale_token, school.students[0], True, clock=clock)
    with pytest.raises(InvalidToken):
        checkin.acknowledge_scan(stale_token, school.students[0], clock=clock)

    assert db.get_attendance(live_session["id"], school.students[0])["status"] == "absent"


def test_expired_and_unknown_sessions_are_rejected(school, clock, live_session):
    token = _token(live_session, clock)
    clock.advance(91)

    with pytest.raises(SessionExpiredOrNotFound):
        checkin.acknowledge_scan(token, school.students[0], clock=clock)
    with pytest.raises(SessionExpiredOrNotFound):
        checkin.acknowledge_scan(encode_token(9999, "whatever", clock()), school.students[0], clock=clock)


def test_ended_session_rejects_verification(school, clock, live_session):
    token = _token(live_session, clock)
    sessions.end_session(live_session["id"], clock=clock)
    clock.advance(1)

    with pytest.raises(SessionExpiredOrNotFound):
        checkin.submit_verification(token, school.students[0], True, clock=clock)


def test_malformed_token(school, clock, live_session):
    with pytest.raises(MalformedToken):
        checkin.acknowledge_scan("%%%", school.students[0], clock=clock)


def test_out_of_range_session_id_is_malformed(school, clock, live_session):
    token = encode_token(2**70, live_session["qr_secret"], clock())
    with pytest.raises(MalformedToken):
        checkin.acknowledge_scan(token, school.students[0], clock=clock)
    with pytest.raises(MalformedToken):
        checkin.submit_verification(token, school.students[0], True, clock=clock)


def test_verification_requires_enrollment(school, clock, live_session):
    with pytest.raises(NotEnrolled):
        checkin.submit_verification(_token(live_session, clock), school.outsider_id, True, clock=clock)
    assert db.get_attendance(live_session["id"], school.outsider_id) is None


def test_stale_slot_rejected_when_slot_age_enforced(school, clock, live_session, monkeypatch):
    monkeypatch.setattr(checkin, "TOKEN_MAX_SLOT_AGE", 1)
    token = _token(live_session, clock)

    clock.advance(25)
    with pytest.raises(InvalidToken):
        checkin.acknowledge_scan(token, school.students[0], clock=clock)


def test_scan_retries_once_after_losing_insert_race(school, clock, live_session, monkeypatch):
    real_update = db.mark_pending_unless_present
    calls = []

    def first_call_misses(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            return False
        return real_update(*args, **kwargs)

    monkeypatch.setattr(db, "mark_pending_unless_present", first_call_misses)

    record = checkin.acknowledge_scan(_token(live_session, clock), school.students[0], clock=clock)
    assert record["status"] == "pending"
    assert len(calls) == 2


def test_scan_raises_storage_conflict_when_retry_fails(school, clock, live_session, monkeypatch):
    monkeypatch.setattr(db, "mark_pending_unless_present", lambda *a, **kw: False)

    with pytest.raises(StorageConflict):
        checkin.acknowledge_scan(_token(live_session, clock), school.students[0], clock=clock)
    assert db.get_attendance(live_session["id"], school.students[0])["status"] == "absent"


def test_verification_stores_normalized_photo(school, clock, live_session):
    student = school.students[2]
    result = checkin.submit_verification(
        _token(live_session, clock),
        student,
        True,
        _png_bytes(),
        clock=clock,
    )

    millis = int(clock().timestamp() * 1000)
    assert result["record"]["photo_ref"] == f"{student}/{live_session['id']}/{millis}.jpg"
    stored = storage.PHOTOS_DIR / str(student) / str(live_session["id"]) / f"{millis}.jpg"
    assert stored.is_file()
    assert stored.read_bytes()[:2] == b"\xff\xd8"


def test_new_photo_replaces_superseded_file(school, clock, live_session):
    student = school.students[2]
    first = checkin.submit_verification(_token(live_session, clock), student, False, _png_bytes(), clock=clock)
    first_path = storage.PHOTOS_DIR / first["record"]["photo_ref"]
    assert first_path.is_file()

    clock.advance(1)
    second = checkin.submit_verification(_token(live_session, clock), student, True, _png_bytes(), clock=clock)
    second_path = storage.PHOTOS_DIR / second["record"]["photo_ref"]

    assert second["status"] == "present"
    assert second_path.is_file()
    assert not first_path.exists()


def test_verification_without_photo_keeps_existing_file(school, clock, live_session):
    student = school.students[2]
    first = checkin.submit_verification(_token(live_session, clock), student, False, _png_bytes(), clock=clock)

    clock.advance(1)
    second = checkin.submit_verification(_token(live_session, clock), student, True, clock=clock)

    assert second["record"]["photo_ref"] == first["record"]["photo_ref"]
    assert (storage.PHOTOS_DIR / first["record"]["photo_ref"]).is_file()


def test_non_finite_score_is_rejected(school, clock, live_session):
    with pytest.raises(ValueError):
        checkin.submit_verification(_token(live_session, clock), school.students[0], True, score=float("nan"), clock=clock)
    assert db.get_attendance(live_session["id"], school.students[0])["status"] == "absent"


def test_verification_retries_once_after_losing_insert_race(school, clock, live_session, monkeypatch):
    # Enrolled after the session started, so there is no seeded row.
    student = school.outsider_id
    db.enroll_student(school.class_id, student, "R004")
    real_insert = db.insert_attendance

    def concurrent_scan_wins(**kwargs):
        real_insert(**{**kwargs, "status": "pending", "liveness": None})
        raise sqlite3.IntegrityError("UNIQUE constraint failed")

    monkeypatch.setattr(db, "insert_attendance", concurrent_scan_wins)

    result = checkin.submit_verification(_token(live_session, clock), student, True, clock=clock)
    assert result["status"] == "present"
    assert result["record"]["liveness"] is True


def test_verification_raises_storage_conflict_when_retry_fails(school, clock, live_session, monkeypatch):
    student = school.outsider_id
    db.enroll_student(school.class_id, student, "R004")

    def always_conflicts(**kwargs):
        raise sqlite3.IntegrityError("UNIQUE constraint failed")

    monkeypatch.setattr(db, "insert_attendance", always_conflicts)

    with pytest.raises(StorageConflict):
        checkin.submit_verification(_token(live_session, clock), student, True, clock=clock)
    assert db.get_attendance(live_session["id"], student) is None


def test_invalid_photo_leaves_record_untouched(school, clock, live_session):
    student = school.students[2]
    with pytest.raises(PhotoRejected):
        checkin.submit_verification(_token(live_session, clock), student, True, b"not an image", clock=clock)
    assert db.get_attendance(live_session["id"], student)["status"] == "absent"


def test_override_requires_reason_when_diverging(school, clock, live_session):
    record = checkin.acknowledge_scan(_token(live_session, clock), school.students[0], clock=clock)
    teacher = {"id": school.teacher_id, "role": "teacher"}

    with pytest.raises(ReasonRequired):
        checkin.override_attendance(record["id"], "present", "  ", actor=teacher, clock=clock)

    # Confirming the automatic outcome needs no reason.
    same = checkin.override_attendance(record["id"], "pending", None, actor=teacher, clock=clock)
    assert same["status"] == "pending"

    updated = checkin.override_attendance(record["id"], "present", "Seen in class", actor=teacher, clock=clock)
    assert updated["status"] == "present"
    assert updated["reviewer_id"] == school.teacher_id
    assert updated["review_reason"] == "Seen in class"


def test_override_allowed_after_session_ended(school, clock, live_session):
    checkin.submit_verification(_token(live_session, clock), school.students[0], True, clock=clock)
    sessions.end_session(live_session["id"], clock=clock)
    clock.advance(3600)

    record = db.get_attendance(live_session["id"], school.students[0])
    admin = {"id": 1, "role": "admin"}
    updated = checkin.override_attendance(record["id"], "absent", "Left early", actor=admin, clock=clock)
    assert updated["status"] == "absent"


def test_override_permissions(school, clock, live_session):
    record = db.get_attendance(live_session["id"], school.students[0])

    with pytest.raises(Forbidden):
        checkin.override_attendance(
            record["id"], "present", "x", actor={"id": school.other_teacher_id, "role": "teacher"}, clock=clock
        )
    with pytest.raises(Forbidden):
        checkin.override_attendance(
            record["id"], "present", "x", actor={"id": school.students[0], "role": "student"}, clock=clock
        )


def test_audit_chain_tracks_every_mutation(school, clock, live_session):
    student = school.students[0]
    checkin.acknowledge_scan(_token(live_session, clock), student, clock=clock)
    result = checkin.submit_verification(_token(live_session, clock), student, True, clock=clock)

    events = db.get_attendance_events(live_session["id"])
    codes = [e["event_code"] for e in events]
    assert codes.count("ROSTER_SEEDED") == 3
    assert codes[-2:] == ["SCAN_ACKNOWLEDGED", "VERIFICATION_SUBMITTED"]
    assert result["record"]["proof_hash"] == events[-1]["event_hash"]
    assert result["record"]["prev_hash"] == events[-2]["event_hash"]
    assert db.verify_event_chain(live_session["id"])["ok"] is True

    conn = db.connect_db()
    conn.execute("UPDATE attendance_events SET to_status = 'present' WHERE id = ?", (events[-2]["id"],))
    conn.commit()
    conn.close()

    report = db.verify_event_chain(live_session["id"])
    assert report["ok"] is False
    assert report["broken_at"] == events[-2]["id"]
