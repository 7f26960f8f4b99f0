"""
Student check-in: rotating-token validation and the per-(session, student)
attendance state machine.

    NoRecord -> Absent -> Pending -> Present | Rejected

Every mutation runs inside one `db.write_transaction()` and appends a
hash-chained audit event. A record that reached `present` through the
automatic path is never overwritten by another check-in.
"""
import hmac
import logging
import math
import sqlite3
from datetime import datetime
from typing import Any, TypedDict

from backend.clock import Clock, utc_now
from backend.config import TOKEN_MAX_SLOT_AGE
from backend.errors import (
    AlreadyPresent,
    Forbidden,
    InvalidToken,
    NotEnrolled,
    NotFound,
    ReasonRequired,
    SessionExpiredOrNotFound,
    StorageConflict,
)
from backend.photos import normalize_photo
from backend.services import storage
from backend.services.decision import automatic_status, decide
from backend.services.sessions import is_live
from backend.tokens import RotatingToken, decode_token, rotation_slot
from database import db
from database.db import AttendanceRow, ClassSessionRow

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    "present": "Attendance marked present.",
    "pending": "Check-in received; awaiting teacher review.",
    "rejected": "Verification failed; attendance rejected.",
    "absent": "Marked absent.",
}


class VerificationResult(TypedDict):
    status: str
    record: AttendanceRow
    message: str


def _validate_token(parsed: RotatingToken, now: datetime, conn: sqlite3.Connection) -> ClassSessionRow:
    session = db.get_session(parsed["session_id"], conn=conn)
    if session is None or not is_live(session, now):
        raise SessionExpiredOrNotFound()

    if not hmac.compare_digest(parsed["secret"], session["qr_secret"]):
        logger.warning("Rejected check-in token for session %s: secret mismatch", session["id"])
        raise InvalidToken()

    if TOKEN_MAX_SLOT_AGE and rotation_slot(now) - parsed["slot"] > TOKEN_MAX_SLOT_AGE:
        logger.warning("Rejected stale check-in token for session %s", session["id"])
        raise InvalidToken("QR code has rotated. Please re-scan.")

    return session


def acknowledge_scan(token: str, student_id: int, *, clock: Clock = utc_now) -> AttendanceRow:
    """Record that the student scanned a live QR code: status becomes `pending`."""
    now = clock()
    parsed = decode_token(token)

    with db.write_transaction() as conn:
        session = _validate_token(parsed, now, conn)
        session_id = session["id"]

        existing = db.get_attendance(session_id, student_id, conn=conn)
        from_status = existing["status"] if existing else None

        if not db.mark_pending_unless_present(session_id, student_id, now, conn=conn):
            if existing and existing["status"] == "present":
                raise AlreadyPresent(existing)
            try:
                db.insert_attendance(
                    session_id=session_id,
                    student_id=student_id,
                    status="pending",
                    now=now,
                    conn=conn,
                )
            except sqlite3.IntegrityError:
                # BEGIN IMMEDIATE already serializes writers here; this only fires when
                # the row appears between the update and the insert on a store that
                # does not take the write lock up front. Retry once as an update.
                if not db.mark_pending_unless_present(session_id, student_id, now, conn=conn):
                    current = db.get_attendance(session_id, student_id, conn=conn)
                    if current and current["status"] == "present":
                        raise AlreadyPresent(current)
                    raise StorageConflict()
                current = db.get_attendance(session_id, student_id, conn=conn)
                from_status = current["status"] if current else None

        record = db.get_attendance(session_id, student_id, conn=conn)
        db.append_attendance_event(
            record_id=record["id"],
            event_code="SCAN_ACKNOWLEDGED",
            actor_id=student_id,
            actor_role="student",
            from_status=from_status,
            now=now,
            conn=conn,
        )
        record = db.get_attendance_by_id(record["id"], conn=conn)

    logger.info("Scan acknowledged: session=%s student=%s", session_id, student_id)
    return record


def submit_verification(
    token: str,
    student_id: int,
    liveness: bool,
    photo: bytes | None = None,
    score: float | None = None,
    *,
    clock: Clock = utc_now,
) -> VerificationResult:
    """
    Finalize a check-in from the liveness result and optional photo.

    `score` is a face-match distance from a server-side matcher; it is never
    taken from the student request.

    Token, session liveness and secret are re-checked here; a prior
    `acknowledge_scan` is not required. The photo is normalized and stored
    before the record is written, and removed again if the write fails.
    """
    now = clock()
    if score is not None and not math.isfinite(score):
        raise ValueError("Verification score must be a finite number.")
    parsed = decode_token(token)

    conn = db.connect_db()
    try:
        session = _validate_token(parsed, now, conn)
        if not db.is_enrolled(session["class_id"], student_id, conn=conn):
            raise NotEnrolled()
    finally:
        conn.close()

    session_id = session["id"]
    photo_ref = None
    if photo is not None:
        normalized = normalize_photo(photo)
        millis = int(now.timestamp() * 1000)
        photo_ref = storage.put_photo(storage.photo_path_for(student_id, session_id, millis), normalized)

    status = decide(liveness, score)
    verification = {
        "session_id": session_id,
        "student_id": student_id,
        "status": status,
        "now": now,
        "liveness": liveness,
        "photo_ref": photo_ref,
        "verification_score": score,
    }

    try:
        with db.write_transaction() as conn:
            # Session may have ended or been reactivated while the photo was stored.
            _validate_token(parsed, now, conn)

            existing = db.get_attendance(session_id, student_id, conn=conn)
            from_status = existing["status"] if existing else None
            previous_photo = existing["photo_ref"] if existing else None

            if not db.apply_verification_unless_present(**verification, conn=conn):
                if existing and existing["status"] == "present":
                    raise AlreadyPresent(existing)
                if existing is not None:
                    raise SessionExpiredOrNotFound()
                try:
                    db.insert_attendance(**verification, conn=conn)
                except sqlite3.IntegrityError:
                    # Same single retry as acknowledge_scan.
                    if not db.apply_verification_unless_present(**verification, conn=conn):
                        current = db.get_attendance(session_id, student_id, conn=conn)
                        if current and current["status"] == "present":
                            raise AlreadyPresent(current)
                        raise StorageConflict()
                    current = db.get_attendance(session_id, student_id, conn=conn)
                    from_status = current["status"] if current else None
                    previous_photo = current["photo_ref"] if current else None

            record = db.get_attendance(session_id, student_id, conn=conn)
            db.append_attendance_event(
                record_id=record["id"],
                event_code="VERIFICATION_SUBMITTED",
                actor_id=student_id,
                actor_role="student",
                from_status=from_status,
                now=now,
                detail={"liveness": liveness, "score": score, "photo_ref": photo_ref},
                conn=conn,
            )
            record = db.get_attendance_by_id(record["id"], conn=conn)
    except Exception:
        if photo_ref:
            storage.delete_photo(photo_ref)
        raise

    if photo_ref and previous_photo and previous_photo != photo_ref:
        storage.delete_photo(previous_photo)

    logger.info(
        "Verification processed: session=%s student=%s status=%s",
        session_id,
        student_id,
        record["status"],
    )
    return {
        "status": record["status"],
        "record": record,
        "message": STATUS_MESSAGES.get(record["status"], "Check-in processed."),
    }


def override_attendance(
    record_id: int,
    status: str,
    reason: str | None,
    *,
    actor: dict[str, Any],
    clock: Clock = utc_now,
) -> AttendanceRow:
    """
    Teacher/admin review. Any status may be set at any time; a reason is
    mandatory whenever the new status differs from the automatic outcome.
    """
    if actor["role"] not in ("teacher", "admin"):
        raise Forbidden("Only teachers and admins can override attendance.")
    if status not in db.ATTENDANCE_STATUSES:
        raise ValueError(f"Unknown attendance status: {status}")

    now = clock()
    clean_reason = (reason or "").strip() or None

    with db.write_transaction() as conn:
        record = db.get_attendance_by_id(record_id, conn=conn)
        if record is None:
            raise NotFound("Attendance record not found.")

        if actor["role"] == "teacher":
            session = db.get_session(record["session_id"], conn=conn)
            if session is None or session["teacher_id"] != actor["id"]:
                raise Forbidden("You can only review attendance for your own sessions.")

        if status != automatic_status(record) and not clean_reason:
            raise ReasonRequired()

        db.override_attendance_status(
            record_id,
            status=status,
            reviewer_id=actor["id"],
            review_reason=clean_reason,
            now=now,
            conn=conn,
        )
        db.append_attendance_event(
            record_id=record_id,
            event_code="OVERRIDDEN",
            actor_id=actor["id"],
            actor_role=actor["role"],
            from_status=record["status"],
            now=now,
            reason=clean_reason,
            conn=conn,
        )
        updated = db.get_attendance_by_id(record_id, conn=conn)

    logger.info(
        "Attendance %s overridden by %s %s: %s -> %s",
        record_id,
        actor["role"],
        actor["id"],
        record["status"],
        status,
    )
    return updated


def serialize_record(record: AttendanceRow) -> dict[str, Any]:
    payload: dict[str, Any] = dict(record)
    for key in ("checkin_time", "created_at", "updated_at"):
        value = payload.get(key)
        payload[key] = value.isoformat() if value else None
    return payload
