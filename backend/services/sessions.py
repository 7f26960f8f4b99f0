import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, TypedDict

from backend.clock import Clock, local_day, utc_now
from backend.config import (
    SESSION_EXTENSION_SECONDS,
    SESSION_WINDOW_SECONDS,
    TOKEN_ROTATION_SECONDS,
)
from backend.errors import AlreadyExtended, Forbidden, NotFound, SessionExpiredOrNotFound
from backend.tokens import encode_token, rotation_slot, slot_valid_until
from database import db
from database.db import ClassSessionRow

logger = logging.getLogger(__name__)


class MintedToken(TypedDict):
    session_id: int
    token: str
    slot: int
    rotation_seconds: int
    valid_until: int


def _new_secret() -> str:
    return secrets.token_urlsafe(16)


def is_live(session: ClassSessionRow, now: datetime) -> bool:
    """A session accepts check-ins only while active and not past its end_time."""
    return session["status"] == "active" and now <= session["end_time"]


def seconds_remaining(session: ClassSessionRow, now: datetime) -> int:
    if not is_live(session, now):
        return 0
    return max(0, int((session["end_time"] - now).total_seconds()))


def get_session(session_id: int) -> ClassSessionRow:
    session = db.get_session(session_id)
    if session is None:
        raise NotFound("Session not found.")
    return session


def require_owned_session(session_id: int, user: dict[str, Any]) -> ClassSessionRow:
    session = get_session(session_id)
    if user["role"] == "admin":
        return session
    if user["role"] == "teacher" and session["teacher_id"] == user["id"]:
        return session
    raise Forbidden("You can only manage your own sessions.")


def start_session(class_id: int, teacher_id: int, *, clock: Clock = utc_now) -> ClassSessionRow:
    """
    Open today's session for the class, or reactivate it if one already exists.

    The first session of the day seeds an `absent` record per enrolled student.
    A reactivation rotates the QR secret and reopens a fresh window without
    touching attendance.
    """
    now = clock()
    session_day = local_day(now).isoformat()

    with db.write_transaction() as conn:
        klass = db.get_class(class_id, conn=conn)
        if klass is None:
            raise NotFound("Class not found.")
        if klass["teacher_id"] != teacher_id:
            raise Forbidden("Class is not assigned to this teacher.")

        session, created = db.upsert_daily_session(
            class_id=class_id,
            teacher_id=teacher_id,
            session_day=session_day,
            start_time=now,
            end_time=now + timedelta(seconds=SESSION_WINDOW_SECONDS),
            qr_secret=_new_secret(),
            conn=conn,
        )

        if created:
            roster = db.get_enrolled_students(class_id, conn=conn)
            record_ids = db.seed_absent_records(session["id"], [s["id"] for s in roster], now, conn=conn)
            for record_id in record_ids:
                db.append_attendance_event(
                    record_id=record_id,
                    event_code="ROSTER_SEEDED",
                    actor_id=teacher_id,
                    actor_role="system",
                    from_status=None,
                    now=now,
                    conn=conn,
                )

    if created:
        logger.info("Session %s created for class %s (%s)", session["id"], class_id, session_day)
    else:
        logger.info("Session %s reactivated for class %s", session["id"], class_id)
    return session


def extend_session(session_id: int, *, clock: Clock = utc_now) -> ClassSessionRow:
    now = clock()
    with db.write_transaction() as conn:
        session = db.get_session(session_id, conn=conn)
        if session is None:
            raise NotFound("Session not found.")
        if session["extended"]:
            raise AlreadyExtended()

        new_end = session["end_time"] + timedelta(seconds=SESSION_EXTENSION_SECONDS)
        if not db.mark_session_extended(session_id, new_end, conn=conn):
            raise AlreadyExtended()
        session = db.get_session(session_id, conn=conn)

    logger.info("Session %s extended at %s", session_id, now.isoformat(timespec="seconds"))
    return session


def end_session(session_id: int, *, clock: Clock = utc_now) -> ClassSessionRow:
    now = clock()
    with db.write_transaction() as conn:
        session = db.get_session(session_id, conn=conn)
        if session is None:
            raise NotFound("Session not found.")

        # Only ever clamp down; never below start_time.
        end_time = max(session["start_time"], min(session["end_time"], now))
        db.mark_session_ended(session_id, end_time, conn=conn)
        session = db.get_session(session_id, conn=conn)

    logger.info("Session %s ended", session_id)
    return session


def mint_token(session_id: int, *, clock: Clock = utc_now) -> MintedToken:
    now = clock()
    session = get_session(session_id)
    if not is_live(session, now):
        raise SessionExpiredOrNotFound("Session has ended.")

    slot = rotation_slot(now)
    return {
        "session_id": session_id,
        "token": encode_token(session_id, session["qr_secret"], now),
        "slot": slot,
        "rotation_seconds": TOKEN_ROTATION_SECONDS,
        "valid_until": slot_valid_until(slot),
    }


def serialize_session(session: ClassSessionRow, now: datetime) -> dict[str, Any]:
    return {
        "id": session["id"],
        "class_id": session["class_id"],
        "teacher_id": session["teacher_id"],
        "session_day": session["session_day"],
        "start_time": session["start_time"].isoformat(),
        "end_time": session["end_time"].isoformat(),
        "extended": session["extended"],
        "status": session["status"],
        "notifications_sent": session["notifications_sent"],
        "is_live": is_live(session, now),
        "seconds_remaining": seconds_remaining(session, now),
    }
