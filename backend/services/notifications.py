import html
import logging
import threading
from datetime import datetime, timedelta
from typing import Any

from fastapi import BackgroundTasks

from backend.clock import LOCAL_TZ, Clock, utc_now
from backend.config import SWEEP_WINDOW_MINUTES
from backend.errors import NotFound
from backend.services.mailer import MailSender, send_mail
from database import db

logger = logging.getLogger(__name__)

# -----------------------------
# Sweep job status (in-memory)
# -----------------------------
SWEEP_LOCK = threading.Lock()
STATUS_LOCK = threading.Lock()

SWEEP_STATUS: dict[str, Any] = {
    "state": "idle",          # idle | running | success | failed
    "mode": None,             # scheduled | on_demand
    "started_at": None,       # ISO string
    "finished_at": None,      # ISO string
    "message": "",
    "last_result": None,
}


def compute_absentees(session_id: int) -> list[dict]:
    """Enrolled students who are neither present nor pending for the session."""
    session = db.get_session(session_id)
    if session is None:
        raise NotFound("Session not found.")
    return db.get_absentees(session_id, session["class_id"])


def _absence_email(student: dict, session: dict) -> tuple[str, str]:
    class_name = session.get("class_name") or "Unknown Class"
    teacher_name = session.get("teacher_name") or "Your teacher"
    ended_at = session["end_time"].astimezone(LOCAL_TZ).strftime("%Y-%m-%d %H:%M")

    roll_line = ""
    if student.get("roll_number"):
        roll_line = f"<p><strong>Roll Number:</strong> {html.escape(str(student['roll_number']))}</p>"

    body = f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
      <h1 style="font-size: 22px;">Attendance Notice</h1>
      <p>Dear <strong>{html.escape(student['full_name'])}</strong>,</p>
      <p>You were marked absent for the following class:</p>
      <p><strong>Class:</strong> {html.escape(class_name)}</p>
      <p><strong>Teacher:</strong> {html.escape(teacher_name)}</p>
      <p><strong>Class Ended:</strong> {ended_at}</p>
      {roll_line}
      <p style="color: #666;">If you believe this is an error, please contact your teacher immediately.</p>
    </div>
    """
    return f"Absence Notice - {class_name}", body


def run_absence_sweep(
    teacher_id: int | None = None,
    *,
    scheduled: bool,
    clock: Clock = utc_now,
    send: MailSender | None = None,
) -> dict[str, int]:
    """
    Email every absentee of recently ended sessions.

    Scheduled runs close expired sessions first and only pick sessions not yet
    notified, marking each afterwards. On-demand runs are scoped to one teacher,
    ignore the flag and leave it untouched.
    """
    if not scheduled and teacher_id is None:
        raise ValueError("On-demand sweeps require a teacher.")

    deliver = send or send_mail
    now = clock()

    if scheduled:
        closed = db.close_expired_sessions(now)
        if closed:
            logger.info("Closed %s expired sessions", closed)

    sessions = db.find_sessions_for_sweep(
        ended_before=now,
        ended_after=now - timedelta(minutes=SWEEP_WINDOW_MINUTES),
        teacher_id=teacher_id,
        only_unsent=scheduled,
    )

    stats = {"sessions_processed": 0, "notifications_sent": 0, "failures": 0}
    for session in sessions:
        absentees = db.get_absentees(session["id"], session["class_id"])
        for student in absentees:
            if not student.get("email"):
                logger.warning("No email for student %s; skipping", student["id"])
                continue

            subject, body = _absence_email(student, session)
            try:
                delivered = deliver(student["email"], subject, body)
            except Exception as exc:
                logger.error("Absence notice to student %s failed: %s", student["id"], exc)
                delivered = False

            if delivered:
                stats["notifications_sent"] += 1
            else:
                stats["failures"] += 1

        if scheduled:
            db.mark_notifications_sent(session["id"])
        stats["sessions_processed"] += 1

    logger.info(
        "Absence sweep (%s) done: %s sessions, %s sent, %s failed",
        "scheduled" if scheduled else f"teacher {teacher_id}",
        stats["sessions_processed"],
        stats["notifications_sent"],
        stats["failures"],
    )
    return stats


def schedule_sweep(
    background_tasks: BackgroundTasks,
    *,
    teacher_id: int | None = None,
    scheduled: bool,
    clock: Clock = utc_now,
) -> str:
    """
    Returns:
      - "started": sweep job scheduled now
      - "already_running": another sweep holds the lock
    """
    if SWEEP_LOCK.locked():
        return "already_running"
    background_tasks.add_task(run_sweep_job, teacher_id=teacher_id, scheduled=scheduled, clock=clock)
    return "started"


def run_sweep_job(*, teacher_id: int | None = None, scheduled: bool, clock: Clock = utc_now) -> None:
    """Runs run_absence_sweep() and updates SWEEP_STATUS."""
    if not SWEEP_LOCK.acquire(blocking=False):
        return
    try:
        with STATUS_LOCK:
            SWEEP_STATUS["state"] = "running"
            SWEEP_STATUS["mode"] = "scheduled" if scheduled else "on_demand"
            SWEEP_STATUS["started_at"] = datetime.now().isoformat(timespec="seconds")
            SWEEP_STATUS["finished_at"] = None
            SWEEP_STATUS["message"] = "Absence sweep started..."

        result = run_absence_sweep(teacher_id, scheduled=scheduled, clock=clock)

        with STATUS_LOCK:
            SWEEP_STATUS["state"] = "success"
            SWEEP_STATUS["finished_at"] = datetime.now().isoformat(timespec="seconds")
            SWEEP_STATUS["message"] = "Absence sweep completed"
            SWEEP_STATUS["last_result"] = result

    except Exception as e:
        logger.exception("Absence sweep failed")
        with STATUS_LOCK:
            SWEEP_STATUS["state"] = "failed"
            SWEEP_STATUS["finished_at"] = datetime.now().isoformat(timespec="seconds")
            SWEEP_STATUS["message"] = f"Absence sweep failed: {e}"
    finally:
        SWEEP_LOCK.release()


def get_sweep_status() -> dict:
    with STATUS_LOCK:
        return dict(SWEEP_STATUS)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    db.create_tables()
    print(run_absence_sweep(scheduled=True))
