import hashlib
import hmac
import json
import secrets
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Literal, TypedDict

from backend.config import ADMIN_EMAIL, ADMIN_PASSWORD, DB_PATH


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000
CONNECT_TIMEOUT_SECONDS = 10.0

Role = Literal["admin", "teacher", "student"]
SessionStatus = Literal["active", "ended"]
AttendanceStatus = Literal["present", "pending", "absent", "rejected"]
EventCode = Literal[
    "ROSTER_SEEDED",
    "SCAN_ACKNOWLEDGED",
    "VERIFICATION_SUBMITTED",
    "OVERRIDDEN",
]

ATTENDANCE_STATUSES: tuple[str, ...] = ("present", "pending", "absent", "rejected")


class ClassSessionRow(TypedDict):
    id: int
    class_id: int
    teacher_id: int
    session_day: str
    start_time: datetime
    end_time: datetime
    extended: bool
    qr_secret: str
    status: SessionStatus
    notifications_sent: bool
    created_at: datetime


class AttendanceRow(TypedDict):
    id: int
    session_id: int
    student_id: int
    status: AttendanceStatus
    checkin_time: datetime | None
    verification_score: float | None
    liveness: bool | None
    photo_ref: str | None
    reviewer_id: int | None
    review_reason: str | None
    proof_hash: str | None
    prev_hash: str | None
    created_at: datetime
    updated_at: datetime


class AttendanceEventRow(TypedDict):
    id: int
    record_id: int
    session_id: int
    student_id: int
    actor_id: int | None
    actor_role: str
    event_code: EventCode
    from_status: str | None
    to_status: str
    reason: str | None
    detail_json: str
    event_time: str
    prev_hash: str
    event_hash: str


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def _ts(value: datetime) -> str:
    # Fixed-width UTC text so SQL string comparison orders like time.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False, timeout=CONNECT_TIMEOUT_SECONDS)
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


@contextmanager
def write_transaction() -> Iterator[sqlite3.Connection]:
    """
    Open a connection holding SQLite's write lock for the whole block.

    Every read-then-write in the attendance core runs inside one of these, so
    two requests touching the same session or record are serialized.
    """
    conn = connect_db()
    try:
        conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    email = (ADMIN_EMAIL or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not email or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM users
        WHERE email = ? COLLATE NOCASE
        """,
        (email,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO users (email, full_name, role, password_hash)
        VALUES (?, ?, 'admin', ?)
        """,
        (email, "Administrator", _hash_password(password)),
    )


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        email TEXT NOT NULL UNIQUE COLLATE NOCASE,
        full_name TEXT NOT NULL,
        role TEXT NOT NULL CHECK (role IN ('admin', 'teacher', 'student')),
        password_hash TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS classes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        description TEXT,
        teacher_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        schedule_json TEXT NOT NULL DEFAULT '[]',
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS enrollments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        class_id INTEGER NOT NULL REFERENCES classes(id) ON DELETE CASCADE,
        student_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        roll_number TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(class_id, student_id)
    )
    """)

    # One row per (class, teacher, local calendar day); reactivation reuses it.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        class_id INTEGER NOT NULL REFERENCES classes(id) ON DELETE CASCADE,
        teacher_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        session_day TEXT NOT NULL,
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        extended INTEGER NOT NULL DEFAULT 0,
        qr_secret TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'ended')),
        notifications_sent INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        UNIQUE(class_id, teacher_id, session_day),
        CHECK (end_time >= start_time)
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        student_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        status TEXT NOT NULL CHECK (status IN ('present', 'pending', 'absent', 'rejected')),
        checkin_time TEXT,
        verification_score REAL,
        liveness INTEGER,
        photo_ref TEXT,
        reviewer_id INTEGER REFERENCES users(id),
        review_reason TEXT,
        proof_hash TEXT,
        prev_hash TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(session_id, student_id)
    )
    """)

    # Append-only audit trail, hash-chained per session.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        record_id INTEGER NOT NULL REFERENCES attendance(id) ON DELETE CASCADE,
        session_id INTEGER NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
        student_id INTEGER NOT NULL,
        actor_id INTEGER,
        actor_role TEXT NOT NULL,
        event_code TEXT NOT NULL,
        from_status TEXT,
        to_status TEXT NOT NULL,
        reason TEXT,
        detail_json TEXT NOT NULL DEFAULT '{}',
        event_time TEXT NOT NULL,
        prev_hash TEXT NOT NULL,
        event_hash TEXT NOT NULL UNIQUE
    )
    """)

    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_sessions_end_time ON sessions (end_time, notifications_sent)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_attendance_session_status ON attendance (session_id, status)"
    )
    cursor.execute(
        "CREATE INDEX IF NOT EXISTS idx_attendance_events_session ON attendance_events (session_id, id)"
    )

    _ensure_default_admin(cursor)

    conn.commit()
    conn.close()


# -----------------------------
# Users (identity store)
# -----------------------------
def create_user(email: str, full_name: str, role: Role, password: str) -> int:
    clean_email = email.strip()
    clean_name = full_name.strip()
    clean_password = password.strip()
    if not clean_email or not clean_name or not clean_password:
        raise ValueError("Email, name and password are required.")

    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO users (email, full_name, role, password_hash)
            VALUES (?, ?, ?, ?)
            """,
            (clean_email, clean_name, role, _hash_password(clean_password)),
        )
        user_id = int(cur.lastrowid)
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()
    return user_id


def get_user_by_id(user_id: int, *, conn: sqlite3.Connection | None = None) -> dict | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            SELECT id, email, full_name, role
            FROM users
            WHERE id = ?
            """,
            (user_id,),
        )
        row = cur.fetchone()
    finally:
        if owns_conn:
            active_conn.close()

    if not row:
        return None
    return {"id": int(row[0]), "email": row[1], "full_name": row[2], "role": row[3]}


def verify_user_credentials(email: str, password: str) -> dict | None:
    clean_email = email.strip()
    clean_password = password.strip()
    if not clean_email or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, email, full_name, role, password_hash
        FROM users
        WHERE email = ? COLLATE NOCASE
        """,
        (clean_email,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None

    user_id, saved_email, full_name, role, password_hash = row
    if not _verify_password(clean_password, password_hash):
        return None

    return {"id": int(user_id), "email": saved_email, "full_name": full_name, "role": role}


# -----------------------------
# Classes + enrollments
# -----------------------------
def create_class(name: str, teacher_id: int, *, description: str | None, schedule: list[dict]) -> int:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO classes (name, description, teacher_id, schedule_json)
            VALUES (?, ?, ?, ?)
            """,
            (name, description, teacher_id, json.dumps(schedule, separators=(",", ":"))),
        )
        class_id = int(cur.lastrowid)
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()
    return class_id


def get_class(class_id: int, *, conn: sqlite3.Connection | None = None) -> dict | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            SELECT id, name, description, teacher_id, schedule_json
            FROM classes
            WHERE id = ?
            """,
            (class_id,),
        )
        row = cur.fetchone()
    finally:
        if owns_conn:
            active_conn.close()

    if not row:
        return None
    return {
        "id": int(row[0]),
        "name": row[1],
        "description": row[2],
        "teacher_id": int(row[3]),
        "schedule": json.loads(row[4] or "[]"),
    }


def enroll_student(class_id: int, student_id: int, roll_number: str | None = None) -> int:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO enrollments (class_id, student_id, roll_number)
            VALUES (?, ?, ?)
            """,
            (class_id, student_id, roll_number),
        )
        enrollment_id = int(cur.lastrowid)
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()
    return enrollment_id


def is_enrolled(class_id: int, student_id: int, *, conn: sqlite3.Connection | None = None) -> bool:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            SELECT 1
            FROM enrollments
            WHERE class_id = ? AND student_id = ?
            """,
            (class_id, student_id),
        )
        return cur.fetchone() is not None
    finally:
        if owns_conn:
            active_conn.close()


def get_enrolled_students(class_id: int, *, conn: sqlite3.Connection | None = None) -> list[dict]:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            SELECT u.id, u.full_name, u.email, e.roll_number
            FROM enrollments e
            JOIN users u ON u.id = e.student_id
            WHERE e.class_id = ?
            ORDER BY u.full_name, u.id
            """,
            (class_id,),
        )
        rows = cur.fetchall()
    finally:
        if owns_conn:
            active_conn.close()

    return [
        {"id": int(r[0]), "full_name": r[1], "email": r[2], "roll_number": r[3]}
        for r in rows
    ]


# -----------------------------
# Sessions
# -----------------------------
_SESSION_COLUMNS = """
    id, class_id, teacher_id, session_day, start_time, end_time,
    extended, qr_secret, status, notifications_sent, created_at
"""


def _session_from_row(row) -> ClassSessionRow:
    return {
        "id": int(row[0]),
        "class_id": int(row[1]),
        "teacher_id": int(row[2]),
        "session_day": str(row[3]),
        "start_time": _parse_ts(row[4]),
        "end_time": _parse_ts(row[5]),
        "extended": bool(row[6]),
        "qr_secret": str(row[7]),
        "status": row[8],
        "notifications_sent": bool(row[9]),
        "created_at": _parse_ts(str(row[10]).replace(" ", "T")) if row[10] else None,
    }


def get_session(session_id: int, *, conn: sqlite3.Connection | None = None) -> ClassSessionRow | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            f"""
            SELECT {_SESSION_COLUMNS}
            FROM sessions
            WHERE id = ?
            """,
            (session_id,),
        )
        row = cur.fetchone()
    finally:
        if owns_conn:
            active_conn.close()
    return _session_from_row(row) if row else None


def upsert_daily_session(
    *,
    class_id: int,
    teacher_id: int,
    session_day: str,
    start_time: datetime,
    end_time: datetime,
    qr_secret: str,
    conn: sqlite3.Connection,
) -> tuple[ClassSessionRow, bool]:
    """
    Insert today's session for (class, teacher) or reactivate the existing one.

    Returns ``(session, created)``. Must run inside `write_transaction()`; the
    unique key on (class_id, teacher_id, session_day) decides which branch wins.
    """
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO sessions (
            class_id,
            teacher_id,
            session_day,
            start_time,
            end_time,
            qr_secret,
            status
        )
        VALUES (?, ?, ?, ?, ?, ?, 'active')
        ON CONFLICT (class_id, teacher_id, session_day) DO NOTHING
        """,
        (class_id, teacher_id, session_day, _ts(start_time), _ts(end_time), qr_secret),
    )
    created = cur.rowcount == 1

    if not created:
        # end_time never drops below start_time, even if the clock stepped back
        cur.execute(
            """
            UPDATE sessions
            SET status = 'active',
                qr_secret = ?,
                end_time = CASE WHEN ? > start_time THEN ? ELSE start_time END
            WHERE class_id = ? AND teacher_id = ? AND session_day = ?
            """,
            (qr_secret, _ts(end_time), _ts(end_time), class_id, teacher_id, session_day),
        )

    cur.execute(
        f"""
        SELECT {_SESSION_COLUMNS}
        FROM sessions
        WHERE class_id = ? AND teacher_id = ? AND session_day = ?
        """,
        (class_id, teacher_id, session_day),
    )
    return _session_from_row(cur.fetchone()), created


def mark_session_extended(session_id: int, new_end_time: datetime, *, conn: sqlite3.Connection) -> bool:
    """Push `end_time` forward once. False when the session was already extended."""
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE sessions
        SET end_time = ?,
            extended = 1
        WHERE id = ?
          AND extended = 0
          AND ? >= end_time
        """,
        (_ts(new_end_time), session_id, _ts(new_end_time)),
    )
    return cur.rowcount == 1


def mark_session_ended(session_id: int, end_time: datetime, *, conn: sqlite3.Connection) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE sessions
        SET status = 'ended',
            end_time = ?
        WHERE id = ?
        """,
        (_ts(end_time), session_id),
    )


def close_expired_sessions(now: datetime, *, conn: sqlite3.Connection | None = None) -> int:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            UPDATE sessions
            SET status = 'ended'
            WHERE status = 'active'
              AND end_time < ?
            """,
            (_ts(now),),
        )
        changed = int(cur.rowcount)
        if owns_conn:
            active_conn.commit()
        return changed
    except sqlite3.Error:
        if owns_conn:
            active_conn.rollback()
        raise
    finally:
        if owns_conn:
            active_conn.close()


def find_sessions_for_sweep(
    *,
    ended_before: datetime,
    ended_after: datetime,
    teacher_id: int | None = None,
    only_unsent: bool = True,
) -> list[dict]:
    """Sessions whose end_time falls in [ended_after, ended_before], with class and teacher names."""
    where = ["s.end_time <= ?", "s.end_time >= ?"]
    params: list[Any] = [_ts(ended_before), _ts(ended_after)]
    if only_unsent:
        where.append("s.notifications_sent = 0")
    if teacher_id is not None:
        where.append("s.teacher_id = ?")
        params.append(teacher_id)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT s.id, s.class_id, s.teacher_id, s.end_time, c.name, t.full_name
        FROM sessions s
        JOIN classes c ON c.id = s.class_id
        JOIN users t ON t.id = s.teacher_id
        WHERE {" AND ".join(where)}
        ORDER BY s.end_time, s.id
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()

    return [
        {
            "id": int(r[0]),
            "class_id": int(r[1]),
            "teacher_id": int(r[2]),
            "end_time": _parse_ts(r[3]),
            "class_name": r[4],
            "teacher_name": r[5],
        }
        for r in rows
    ]


def mark_notifications_sent(session_id: int) -> None:
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            UPDATE sessions
            SET notifications_sent = 1
            WHERE id = ?
            """,
            (session_id,),
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


# -----------------------------
# Attendance records
# -----------------------------
_ATTENDANCE_COLUMNS = """
    id, session_id, student_id, status, checkin_time, verification_score,
    liveness, photo_ref, reviewer_id, review_reason, proof_hash, prev_hash,
    created_at, updated_at
"""


def _attendance_from_row(row) -> AttendanceRow:
    return {
        "id": int(row[0]),
        "session_id": int(row[1]),
        "student_id": int(row[2]),
        "status": row[3],
        "checkin_time": _parse_ts(row[4]),
        "verification_score": float(row[5]) if row[5] is not None else None,
        "liveness": bool(row[6]) if row[6] is not None else None,
        "photo_ref": row[7],
        "reviewer_id": int(row[8]) if row[8] is not None else None,
        "review_reason": row[9],
        "proof_hash": row[10],
        "prev_hash": row[11],
        "created_at": _parse_ts(row[12]),
        "updated_at": _parse_ts(row[13]),
    }


def get_attendance(
    session_id: int,
    student_id: int,
    *,
    conn: sqlite3.Connection | None = None,
) -> AttendanceRow | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            f"""
            SELECT {_ATTENDANCE_COLUMNS}
            FROM attendance
            WHERE session_id = ? AND student_id = ?
            """,
            (session_id, student_id),
        )
        row = cur.fetchone()
    finally:
        if owns_conn:
            active_conn.close()
    return _attendance_from_row(row) if row else None


def get_attendance_by_id(record_id: int, *, conn: sqlite3.Connection | None = None) -> AttendanceRow | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            f"""
            SELECT {_ATTENDANCE_COLUMNS}
            FROM attendance
            WHERE id = ?
            """,
            (record_id,),
        )
        row = cur.fetchone()
    finally:
        if owns_conn:
            active_conn.close()
    return _attendance_from_row(row) if row else None


def list_session_attendance(session_id: int) -> list[dict]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {", ".join("a." + c.strip() for c in _ATTENDANCE_COLUMNS.split(","))},
               u.full_name, u.email
        FROM attendance a
        JOIN users u ON u.id = a.student_id
        WHERE a.session_id = ?
        ORDER BY u.full_name, u.id
        """,
        (session_id,),
    )
    rows = cur.fetchall()
    conn.close()

    return [
        {**_attendance_from_row(r[:14]), "student_name": r[14], "student_email": r[15]}
        for r in rows
    ]


def seed_absent_records(session_id: int, student_ids: list[int], now: datetime, *, conn: sqlite3.Connection) -> list[int]:
    cur = conn.cursor()
    created: list[int] = []
    for student_id in student_ids:
        cur.execute(
            """
            INSERT INTO attendance (session_id, student_id, status, created_at, updated_at)
            VALUES (?, ?, 'absent', ?, ?)
            ON CONFLICT (session_id, student_id) DO NOTHING
            """,
            (session_id, student_id, _ts(now), _ts(now)),
        )
        if cur.rowcount == 1:
            created.append(int(cur.lastrowid))
    return created


def mark_pending_unless_present(
    session_id: int,
    student_id: int,
    now: datetime,
    *,
    conn: sqlite3.Connection,
) -> bool:
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE attendance
        SET status = 'pending',
            checkin_time = ?,
            updated_at = ?
        WHERE session_id = ?
          AND student_id = ?
          AND status != 'present'
        """,
        (_ts(now), _ts(now), session_id, student_id),
    )
    return cur.rowcount == 1


def insert_attendance(
    *,
    session_id: int,
    student_id: int,
    status: AttendanceStatus,
    now: datetime,
    liveness: bool | None = None,
    photo_ref: str | None = None,
    verification_score: float | None = None,
    conn: sqlite3.Connection,
) -> int:
    """Insert a fresh record. Raises sqlite3.IntegrityError if one already exists."""
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO attendance (
            session_id,
            student_id,
            status,
            checkin_time,
            verification_score,
            liveness,
            photo_ref,
            created_at,
            updated_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            session_id,
            student_id,
            status,
            _ts(now),
            verification_score,
            None if liveness is None else (1 if liveness else 0),
            photo_ref,
            _ts(now),
            _ts(now),
        ),
    )
    return int(cur.lastrowid)


def apply_verification_unless_present(
    *,
    session_id: int,
    student_id: int,
    status: AttendanceStatus,
    now: datetime,
    liveness: bool,
    photo_ref: str | None,
    verification_score: float | None,
    conn: sqlite3.Connection,
) -> bool:
    """
    Write a verification outcome onto an existing, not-yet-present record.

    A `present` outcome additionally requires the owning session to still be
    active and inside its window at `now`, checked in the same statement.
    """
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE attendance
        SET status = ?,
            checkin_time = ?,
            liveness = ?,
            photo_ref = COALESCE(?, photo_ref),
            verification_score = ?,
            updated_at = ?
        WHERE session_id = ?
          AND student_id = ?
          AND status != 'present'
          AND (
              ? != 'present'
              OR EXISTS (
                  SELECT 1
                  FROM sessions s
                  WHERE s.id = attendance.session_id
                    AND s.status = 'active'
                    AND s.end_time >= ?
              )
          )
        """,
        (
            status,
            _ts(now),
            1 if liveness else 0,
            photo_ref,
            verification_score,
            _ts(now),
            session_id,
            student_id,
            status,
            _ts(now),
        ),
    )
    return cur.rowcount == 1


def override_attendance_status(
    record_id: int,
    *,
    status: AttendanceStatus,
    reviewer_id: int,
    review_reason: str | None,
    now: datetime,
    conn: sqlite3.Connection,
) -> None:
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE attendance
        SET status = ?,
            reviewer_id = ?,
            review_reason = ?,
            updated_at = ?
        WHERE id = ?
        """,
        (status, reviewer_id, review_reason, _ts(now), record_id),
    )


def get_absentees(session_id: int, class_id: int, *, conn: sqlite3.Connection | None = None) -> list[dict]:
    """Enrolled students of the class minus those present or pending in the session."""
    owns_conn = conn is None
    active_conn = conn or connect_db()
    try:
        cur = active_conn.cursor()
        cur.execute(
            """
            SELECT u.id, u.full_name, u.email, e.roll_number
            FROM enrollments e
            JOIN users u ON u.id = e.student_id
            WHERE e.class_id = ?
              AND e.student_id NOT IN (
                  SELECT a.student_id
                  FROM attendance a
                  WHERE a.session_id = ?
                    AND a.status IN ('present', 'pending')
              )
            ORDER BY u.full_name, u.id
            """,
            (class_id, session_id),
        )
        rows = cur.fetchall()
    finally:
        if owns_conn:
            active_conn.close()

    return [
        {"id": int(r[0]), "full_name": r[1], "email": r[2], "roll_number": r[3]}
        for r in rows
    ]


# -----------------------------
# Audit trail (hash chain)
# -----------------------------
def compute_event_hash(prev_hash: str, payload: dict[str, Any]) -> str:
    canonical = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    return hashlib.sha256(f"{prev_hash}|{canonical}".encode("utf-8")).hexdigest()


def _event_payload(
    *,
    record_id: int,
    session_id: int,
    student_id: int,
    actor_id: int | None,
    actor_role: str,
    event_code: str,
    from_status: str | None,
    to_status: str,
    reason: str | None,
    detail_json: str,
    event_time: str,
) -> dict[str, Any]:
    return {
        "record_id": record_id,
        "session_id": session_id,
        "student_id": student_id,
        "actor_id": actor_id,
        "actor_role": actor_role,
        "event_code": event_code,
        "from_status": from_status,
        "to_status": to_status,
        "reason": reason,
        "detail": detail_json,
        "event_time": event_time,
    }


def append_attendance_event(
    *,
    record_id: int,
    event_code: EventCode,
    actor_id: int | None,
    actor_role: str,
    from_status: str | None,
    now: datetime,
    reason: str | None = None,
    detail: dict[str, Any] | None = None,
    conn: sqlite3.Connection,
) -> str:
    """
    Append one audit event for the record's current state and return its hash.

    The record's `proof_hash`/`prev_hash` are updated to point at the new
    event. Must run inside `write_transaction()` so the chain head is stable.
    """
    cur = conn.cursor()
    record = get_attendance_by_id(record_id, conn=conn)
    if record is None:
        raise ValueError(f"Attendance record {record_id} does not exist.")

    cur.execute(
        """
        SELECT event_hash
        FROM attendance_events
        WHERE session_id = ?
        ORDER BY id DESC
        LIMIT 1
        """,
        (record["session_id"],),
    )
    head = cur.fetchone()
    prev_hash = str(head[0]) if head else ""

    detail_json = json.dumps(detail or {}, separators=(",", ":"), sort_keys=True)
    event_time = _ts(now)
    payload = _event_payload(
        record_id=record_id,
        session_id=record["session_id"],
        student_id=record["student_id"],
        actor_id=actor_id,
        actor_role=actor_role,
        event_code=event_code,
        from_status=from_status,
        to_status=record["status"],
        reason=reason,
        detail_json=detail_json,
        event_time=event_time,
    )
    event_hash = compute_event_hash(prev_hash, payload)

    cur.execute(
        """
        INSERT INTO attendance_events (
            record_id,
            session_id,
            student_id,
            actor_id,
            actor_role,
            event_code,
            from_status,
            to_status,
            reason,
            detail_json,
            event_time,
            prev_hash,
            event_hash
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            record_id,
            record["session_id"],
            record["student_id"],
            actor_id,
            actor_role,
            event_code,
            from_status,
            record["status"],
            reason,
            detail_json,
            event_time,
            prev_hash,
            event_hash,
        ),
    )
    cur.execute(
        """
        UPDATE attendance
        SET proof_hash = ?,
            prev_hash = ?
        WHERE id = ?
        """,
        (event_hash, prev_hash, record_id),
    )
    return event_hash


def get_attendance_events(session_id: int, *, limit: int = 500, offset: int = 0) -> list[AttendanceEventRow]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, record_id, session_id, student_id, actor_id, actor_role,
               event_code, from_status, to_status, reason, detail_json,
               event_time, prev_hash, event_hash
        FROM attendance_events
        WHERE session_id = ?
        ORDER BY id
        LIMIT ? OFFSET ?
        """,
        (session_id, limit, offset),
    )
    rows = cur.fetchall()
    conn.close()

    return [
        {
            "id": int(r[0]),
            "record_id": int(r[1]),
            "session_id": int(r[2]),
            "student_id": int(r[3]),
            "actor_id": int(r[4]) if r[4] is not None else None,
            "actor_role": r[5],
            "event_code": r[6],
            "from_status": r[7],
            "to_status": r[8],
            "reason": r[9],
            "detail_json": r[10],
            "event_time": r[11],
            "prev_hash": r[12],
            "event_hash": r[13],
        }
        for r in rows
    ]


def verify_event_chain(session_id: int) -> dict[str, Any]:
    """
    Recompute the session's hash chain.

    Returns ``{"ok": bool, "events": int, "broken_at": event_id | None}``.
    """
    events = get_attendance_events(session_id, limit=-1)
    prev_hash = ""
    for event in events:
        expected = compute_event_hash(
            prev_hash,
            _event_payload(
                record_id=event["record_id"],
                session_id=event["session_id"],
                student_id=event["student_id"],
                actor_id=event["actor_id"],
                actor_role=event["actor_role"],
                event_code=event["event_code"],
                from_status=event["from_status"],
                to_status=event["to_status"],
                reason=event["reason"],
                detail_json=event["detail_json"],
                event_time=event["event_time"],
            ),
        )
        if event["prev_hash"] != prev_hash or event["event_hash"] != expected:
            return {"ok": False, "events": len(events), "broken_at": event["id"]}
        prev_hash = event["event_hash"]
    return {"ok": True, "events": len(events), "broken_at": None}
