import re
import sqlite3
from typing import Literal

from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from backend.clock import Clock, get_clock
from backend.security import decode_session_token, require_roles, verify_scheduler_secret
from backend.services.notifications import schedule_sweep
from database.db import (
    create_class,
    create_user,
    enroll_student,
    get_attendance_events,
    get_class,
    get_session,
    get_user_by_id,
    verify_event_chain,
)

router = APIRouter()

admin_only = require_roles("admin")

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class UserCreate(BaseModel):
    email: str
    full_name: str
    role: Literal["admin", "teacher", "student"]
    password: str


class ScheduleSlot(BaseModel):
    day: Literal["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
    time: str
    duration_minutes: int = Field(ge=1, le=600)

    @field_validator("day", mode="before")
    @classmethod
    def _lower_day(cls, value):
        return value.strip().lower() if isinstance(value, str) else value

    @field_validator("time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        if not _HHMM.match(value.strip()):
            raise ValueError("time must be HH:MM (24h)")
        return value.strip()


class ClassCreate(BaseModel):
    name: str
    teacher_id: int
    description: str | None = None
    schedule: list[ScheduleSlot] = []


class EnrollmentCreate(BaseModel):
    student_id: int
    roll_number: str | None = None


def _require_admin_or_scheduler(
    authorization: str | None = Header(default=None),
    x_scheduler_secret: str | None = Header(default=None),
) -> str:
    if x_scheduler_secret and verify_scheduler_secret(x_scheduler_secret):
        return "scheduler"

    if authorization:
        scheme, _, token = authorization.partition(" ")
        payload = decode_session_token(token.strip()) if scheme.lower() == "bearer" else None
        if payload and payload.get("role") == "admin":
            return "admin"
        if payload:
            raise HTTPException(status_code=403, detail="Insufficient permissions.")

    raise HTTPException(status_code=401, detail="Admin session or scheduler secret required.")


@router.post("/admin/notifications/sweep")
def run_scheduled_sweep(
    background_tasks: BackgroundTasks,
    _caller: str = Depends(_require_admin_or_scheduler),
    clock: Clock = Depends(get_clock),
):
    state = schedule_sweep(background_tasks, scheduled=True, clock=clock)
    if state == "started":
        return JSONResponse(status_code=202, content={"ok": True, "message": "Absence sweep started"})
    return JSONResponse(status_code=409, content={"ok": False, "message": "Absence sweep already running"})


@router.post("/admin/users")
def add_user(payload: UserCreate, _admin: dict = Depends(admin_only)):
    try:
        user_id = create_user(payload.email, payload.full_name, payload.role, payload.password)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Email already exists.")
    return get_user_by_id(user_id)


@router.post("/admin/classes")
def add_class(payload: ClassCreate, _admin: dict = Depends(admin_only)):
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Class name is required.")

    teacher = get_user_by_id(payload.teacher_id)
    if not teacher or teacher["role"] != "teacher":
        raise HTTPException(status_code=400, detail="teacher_id must reference a teacher.")

    class_id = create_class(
        name,
        payload.teacher_id,
        description=payload.description,
        schedule=[slot.model_dump() for slot in payload.schedule],
    )
    return get_class(class_id)


@router.post("/admin/classes/{class_id}/enrollments")
def add_enrollment(class_id: int, payload: EnrollmentCreate, _admin: dict = Depends(admin_only)):
    if not get_class(class_id):
        raise HTTPException(status_code=404, detail="Class not found.")
    student = get_user_by_id(payload.student_id)
    if not student or student["role"] != "student":
        raise HTTPException(status_code=400, detail="student_id must reference a student.")

    try:
        enrollment_id = enroll_student(class_id, payload.student_id, payload.roll_number)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Student already enrolled.")
    return {
        "id": enrollment_id,
        "class_id": class_id,
        "student_id": payload.student_id,
        "roll_number": payload.roll_number,
    }


@router.get("/admin/sessions/{session_id}/events")
def list_session_events(
    session_id: int,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _admin: dict = Depends(admin_only),
):
    if not get_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found.")
    return {
        "rows": get_attendance_events(session_id, limit=limit, offset=offset),
        "limit": limit,
        "offset": offset,
    }


@router.get("/admin/sessions/{session_id}/chain")
def check_session_chain(session_id: int, _admin: dict = Depends(admin_only)):
    if not get_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found.")
    return {"session_id": session_id, **verify_event_chain(session_id)}
