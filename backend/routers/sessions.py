from fastapi import APIRouter, Depends
from pydantic import BaseModel

from backend.clock import Clock, get_clock
from backend.errors import NotFound
from backend.security import require_roles
from backend.services import sessions as session_service
from backend.services.checkin import serialize_record
from backend.services.notifications import compute_absentees
from database.db import get_class, list_session_attendance

router = APIRouter()

staff_only = require_roles("teacher", "admin")


class SessionStart(BaseModel):
    class_id: int


@router.post("/sessions")
def start_session(payload: SessionStart, user: dict = Depends(staff_only), clock: Clock = Depends(get_clock)):
    teacher_id = user["id"]
    if user["role"] == "admin":
        # Admins open sessions on behalf of the class's teacher.
        klass = get_class(payload.class_id)
        if klass is None:
            raise NotFound("Class not found.")
        teacher_id = klass["teacher_id"]

    session = session_service.start_session(payload.class_id, teacher_id, clock=clock)
    return session_service.serialize_session(session, clock())


@router.get("/sessions/{session_id}")
def session_detail(session_id: int, user: dict = Depends(staff_only), clock: Clock = Depends(get_clock)):
    session = session_service.require_owned_session(session_id, user)
    return session_service.serialize_session(session, clock())


@router.post("/sessions/{session_id}/extend")
def extend_session(session_id: int, user: dict = Depends(staff_only), clock: Clock = Depends(get_clock)):
    session_service.require_owned_session(session_id, user)
    session = session_service.extend_session(session_id, clock=clock)
    return session_service.serialize_session(session, clock())


@router.post("/sessions/{session_id}/end")
def end_session(session_id: int, user: dict = Depends(staff_only), clock: Clock = Depends(get_clock)):
    session_service.require_owned_session(session_id, user)
    session = session_service.end_session(session_id, clock=clock)
    return session_service.serialize_session(session, clock())


@router.get("/sessions/{session_id}/token")
def session_token(session_id: int, user: dict = Depends(staff_only), clock: Clock = Depends(get_clock)):
    session_service.require_owned_session(session_id, user)
    return session_service.mint_token(session_id, clock=clock)


@router.get("/sessions/{session_id}/attendance")
def session_attendance(session_id: int, user: dict = Depends(staff_only)):
    session_service.require_owned_session(session_id, user)
    rows = list_session_attendance(session_id)
    return {
        "session_id": session_id,
        "rows": [serialize_record(r) for r in rows],
        "total": len(rows),
    }


@router.get("/sessions/{session_id}/absentees")
def session_absentees(session_id: int, user: dict = Depends(staff_only)):
    session_service.require_owned_session(session_id, user)
    absentees = compute_absentees(session_id)
    return {"session_id": session_id, "rows": absentees, "total": len(absentees)}
