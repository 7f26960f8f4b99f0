from typing import Literal

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import FileResponse
from pydantic import BaseModel

from backend.clock import Clock, get_clock
from backend.errors import AlreadyPresent, Forbidden, NotFound, PhotoRejected
from backend.photos import ACCEPTED_CONTENT_TYPES
from backend.security import current_user, require_roles
from backend.services import checkin, storage
from database.db import get_attendance_by_id

router = APIRouter()

students_only = require_roles("student")
staff_only = require_roles("teacher", "admin")


class ScanRequest(BaseModel):
    token: str


class AttendanceOverride(BaseModel):
    status: Literal["present", "pending", "absent", "rejected"]
    reason: str | None = None


def _already_present_payload(exc: AlreadyPresent) -> dict:
    return {
        "status": "present",
        "already_present": True,
        "message": exc.detail,
        "record": checkin.serialize_record(exc.record) if exc.record else None,
    }


@router.post("/checkin/scan")
def scan(payload: ScanRequest, user: dict = Depends(students_only), clock: Clock = Depends(get_clock)):
    try:
        record = checkin.acknowledge_scan(payload.token, user["id"], clock=clock)
    except AlreadyPresent as exc:
        return _already_present_payload(exc)
    return {
        "status": record["status"],
        "already_present": False,
        "message": checkin.STATUS_MESSAGES[record["status"]],
        "record": checkin.serialize_record(record),
    }


@router.post("/checkin/verify")
async def verify(
    user: dict = Depends(students_only),
    clock: Clock = Depends(get_clock),
    token: str = Form(...),
    liveness: bool = Form(...),
    photo: UploadFile | None = File(default=None),
):
    photo_bytes = None
    if photo is not None:
        if photo.content_type not in ACCEPTED_CONTENT_TYPES:
            raise PhotoRejected("Upload JPG/PNG only.")
        photo_bytes = await photo.read()

    try:
        result = checkin.submit_verification(
            token,
            user["id"],
            liveness,
            photo_bytes,
            clock=clock,
        )
    except AlreadyPresent as exc:
        return _already_present_payload(exc)

    return {
        "status": result["status"],
        "already_present": False,
        "message": result["message"],
        "record": checkin.serialize_record(result["record"]),
    }


@router.patch("/attendance/{record_id}")
def override(
    record_id: int,
    payload: AttendanceOverride,
    user: dict = Depends(staff_only),
    clock: Clock = Depends(get_clock),
):
    record = checkin.override_attendance(
        record_id,
        payload.status,
        payload.reason,
        actor=user,
        clock=clock,
    )
    return checkin.serialize_record(record)


@router.get("/attendance/{record_id}/photo-url")
def photo_url(record_id: int, user: dict = Depends(current_user)):
    record = get_attendance_by_id(record_id)
    if record is None:
        raise NotFound("Attendance record not found.")
    if not storage.can_view_photo(record, user):
        raise Forbidden("You cannot view this photo.")
    if not record["photo_ref"]:
        raise NotFound("No photo for this record.")
    return {"record_id": record_id, **storage.signed_photo_url(record["photo_ref"])}


@router.get("/photos/{ref:path}")
def photo(ref: str, expires: int = Query(...), signature: str = Query(...)):
    path = storage.resolve_signed_photo(ref, expires, signature)
    return FileResponse(path, media_type="image/jpeg")
