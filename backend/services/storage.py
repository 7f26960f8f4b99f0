import logging
import time
from pathlib import Path, PurePosixPath
from typing import Any
from urllib.parse import quote

from backend.config import PHOTO_URL_TTL_SECONDS, PHOTOS_DIR
from backend.errors import Forbidden, NotFound, PhotoStorageFailed
from backend.security import sign, verify_signature
from database import db

logger = logging.getLogger(__name__)


def photo_path_for(student_id: int, session_id: int, millis: int) -> str:
    return f"{student_id}/{session_id}/{millis}.jpg"


def _resolve(ref: str) -> Path:
    clean = PurePosixPath(ref)
    if clean.is_absolute() or any(part in ("", ".", "..") for part in clean.parts):
        raise NotFound("Photo not found.")
    root = Path(PHOTOS_DIR).resolve()
    target = (root / Path(*clean.parts)).resolve()
    if root not in target.parents:
        raise NotFound("Photo not found.")
    return target


def put_photo(ref: str, data: bytes) -> str:
    target = _resolve(ref)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_suffix(target.suffix + ".part")
        tmp.write_bytes(data)
        tmp.replace(target)
    except OSError as exc:
        logger.error("Failed to store photo %s: %s", ref, exc)
        raise PhotoStorageFailed()
    return ref


def delete_photo(ref: str) -> None:
    try:
        _resolve(ref).unlink(missing_ok=True)
    except (OSError, NotFound) as exc:
        logger.warning("Could not remove photo %s: %s", ref, exc)


def _signature_payload(ref: str, expires: int) -> str:
    return f"{ref}|{expires}"


def signed_photo_url(ref: str, ttl: int = PHOTO_URL_TTL_SECONDS, *, now: float | None = None) -> dict[str, Any]:
    expires = int(now if now is not None else time.time()) + int(ttl)
    signature = sign(_signature_payload(ref, expires))
    return {
        "url": f"/photos/{quote(ref)}?expires={expires}&signature={signature}",
        "expires": expires,
    }


def resolve_signed_photo(ref: str, expires: int, signature: str, *, now: float | None = None) -> Path:
    current = int(now if now is not None else time.time())
    if expires < current:
        raise Forbidden("Photo link has expired.")
    if not verify_signature(_signature_payload(ref, expires), signature):
        raise Forbidden("Invalid photo signature.")

    target = _resolve(ref)
    if not target.is_file():
        raise NotFound("Photo not found.")
    return target


def can_view_photo(record: db.AttendanceRow, user: dict[str, Any]) -> bool:
    """Admins see every photo, teachers only their sessions', students only their own."""
    if user["role"] == "admin":
        return True
    if user["role"] == "student":
        return record["student_id"] == user["id"]
    if user["role"] == "teacher":
        session = db.get_session(record["session_id"])
        return session is not None and session["teacher_id"] == user["id"]
    return False
