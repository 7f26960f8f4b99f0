from fastapi import APIRouter

from backend.config import (
    DECISION_MODE,
    SCORE_PENDING_MAX,
    SCORE_PRESENT_MAX,
    SESSION_EXTENSION_SECONDS,
    SESSION_WINDOW_SECONDS,
    SWEEP_WINDOW_MINUTES,
    TIMEZONE,
    TOKEN_MAX_SLOT_AGE,
    TOKEN_ROTATION_SECONDS,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/attendance")
def attendance_config():
    return {
        "session_window_seconds": SESSION_WINDOW_SECONDS,
        "session_extension_seconds": SESSION_EXTENSION_SECONDS,
        "token_rotation_seconds": TOKEN_ROTATION_SECONDS,
        "token_max_slot_age": TOKEN_MAX_SLOT_AGE,
        "decision_mode": DECISION_MODE,
        "score_present_max": SCORE_PRESENT_MAX,
        "score_pending_max": SCORE_PENDING_MAX,
        "sweep_window_minutes": SWEEP_WINDOW_MINUTES,
        "timezone": TIMEZONE,
    }
