import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

ASSETS_DIR = Path(os.getenv("MARKLY_ASSETS_DIR", BASE_DIR / "assets"))
PHOTOS_DIR = Path(os.getenv("MARKLY_PHOTOS_DIR", ASSETS_DIR / "checkin-photos"))
DB_PATH = Path(os.getenv("MARKLY_DB_PATH", BASE_DIR / "database" / "markly.db"))
SCHEDULER_SECRET = os.getenv("MARKLY_SCHEDULER_SECRET", "markly-scheduler-secret-change-me").strip()
ADMIN_EMAIL = os.getenv("MARKLY_ADMIN_EMAIL", "admin@markly.local").strip() or "admin@markly.local"
ADMIN_PASSWORD = os.getenv("MARKLY_ADMIN_PASSWORD", "admin123").strip() or "admin123"
SIGNING_KEY = (
    os.getenv("MARKLY_SIGNING_KEY", "").strip()
    or SCHEDULER_SECRET
    or secrets.token_urlsafe(32)
)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("MARKLY_AUTH_TOKEN_TTL_SECONDS", "43200"))
LOG_LEVEL = os.getenv("MARKLY_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_int(value: str | None, fallback: int, *, minimum: int = 0) -> int:
    if not value:
        return fallback
    try:
        return max(minimum, int(value.strip()))
    except ValueError:
        return fallback


def _parse_float(value: str | None, fallback: float) -> float:
    if not value:
        return fallback
    try:
        return float(value.strip())
    except ValueError:
        return fallback


def _parse_decision_mode(value: str | None) -> str:
    normalized = (value or "").strip().lower().replace("-", "_")
    if normalized in {"score", "score_threshold"}:
        return "score"
    return "liveness"


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("MARKLY_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("MARKLY_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PATCH", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("MARKLY_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept", "X-Scheduler-Secret"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("MARKLY_CORS_ALLOW_CREDENTIALS"), True)

# Calendar used to decide whether a session "already exists today".
TIMEZONE = os.getenv("MARKLY_TIMEZONE", "UTC").strip() or "UTC"

# Session windows
SESSION_WINDOW_SECONDS = _parse_int(os.getenv("MARKLY_SESSION_WINDOW_SECONDS"), 90, minimum=1)
SESSION_EXTENSION_SECONDS = _parse_int(os.getenv("MARKLY_SESSION_EXTENSION_SECONDS"), 30, minimum=1)

# Rotating QR token
TOKEN_ROTATION_SECONDS = 10
TOKEN_MAX_SLOT_AGE = _parse_int(os.getenv("MARKLY_TOKEN_MAX_SLOT_AGE"), 0)

# Verification decision
DECISION_MODE = _parse_decision_mode(os.getenv("MARKLY_DECISION_MODE"))
SCORE_PRESENT_MAX = _parse_float(os.getenv("MARKLY_SCORE_PRESENT_MAX"), 0.60)
SCORE_PENDING_MAX = _parse_float(os.getenv("MARKLY_SCORE_PENDING_MAX"), 0.75)

# Absence notifications
SWEEP_WINDOW_MINUTES = _parse_int(os.getenv("MARKLY_SWEEP_WINDOW_MINUTES"), 24 * 60, minimum=1)
SMTP_HOST = os.getenv("MARKLY_SMTP_HOST", "").strip()
SMTP_PORT = _parse_int(os.getenv("MARKLY_SMTP_PORT"), 465, minimum=1)
SMTP_USERNAME = os.getenv("MARKLY_SMTP_USERNAME", "").strip()
SMTP_PASSWORD = os.getenv("MARKLY_SMTP_PASSWORD", "").strip()
SMTP_USE_SSL = _parse_bool(os.getenv("MARKLY_SMTP_USE_SSL"), True)
SMTP_TIMEOUT_SECONDS = _parse_int(os.getenv("MARKLY_SMTP_TIMEOUT_SECONDS"), 15, minimum=1)
MAIL_FROM = os.getenv("MARKLY_MAIL_FROM", "Attendance System <no-reply@markly.local>").strip()

# Check-in photos
PHOTO_URL_TTL_SECONDS = _parse_int(os.getenv("MARKLY_PHOTO_URL_TTL_SECONDS"), 3600, minimum=1)
PHOTO_MAX_DIMENSION = _parse_int(os.getenv("MARKLY_PHOTO_MAX_DIMENSION"), 1280, minimum=64)
PHOTO_JPEG_QUALITY = min(100, _parse_int(os.getenv("MARKLY_PHOTO_JPEG_QUALITY"), 85, minimum=10))
