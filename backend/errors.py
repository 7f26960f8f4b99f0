from typing import Any


class AttendanceError(Exception):
    """Base for every error the attendance core hands back to its callers."""

    code = "ATTENDANCE_ERROR"
    status_code = 400
    default_detail = "Attendance request failed."

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class MalformedToken(AttendanceError):
    code = "MALFORMED_TOKEN"
    status_code = 400
    default_detail = "Invalid token format. Please re-scan the QR code."


class SessionExpiredOrNotFound(AttendanceError):
    code = "SESSION_EXPIRED_OR_NOT_FOUND"
    status_code = 410
    default_detail = "Session not found or expired. Please re-scan the QR code."


class InvalidToken(AttendanceError):
    code = "INVALID_TOKEN"
    status_code = 403
    default_detail = "Invalid QR token. Please re-scan the QR code."


class AlreadyPresent(AttendanceError):
    code = "ALREADY_PRESENT"
    status_code = 200
    default_detail = "You have already been marked present for this session."

    def __init__(self, record: Any = None, detail: str | None = None):
        self.record = record
        super().__init__(detail)


class AlreadyExtended(AttendanceError):
    code = "ALREADY_EXTENDED"
    status_code = 409
    default_detail = "Session has already been extended."


class NotEnrolled(AttendanceError):
    code = "NOT_ENROLLED"
    status_code = 403
    default_detail = "Not enrolled in this class."


class StorageConflict(AttendanceError):
    code = "STORAGE_CONFLICT"
    status_code = 409
    default_detail = "Attendance record changed concurrently. Please retry."


class NotFound(AttendanceError):
    code = "NOT_FOUND"
    status_code = 404
    default_detail = "Not found."


class Forbidden(AttendanceError):
    code = "FORBIDDEN"
    status_code = 403
    default_detail = "Insufficient permissions."


class ReasonRequired(AttendanceError):
    code = "REASON_REQUIRED"
    status_code = 400
    default_detail = "A reason is required when overriding the automatic decision."


class PhotoRejected(AttendanceError):
    code = "PHOTO_REJECTED"
    status_code = 400
    default_detail = "Invalid image data. Upload JPG/PNG only."


class PhotoStorageFailed(AttendanceError):
    code = "PHOTO_STORAGE_FAILED"
    status_code = 500
    default_detail = "Failed to upload photo."
