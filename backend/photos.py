import cv2  # type: ignore
import numpy as np  # type: ignore

from backend.config import PHOTO_JPEG_QUALITY, PHOTO_MAX_DIMENSION
from backend.errors import PhotoRejected

ACCEPTED_CONTENT_TYPES = ("image/jpeg", "image/png")


def decode_image(data: bytes):
    if not data:
        raise PhotoRejected("Empty image upload.")
    img_array = np.frombuffer(data, np.uint8)
    frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
    if frame is None:
        raise PhotoRejected()
    return frame


def normalize_photo(data: bytes, *, max_dimension: int = PHOTO_MAX_DIMENSION) -> bytes:
    """
    Decode a JPG/PNG upload, shrink it to fit `max_dimension` and re-encode as JPEG.

    Re-encoding strips metadata (EXIF location etc.) and guarantees that what
    lands in the photo store is a real image.
    """
    frame = decode_image(data)

    height, width = frame.shape[:2]
    longest = max(height, width)
    if longest > max_dimension:
        scale = max_dimension / float(longest)
        frame = cv2.resize(
            frame,
            (max(1, int(width * scale)), max(1, int(height * scale))),
            interpolation=cv2.INTER_AREA,
        )

    ok, encoded = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), PHOTO_JPEG_QUALITY])
    if not ok:
        raise PhotoRejected("Could not encode image.")
    return encoded.tobytes()
