"""
Rotating check-in token codec.

A token is the base64url (unpadded) encoding of the compact JSON object
``{"session_id": int, "slot": int, "secret": str}`` where
``slot = floor(unix_time / TOKEN_ROTATION_SECONDS)``.

The encoding is not confidential. A token authorizes a check-in only because
its secret matches the session's current secret; the slot only makes the
displayed QR code change every rotation interval.
"""
import base64
import binascii
import json
from datetime import datetime
from typing import TypedDict

from backend.config import TOKEN_ROTATION_SECONDS
from backend.errors import MalformedToken

# Largest value an SQLite INTEGER column can hold.
MAX_INTEGER = 2**63 - 1


class RotatingToken(TypedDict):
    session_id: int
    slot: int
    secret: str


def b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def rotation_slot(now: datetime) -> int:
    return int(now.timestamp()) // TOKEN_ROTATION_SECONDS


def slot_valid_until(slot: int) -> int:
    """Unix time (seconds) at which the next slot starts."""
    return (slot + 1) * TOKEN_ROTATION_SECONDS


def encode_token(session_id: int, secret: str, now: datetime) -> str:
    payload = {
        "session_id": int(session_id),
        "slot": rotation_slot(now),
        "secret": secret,
    }
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    return b64url_encode(payload_json.encode("utf-8"))


def decode_token(token: str) -> RotatingToken:
    candidate = (token or "").strip()
    if not candidate:
        raise MalformedToken("Token is empty.")

    try:
        payload = json.loads(b64url_decode(candidate).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise MalformedToken()

    if not isinstance(payload, dict):
        raise MalformedToken()

    session_id = payload.get("session_id")
    slot = payload.get("slot")
    secret = payload.get("secret")
    # bool is an int subclass; reject it explicitly
    if not isinstance(session_id, int) or isinstance(session_id, bool) or not 0 < session_id <= MAX_INTEGER:
        raise MalformedToken("Token missing session ID.")
    if not isinstance(slot, int) or isinstance(slot, bool) or not 0 <= slot <= MAX_INTEGER:
        raise MalformedToken()
    if not isinstance(secret, str) or not secret:
        raise MalformedToken()

    return {"session_id": session_id, "slot": slot, "secret": secret}
