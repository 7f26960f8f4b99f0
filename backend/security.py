import hashlib
import hmac
import json
import time
from typing import Any

from fastapi import Depends, Header, HTTPException

from backend.config import AUTH_TOKEN_TTL_SECONDS, SCHEDULER_SECRET, SIGNING_KEY
from backend.tokens import b64url_decode, b64url_encode

ROLES = ("admin", "teacher", "student")


def sign(value: str) -> str:
    digest = hmac.new(
        SIGNING_KEY.encode("utf-8"),
        value.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return b64url_encode(digest)


def verify_signature(value: str, signature: str) -> bool:
    return hmac.compare_digest((signature or "").strip(), sign(value))


def verify_scheduler_secret(scheduler_secret: str) -> bool:
    expected = SCHEDULER_SECRET.strip()
    candidate = (scheduler_secret or "").strip()
    if not expected:
        return False
    return hmac.compare_digest(candidate, expected)


def issue_session_token(user_id: int, *, role: str) -> tuple[str, dict[str, Any]]:
    now = int(time.time())
    exp = now + AUTH_TOKEN_TTL_SECONDS
    payload = {
        "sub": str(user_id),
        "role": role,
        "iat": now,
        "exp": exp,
    }
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    payload_b64 = b64url_encode(payload_json.encode("utf-8"))
    token = f"{payload_b64}.{sign(payload_b64)}"
    return token, payload


def decode_session_token(token: str) -> dict[str, Any] | None:
    if not token or "." not in token:
        return None

    payload_b64, signature = token.split(".", 1)
    if not verify_signature(payload_b64, signature):
        return None

    try:
        payload_raw = b64url_decode(payload_b64).decode("utf-8")
        payload = json.loads(payload_raw)
    except Exception:
        return None

    if not isinstance(payload, dict):
        return None

    sub = payload.get("sub")
    role = payload.get("role")
    exp = payload.get("exp")
    if not isinstance(sub, str) or not sub.strip().isdigit():
        return None
    if role not in ROLES:
        return None
    if not isinstance(exp, int):
        return None
    if exp < int(time.time()):
        return None

    return payload


def require_session(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")

    payload = decode_session_token(token.strip())
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")

    return payload


def current_user(session: dict[str, Any] = Depends(require_session)) -> dict[str, Any]:
    """The identity every core operation trusts: ``{"id": int, "role": str}``."""
    return {"id": int(session["sub"]), "role": session["role"]}


def require_roles(*allowed: str):
    allowed_roles = set(allowed)

    def checker(user: dict[str, Any] = Depends(current_user)) -> dict[str, Any]:
        if user["role"] not in allowed_roles:
            raise HTTPException(status_code=403, detail="Insufficient permissions.")
        return user

    return checker
