import time
import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import issue_session_token, require_session
from database.db import create_tables, get_user_by_id, verify_user_credentials

router = APIRouter()


class UserLogin(BaseModel):
    email: str
    password: str


@router.post("/auth/login")
def login(payload: UserLogin):
    email = payload.email.strip()
    password = payload.password.strip()

    if not email:
        raise HTTPException(status_code=400, detail="Email is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        user = verify_user_credentials(email, password)
    except sqlite3.OperationalError:
        # Self-heal when DB schema is missing (e.g., startup/lifespan skipped).
        try:
            create_tables()
            user = verify_user_credentials(email, password)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )

    if not user:
        raise HTTPException(status_code=401, detail="Invalid email or password.")

    token, claims = issue_session_token(user["id"], role=user["role"])
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "user_id": user["id"],
        "full_name": user["full_name"],
        "role": claims["role"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    user = get_user_by_id(int(session["sub"]))
    if not user:
        raise HTTPException(status_code=401, detail="User no longer exists.")
    return {
        **user,
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }
