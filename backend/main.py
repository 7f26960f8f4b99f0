import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_LEVEL,
)
from backend.errors import AttendanceError
from backend.routers.admin import router as admin_router
from backend.routers.attendance import router as attendance_router
from backend.routers.auth import router as auth_router
from backend.routers.core import router as core_router
from backend.routers.notifications import router as notifications_router
from backend.routers.sessions import router as sessions_router
from database.db import create_tables

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    create_tables()
    logger.info("Database ready")
    yield


app = FastAPI(title="Markly Attendance API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


@app.exception_handler(AttendanceError)
async def attendance_error_handler(_request: Request, exc: AttendanceError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
    )


app.include_router(core_router)
app.include_router(auth_router)
app.include_router(sessions_router)
app.include_router(attendance_router)
app.include_router(notifications_router)
app.include_router(admin_router)
