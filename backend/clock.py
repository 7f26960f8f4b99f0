from datetime import date, datetime, timezone
from typing import Callable
from zoneinfo import ZoneInfo

from backend.config import TIMEZONE

Clock = Callable[[], datetime]

LOCAL_TZ = ZoneInfo(TIMEZONE)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def get_clock() -> Clock:
    # FastAPI dependency; tests swap it through app.dependency_overrides.
    return utc_now


def local_day(moment: datetime) -> date:
    """Calendar day of `moment` in the configured school timezone."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(LOCAL_TZ).date()
