from fastapi import APIRouter, BackgroundTasks, Depends
from fastapi.responses import JSONResponse

from backend.clock import Clock, get_clock
from backend.security import require_roles
from backend.services.notifications import get_sweep_status, schedule_sweep

router = APIRouter()


@router.post("/notifications/absences")
def notify_absences(
    background_tasks: BackgroundTasks,
    user: dict = Depends(require_roles("teacher")),
    clock: Clock = Depends(get_clock),
):
    state = schedule_sweep(background_tasks, teacher_id=user["id"], scheduled=False, clock=clock)
    if state == "started":
        return JSONResponse(status_code=202, content={"ok": True, "message": "Absence notifications started"})
    return JSONResponse(status_code=409, content={"ok": False, "message": "Absence sweep already running"})


@router.get("/notifications/status")
def notifications_status(_user: dict = Depends(require_roles("teacher", "admin"))):
    return get_sweep_status()
