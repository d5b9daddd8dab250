"""Scheduler API: status, start/stop, manual trigger and run log."""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from papertrader.api.deps import get_context, get_db
from papertrader.engine.context import AppContext
from papertrader.models.task_run import TaskRun
from papertrader.schemas.simulation import SchedulerStatusRead

router = APIRouter(prefix="/api/scheduler", tags=["scheduler"])


@router.get("/status", response_model=SchedulerStatusRead)
def scheduler_status(ctx: AppContext = Depends(get_context)):
    return ctx.scheduler.status()


@router.post("/start", response_model=SchedulerStatusRead)
async def start_scheduler(ctx: AppContext = Depends(get_context)):
    # async so APScheduler binds to the running event loop
    ctx.start_scheduler()
    return ctx.scheduler.status()


@router.post("/stop", response_model=SchedulerStatusRead)
async def stop_scheduler(ctx: AppContext = Depends(get_context)):
    ctx.stop_scheduler()
    return ctx.scheduler.status()


@router.post("/trigger/{task_id}")
async def trigger_task(task_id: str, ctx: AppContext = Depends(get_context)):
    """Run one task now. Skipped if it is already running."""
    try:
        ran = await ctx.scheduler.trigger(task_id)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown task {task_id}")
    task = ctx.scheduler.get(task_id)
    if not ran:
        return {"status": "skipped", "message": f"{task.name} is already running"}
    if task.last_error:
        return {"status": "error", "message": task.last_error}
    return {"status": "ok", "message": f"{task.name} completed"}


@router.get("/runs")
def list_runs(
    task_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
    offset: int = 0,
    session: Session = Depends(get_db),
):
    stmt = select(TaskRun).order_by(TaskRun.timestamp.desc(), TaskRun.id.desc())
    if task_id:
        stmt = stmt.where(TaskRun.task_id == task_id)
    if status:
        stmt = stmt.where(TaskRun.status == status)
    stmt = stmt.offset(offset).limit(min(limit, 500))
    return session.exec(stmt).all()
