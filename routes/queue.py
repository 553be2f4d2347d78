"""Queue status and control endpoints."""

from __future__ import annotations

from flask import Blueprint

from routes import get_runtime
from utils.response import success

bp = Blueprint("queue", __name__)


async def _apply(fn):
    # queue transitions run on the loop thread
    fn()


@bp.get("/status")
def queue_status():
    """Current queue snapshot."""
    return success(data=get_runtime().queue.snapshot().to_dict())


@bp.get("/tasks/<path:task_id>")
def task_status(task_id: str):
    status = get_runtime().queue.get_task_status(task_id)
    return success(data={"taskId": task_id, "status": status.value})


@bp.post("/pause")
def pause_queue():
    runtime = get_runtime()
    runtime.run(_apply(runtime.queue.pause), timeout=5)
    return success(data=runtime.queue.snapshot().to_dict(), msg="Queue paused")


@bp.post("/resume")
def resume_queue():
    runtime = get_runtime()
    runtime.run(_apply(runtime.queue.resume), timeout=5)
    return success(data=runtime.queue.snapshot().to_dict(), msg="Queue resumed")
