"""Generation endpoint: queue a Gemini request and wait for its result."""

from __future__ import annotations

from flask import Blueprint, request

from routes import get_runtime
from utils.response import error, error_from_exception, success

bp = Blueprint("ai", __name__)


@bp.post("/generate")
def generate():
    """
    Body: {"taskId": str, "priority": "HIGH|NORMAL|LOW", "payload": {...}, "model": str?}

    Blocks until the queued call settles; 409 if the task id is already active.
    """
    body = request.get_json(silent=True) or {}
    task_id = body.get("taskId")
    payload = body.get("payload")
    if not task_id or not isinstance(payload, dict):
        return error("Fields 'taskId' and 'payload' are required", code=400)

    runtime = get_runtime()
    try:
        result = runtime.run(
            runtime.ai_service.generate_content(
                payload,
                task_id=task_id,
                priority=body.get("priority", "NORMAL"),
                model=body.get("model"),
            )
        )
    except Exception as exc:
        return error_from_exception(exc)
    return success(data=result)
