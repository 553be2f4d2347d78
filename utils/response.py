"""Utility helpers for building API responses in a consistent format."""

from __future__ import annotations

from typing import Any, Dict, Optional

from flask import jsonify
from loguru import logger

from dispatch.keys.api_key_pool import KeyPoolExhaustedError
from dispatch.keys.health import ModelCatalogError
from dispatch.llm.gemini_bridge import BridgeError
from dispatch.scheduler.task_queue import DuplicateTaskError

# Exception type -> HTTP status; first match wins
_ERROR_STATUS = (
    (DuplicateTaskError, 409),
    (KeyPoolExhaustedError, 503),
    (BridgeError, 502),
    (ModelCatalogError, 502),
    (ValueError, 400),
)


def success(data: Optional[Any] = None, msg: str = "OK", code: int = 200):
    """Return a standardized success response."""
    payload = {"code": code, "msg": msg, "data": data if data is not None else {}}
    return jsonify(payload), 200


def error(msg: str, code: int = 500, data: Optional[Dict[str, Any]] = None):
    """Return a standardized error response."""
    payload = {"code": code, "msg": msg, "data": data or {}}
    return jsonify(payload), code


def error_from_exception(exc: Exception):
    """Map a service exception to an error response with a readable message."""
    for exc_type, code in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            data = {"error": exc.__class__.__name__}
            if isinstance(exc, DuplicateTaskError):
                data["taskId"] = exc.task_id
            return error(str(exc), code=code, data=data)
    logger.exception(f"Unhandled service error: {exc}")
    return error(str(exc) or exc.__class__.__name__, code=500)
