"""API key management endpoints."""

from __future__ import annotations

from flask import Blueprint, request

from routes import get_runtime
from utils.response import error, error_from_exception, success

bp = Blueprint("keys", __name__)

CHECK_TIMEOUT_SECONDS = 120


def _resolve(key_id: str):
    return get_runtime().key_pool.find_by_key_id(key_id)


@bp.get("")
def list_keys():
    return success(data=get_runtime().key_pool.stats())


@bp.post("")
def add_keys():
    """Add keys from a pasted block: {"raw": "...", "primary": "..."}."""
    body = request.get_json(silent=True) or {}
    raw = body.get("raw") or ""
    primary = body.get("primary")
    if not raw.strip() and not primary:
        return error("Field 'raw' or 'primary' is required", code=400)
    added = get_runtime().ai_service.load_keys(raw, primary=primary)
    return success(data={"added": added, "total": len(get_runtime().key_pool)})


@bp.delete("/<key_id>")
def remove_key(key_id: str):
    secret = _resolve(key_id)
    if secret is None:
        return error(f"Unknown key {key_id}", code=404)
    get_runtime().key_pool.remove_key(secret)
    return success(data={"removed": key_id})


@bp.post("/<key_id>/reset")
def reset_key(key_id: str):
    secret = _resolve(key_id)
    if secret is None:
        return error(f"Unknown key {key_id}", code=404)
    get_runtime().key_pool.reset_key(secret)
    return success(data=get_runtime().key_pool.get(secret).to_dict())


@bp.post("/check")
def check_keys():
    """Check every key against the requested (or default) model."""
    body = request.get_json(silent=True) or {}
    runtime = get_runtime()
    try:
        results = runtime.run(runtime.ai_service.check_all_keys(body.get("model")), timeout=CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        return error_from_exception(exc)
    return success(data=[result.to_dict() for result in results])


@bp.post("/<key_id>/probe")
def probe_key(key_id: str):
    secret = _resolve(key_id)
    if secret is None:
        return error(f"Unknown key {key_id}", code=404)
    runtime = get_runtime()
    try:
        credential = runtime.run(runtime.ai_service.probe_key(secret), timeout=CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        return error_from_exception(exc)
    return success(data=credential.to_dict() if credential else {})


@bp.get("/models")
def list_models():
    runtime = get_runtime()
    try:
        models = runtime.run(runtime.ai_service.list_models(), timeout=CHECK_TIMEOUT_SECONDS)
    except Exception as exc:
        return error_from_exception(exc)
    return success(data=[model.to_dict() for model in models])
