"""Health check endpoint blueprints.

This module exposes health and metrics endpoints:

- Legacy:   GET /api/health/health_check -> wrapped response { code, msg, data: {...} }
- Frontend: GET /health/health_check     -> flat response   { status, service, version }
- Metrics:  GET /api/health/metrics      -> Prometheus text exposition
"""

from __future__ import annotations

import platform
from datetime import datetime, timezone

from flask import Blueprint, Response, jsonify
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from dispatch import __version__ as VERSION
from routes import get_runtime
from utils.response import success

bp = Blueprint("health", __name__)
# Public blueprint without /api prefix for the frontend contract
bp_public = Blueprint("health_public", __name__)


def _health_summary() -> dict:
    """Minimal health data expected by the frontend contract."""
    return {
        "status": "ok" if get_runtime().running else "degraded",
        "service": "dispatch",
        "version": VERSION,
    }


@bp.get("/health_check")
def health_check():
    """Return service health information for readiness probes."""
    runtime = get_runtime()
    pool_stats = runtime.key_pool.stats()
    data = {
        **_health_summary(),
        "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        "environment": {
            "python": platform.python_version(),
            "platform": platform.platform(),
            "model": runtime.ai_service.model,
            "max_total_parallel": runtime.queue.concurrency_limit,
        },
        "queue": runtime.queue.snapshot().to_dict(),
        "keys": {
            "total": pool_stats["total_keys"],
            "eligible": pool_stats["eligible_keys"],
            "by_status": pool_stats["by_status"],
        },
    }
    return success(data=data)


@bp.get("/metrics")
def metrics():
    """Prometheus scrape endpoint."""
    return Response(generate_latest(), content_type=CONTENT_TYPE_LATEST)


@bp_public.get("/health_check")
def health_check_public():
    """Return the simplified health payload for frontend consumption."""
    return jsonify(_health_summary()), 200
