"""HTTP and WebSocket routes for the dispatch service."""

from __future__ import annotations

from flask import current_app

from dispatch.runtime import ServiceRuntime

RUNTIME_EXTENSION = "dispatch_runtime"


def get_runtime() -> ServiceRuntime:
    """Runtime injected by ``create_app``."""
    return current_app.extensions[RUNTIME_EXTENSION]
