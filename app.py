"""Application entry point for the AI dispatch service."""

from __future__ import annotations

import os
from typing import Optional

from flask import Flask
from flask_cors import CORS
from flask_sock import Sock
from loguru import logger

from config import Settings, settings as default_settings
from dispatch.runtime import ServiceRuntime
from routes import RUNTIME_EXTENSION
from routes.ai import bp as ai_bp
from routes.health import bp as health_bp, bp_public as health_public_bp
from routes.keys import bp as keys_bp
from routes.queue import bp as queue_bp
from routes.ws import register_ws_routes
from utils.logger import configure_logging


def create_app(runtime: Optional[ServiceRuntime] = None, settings: Optional[Settings] = None) -> Flask:
    """Application factory; builds and starts a runtime unless one is injected."""
    configure_logging()
    settings = settings or default_settings

    if runtime is None:
        runtime = ServiceRuntime(settings)
    if not runtime.running:
        runtime.start()

    app = Flask(__name__)
    app.json.sort_keys = False
    app.extensions[RUNTIME_EXTENSION] = runtime

    # The desktop shell talks to us from its own origin
    allowed_origins = os.getenv("DISPATCH_CORS_ORIGINS", "*")
    CORS(app, resources={r"/api/*": {"origins": allowed_origins}})

    # Register HTTP blueprints
    app.register_blueprint(health_bp, url_prefix="/api/health")
    app.register_blueprint(health_public_bp, url_prefix="/health")
    app.register_blueprint(queue_bp, url_prefix="/api/queue")
    app.register_blueprint(keys_bp, url_prefix="/api/keys")
    app.register_blueprint(ai_bp, url_prefix="/api/ai")

    # Attach WebSocket routes
    sock = Sock()
    sock.init_app(app)
    register_ws_routes(sock)

    logger.info(
        "Dispatch service initialised on {}:{} (max_total_parallel={})",
        settings.server_host,
        settings.server_port,
        runtime.queue.concurrency_limit,
    )

    return app


if __name__ == "__main__":  # pragma: no cover
    app = create_app()
    app.run(host=default_settings.server_host, port=default_settings.server_port, debug=False, threaded=True)
