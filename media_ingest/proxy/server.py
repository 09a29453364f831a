"""
Media Proxy Server — Flask app serving stored media by stable URL.

    /media/<category>/<key>   HEAD + GET (see routes_media)
    /health, /metrics         service endpoints (see routes_core)

The object store is chosen from settings unless one is passed in, which
is how tests run the proxy against an in-memory or temporary store.
"""

from __future__ import annotations

import logging
import time
from typing import Optional

from flask import Flask, g, jsonify, request

from ..config import IngestSettings, get_settings
from ..storage import ObjectStore, build_store
from .routes_core import core_bp
from .routes_media import media_bp

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5080


def create_app(
    settings: Optional[IngestSettings] = None,
    store: Optional[ObjectStore] = None,
) -> Flask:
    """Create the Flask application."""
    settings = settings or get_settings()

    app = Flask(__name__)
    app.config["SETTINGS"] = settings
    app.config["OBJECT_STORE"] = store or build_store(settings)

    # ── Register Blueprints ───────────────────────────────────────
    app.register_blueprint(core_bp)                             # /health, /metrics
    app.register_blueprint(media_bp, url_prefix="/media")       # /media/<category>/<key>

    # ── Error Handlers ────────────────────────────────────────────

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_server_error(e):
        """Catch-all: log the cause, never send it to the client."""
        logger.error(f"Unhandled 500 on {request.method} {request.path}: {e}", exc_info=True)
        return jsonify({"error": "Internal server error"}), 500

    # ── Request Logging ───────────────────────────────────────────

    @app.before_request
    def log_request_start():
        g.start_time = time.monotonic()

    @app.after_request
    def log_request_end(response):
        duration_ms = int((time.monotonic() - g.get("start_time", time.monotonic())) * 1000)
        # Probes and scrapes are frequent; keep them out of INFO
        quiet = request.method == "HEAD" or request.path in ("/health", "/metrics")
        log_fn = logger.debug if quiet else logger.info
        log_fn(f"{request.method} {request.path} → {response.status_code} ({duration_ms}ms)")
        return response

    logger.info(f"Media proxy initialized (store={app.config['OBJECT_STORE'].name})")

    return app


def run_server(
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    debug: bool = False,
    settings: Optional[IngestSettings] = None,
) -> None:
    """Run the development server."""
    app = create_app(settings)
    logger.info(f"Serving media on http://{host}:{port}/media/")
    app.run(host=host, port=port, debug=debug, use_reloader=False)
