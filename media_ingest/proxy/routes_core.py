"""
Proxy API — service endpoints.

Blueprint: core_bp
Routes:
    GET    /health     # {"status": "ok", "store": "<backend>", "metrics": {...}}
    GET    /metrics    # Prometheus text exposition
"""

from __future__ import annotations

from flask import Blueprint, Response, current_app, jsonify

from .. import __version__
from ..observability.metrics import metrics

core_bp = Blueprint("core", __name__)


@core_bp.route("/health", methods=["GET"])
def api_health():
    store = current_app.config["OBJECT_STORE"]
    return jsonify({
        "status": "ok",
        "version": __version__,
        "store": store.name,
        "metrics": metrics.export_json(),
    })


@core_bp.route("/metrics", methods=["GET"])
def api_metrics():
    return Response(
        metrics.export_prometheus(),
        content_type="text/plain; version=0.0.4; charset=utf-8",
    )
