# vf_bridge/routes/health.py
"""
Simple readiness/liveness probe.

Returns HTTP 200 if:
• the bridge event loop is running
• the session store answers

Otherwise 500 (so the orchestrator can restart the process).
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from flask import Blueprint, current_app, jsonify

log = logging.getLogger(__name__)
bp = Blueprint("health", __name__)


@bp.get("/health")
def health_check() -> tuple[Dict[str, Any], int]:
    runtime = current_app.extensions.get("runtime")
    if runtime is None:
        return jsonify({"status": "unhealthy", "runtime": "not_initialized", "service": "vf_bridge"}), 500
    try:
        report = runtime.health_check()
    except Exception as exc:  # noqa: BLE001
        log.warning("Health check failed: %s", exc)
        return jsonify({"status": "unhealthy", "error": str(exc), "service": "vf_bridge"}), 500

    report["service"] = "vf_bridge"
    return jsonify(report), 200 if report.get("status") == "healthy" else 500
