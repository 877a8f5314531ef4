"""
Telegram ↔ Voiceflow Bridge Application Factory
===============================================

The bot itself runs on an asyncio loop owned by BridgeRuntime (aiogram
polling or webhook). Flask only serves the HTTP surface:
- /health                     liveness probe
- /__diagnostics/<user_id>    per-user state summary
- /telegram/webhook           update receiver when BOT_MODE=webhook
"""

from __future__ import annotations

import logging
import os
from datetime import datetime
from typing import Optional

from flask import Flask

from .config import get_config
from .runtime import BridgeRuntime

log = logging.getLogger(__name__)

__version__ = "1.0.0"


def create_app(runtime: Optional[BridgeRuntime] = None) -> Flask:
    """
    App factory.

    INITIALIZATION ORDER:
    1. Bridge runtime (event loop thread, Telegram + Voiceflow clients)
    2. Register routes
    3. Diagnostics and error handlers

    Args:
        runtime: an already started runtime (tests pass a stand-in); when
            omitted a BridgeRuntime is created and started here.
    """
    app = Flask(__name__)
    app.config["SECRET_KEY"] = os.getenv("FLASK_SECRET_KEY", "dev-secret-key")
    cfg = get_config()

    # ────────────────────────────────────────────────────────
    # STEP 1: Bridge runtime
    # ────────────────────────────────────────────────────────
    if runtime is None:
        try:
            log.info(f"INIT_RUNTIME | mode={cfg.BOT_MODE}")
            runtime = BridgeRuntime(cfg)
            runtime.start()
            log.info("INIT_RUNTIME_SUCCESS")
        except Exception as e:
            log.error(f"INIT_RUNTIME_ERROR | error={e}", exc_info=True)
            raise RuntimeError(f"Failed to start bridge runtime: {e}")
    app.extensions["runtime"] = runtime

    # ────────────────────────────────────────────────────────
    # STEP 2: Register Routes
    # ────────────────────────────────────────────────────────
    from .routes.health import bp as health_bp
    from .routes.webhook import bp as webhook_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(webhook_bp)
    log.info("REGISTER_ROUTES_SUCCESS | health, telegram webhook")

    @app.get("/__diagnostics/<int:user_id>")
    def user_diagnostics(user_id: int):
        """Per-user bridge state for debugging."""
        try:
            summary = app.extensions["runtime"].diagnostics(user_id)
            summary["timestamp"] = datetime.now().isoformat()
            return summary, 200
        except Exception as e:  # noqa: BLE001
            return {"error": str(e), "user_id": user_id}, 500

    # ────────────────────────────────────────────────────────
    # STEP 3: Error Handlers
    # ────────────────────────────────────────────────────────
    @app.errorhandler(500)
    def handle_internal_error(error):
        log.error(f"INTERNAL_ERROR | error={error}", exc_info=True)
        return {
            "error": "Internal server error",
            "timestamp": datetime.now().isoformat(),
            "details": str(error) if app.debug else "Contact support",
        }, 500

    @app.errorhandler(404)
    def handle_not_found(error):
        return {"error": "Endpoint not found", "timestamp": datetime.now().isoformat()}, 404

    log.info(f"APP_INIT_COMPLETE | version={__version__}")
    app.version = __version__
    return app
