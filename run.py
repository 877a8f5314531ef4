#!/usr/bin/env python3
"""
Telegram ↔ Voiceflow Bridge Entry Point
- Works under both Gunicorn (WSGI import) and python CLI.
- Ensures smart logging is initialized exactly once per process.
- Aligns Flask app logger with root logger for consistent output.
"""

from __future__ import annotations

import atexit
import logging
import os
import sys
from typing import Tuple

from dotenv import load_dotenv
from flask import request

# Load env before any other imports that might read it
load_dotenv()

# Local imports after env load
from vf_bridge import create_app
from vf_bridge.utils.smart_logger import LogLevel, configure_logging

# --------------------------------------------------------------------------------------
# Logging initialization (one-time, safe under multiprocess servers like Gunicorn)
# --------------------------------------------------------------------------------------

_LOGGING_INITIALIZED = False  # process-level guard


def _to_python_level(level: LogLevel) -> int:
    """Map LogLevel to a stdlib logging level."""
    return logging.DEBUG if level is LogLevel.DEBUG else logging.INFO


def setup_smart_logging() -> LogLevel:
    """
    Configure the smart logging system with validation.
    Idempotent: won't add duplicate handlers if called multiple times.
    """
    global _LOGGING_INITIALIZED

    desired = os.getenv("BOT_LOG_LEVEL", "STANDARD").upper()
    valid = {lvl.name for lvl in LogLevel}
    if desired not in valid:
        print(f"Warning: Invalid BOT_LOG_LEVEL '{desired}'. Valid options: {', '.join(sorted(valid))}")
        log_level = LogLevel.STANDARD
    else:
        log_level = LogLevel[desired]

    if not _LOGGING_INITIALIZED:
        root = logging.getLogger()
        if not root.handlers:
            configure_logging(
                level=log_level,
                format_string="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                silence_external=True,
            )
        _LOGGING_INITIALIZED = True

    return log_level


# --------------------------------------------------------------------------------------
# Environment validation
# --------------------------------------------------------------------------------------

def validate_environment(strict: bool) -> None:
    """
    Validate critical env vars.
    - If strict=True: exit on missing vars (CLI path).
    - If strict=False: log a warning (WSGI path).
    """
    required = {
        "TELEGRAM_BOT_TOKEN": "Telegram Bot API access",
        "VF_API_KEY": "Voiceflow runtime access",
    }
    if os.getenv("VF_STREAMING", "").lower() in ("1", "true", "yes", "on"):
        required["VF_PROJECT_ID"] = "Voiceflow streaming endpoint"
    if os.getenv("BOT_MODE", "polling").lower() == "webhook":
        required["WEBHOOK_URL"] = "Telegram webhook registration"
    missing = [f"{k} (required for {v})" for k, v in required.items() if not os.getenv(k)]

    if missing:
        msg = "Missing required environment variables: " + ", ".join(missing)
        if strict:
            print("Error:", msg)
            sys.exit(1)
        else:
            logging.getLogger(__name__).warning(msg)


# --------------------------------------------------------------------------------------
# Flask application creation and alignment with logging
# --------------------------------------------------------------------------------------

def _wire_app_logger(app, log_level: LogLevel) -> None:
    """Make Flask's app.logger flow into the root logger configured by smart logging."""
    if app.logger.handlers:
        app.logger.handlers.clear()
    app.logger.propagate = True
    app.logger.setLevel(_to_python_level(log_level))


def create_application(strict_env: bool = False):
    """
    Create and configure the Flask application (and with it the bridge runtime).
    - strict_env: whether to hard-fail on missing env (True for CLI, False for WSGI).
    """
    validate_environment(strict=strict_env)

    log_level = setup_smart_logging()
    app = create_app()
    _wire_app_logger(app, log_level)

    runtime = app.extensions["runtime"]
    atexit.register(runtime.stop)

    @app.before_request
    def _log_request():
        app.logger.debug("→ %s %s", request.method, request.path)

    return app


# --------------------------------------------------------------------------------------
# Local server (python run.py)
# --------------------------------------------------------------------------------------

def _resolve_server_config() -> Tuple[str, int]:
    host = os.getenv("HOST", "127.0.0.1")
    port = int(os.getenv("PORT", "8080"))
    return host, port


def _print_startup_info(host: str, port: int, log_level: LogLevel) -> None:
    print("Telegram ↔ Voiceflow Bridge Starting")
    print("=" * 60)
    print(f"Server:       http://{host}:{port}")
    print(f"Health check: http://{host}:{port}/health")
    print(f"Bot mode:     {os.getenv('BOT_MODE', 'polling')}")
    print(f"Streaming:    {os.getenv('VF_STREAMING', 'false')}")
    print(f"Environment:  {os.getenv('APP_ENV', 'development')}")
    print(f"Log level:    {log_level.name}")
    print(f"Process ID:   {os.getpid()}")
    print("=" * 60)


def main() -> None:
    log_level = setup_smart_logging()
    app = create_application(strict_env=True)

    host, port = _resolve_server_config()
    _print_startup_info(host, port, log_level)

    try:
        # the bridge loop lives in its own thread; never reload
        app.run(host=host, port=port, debug=False, use_reloader=False, threaded=True)
    except KeyboardInterrupt:
        print("\nShutting down gracefully...")
    except Exception as e:
        print(f"Server error: {e}")
        sys.exit(1)


# --------------------------------------------------------------------------------------
# WSGI entrypoint for Gunicorn: `gunicorn -w 1 run:app`
# --------------------------------------------------------------------------------------
if __name__ == "__main__":
    main()
else:
    app = create_application(strict_env=False)
