"""
Smart, modular logging for the bridge.
Provides clean, contextual per-turn logs with configurable verbosity levels.
"""

import asyncio
import functools
import logging
import os
import sys
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class LogLevel(Enum):
    MINIMAL = 1      # Only turn boundaries and errors
    STANDARD = 2     # Key decisions and state changes
    DETAILED = 3     # Per-trace rendering and media strategy
    DEBUG = 4        # Everything including API calls


class SmartLogger:
    def __init__(self, name: str, level: LogLevel = LogLevel.STANDARD):
        self.logger = logging.getLogger(name)
        self.level = level
        self._request_contexts: Dict[Any, str] = {}

    def set_level(self, level: LogLevel):
        """Change logging verbosity at runtime"""
        self.level = level

    def _should_log(self, required_level: LogLevel) -> bool:
        return self.level.value >= required_level.value

    def _format_request_id(self, user_id: Any) -> str:
        timestamp = datetime.now().strftime('%H%M%S')
        return f"{str(user_id)[-6:]}_{timestamp}"

    def _req(self, user_id: Any) -> str:
        return self._request_contexts.get(user_id, "unknown")

    def _clean_log(self, level: str, emoji: str, category: str, message: str, **kwargs):
        details = " | ".join([f"{k}={v}" for k, v in kwargs.items() if v is not None])
        if details:
            full_message = f"{emoji} {category} | {message} | {details}"
        else:
            full_message = f"{emoji} {category} | {message}"

        getattr(self.logger, level.lower())(full_message)

    # ═══════════════════════════════════════════════════════════
    # TURN EVENTS
    # ═══════════════════════════════════════════════════════════

    def turn_start(self, user_id: Any, action_type: str, preview: Optional[str] = None):
        if not self._should_log(LogLevel.MINIMAL):
            return

        req_id = self._format_request_id(user_id)
        self._request_contexts[user_id] = req_id
        if preview and len(preview) > 50:
            preview = preview[:50] + "..."
        self._clean_log("info", "🚀", "TURN_START", action_type, req=req_id, text=preview)

    def flow_decision(self, user_id: Any, decision: str, reason: str = None):
        if not self._should_log(LogLevel.STANDARD):
            return
        self._clean_log("info", "🎯", "FLOW", decision, req=self._req(user_id), reason=reason)

    def turn_complete(self, user_id: Any, traces: int, elapsed_time: float = None):
        if not self._should_log(LogLevel.MINIMAL):
            return

        extras = {"req": self._req(user_id), "traces": traces}
        if elapsed_time is not None:
            extras["time"] = f"{elapsed_time:.3f}s"
        self._clean_log("info", "✅", "TURN_DONE", "rendered", **extras)
        self._request_contexts.pop(user_id, None)

    # ═══════════════════════════════════════════════════════════
    # DETAILED EVENTS
    # ═══════════════════════════════════════════════════════════

    def trace_rendered(self, user_id: Any, trace_type: str, messages: int = None, suppressed: bool = False):
        if not self._should_log(LogLevel.DETAILED):
            return
        self._clean_log(
            "info", "🧩", "TRACE", trace_type,
            req=self._req(user_id), messages=messages, suppressed=suppressed or None,
        )

    def keyboard_attached(self, user_id: Any, kind: str, target: str, ok: bool = True):
        if not self._should_log(LogLevel.DETAILED):
            return
        self._clean_log("info", "⌨️", "KEYBOARD", kind, req=self._req(user_id), target=target, ok=ok)

    def stream_phase(self, user_id: Any, phase: str, chars: int = None):
        if not self._should_log(LogLevel.DETAILED):
            return
        self._clean_log("info", "📡", "STREAM", phase, req=self._req(user_id), chars=chars)

    # ═══════════════════════════════════════════════════════════
    # ALWAYS-ON / DEBUG EVENTS
    # ═══════════════════════════════════════════════════════════

    def error_occurred(self, user_id: Any, error_type: str, operation: str, error_msg: str = None):
        # Errors are always logged regardless of level
        self._clean_log("error", "❌", "ERROR", f"{error_type} in {operation}",
                        req=self._req(user_id), msg=error_msg)

    def warning(self, user_id: Any, warning_type: str, details: str = None):
        if not self._should_log(LogLevel.STANDARD):
            return
        self._clean_log("warning", "⚠️", "WARNING", warning_type, req=self._req(user_id), details=details)

    def debug_state(self, user_id: Any, state_name: str, state_data: Dict[str, Any]):
        if not self._should_log(LogLevel.DEBUG):
            return
        # Only show keys and sizes, not full data
        summary = {k: len(v) if isinstance(v, (list, dict, str)) else str(v)[:20]
                   for k, v in state_data.items()}
        self._clean_log("debug", "🔍", "STATE", state_name, req=self._req(user_id), **summary)

    def api_call(self, user_id: Any, service: str, operation: str, status: str = "started"):
        if not self._should_log(LogLevel.DEBUG):
            return
        emoji = "📡" if status == "started" else "✅" if status == "success" else "❌"
        self._clean_log("debug", emoji, "API", f"{service}.{operation}", req=self._req(user_id), status=status)


# ═══════════════════════════════════════════════════════════════════════════════
# DECORATOR FOR AUTOMATIC LOGGING
# ═══════════════════════════════════════════════════════════════════════════════

def log_method(operation_name: str = None):
    """Log entry/exit of an async handler; errors are logged and re-raised."""
    def decorator(func):
        @functools.wraps(func)
        async def async_wrapper(self, *args, **kwargs):
            user_id = "unknown"
            for arg in args:
                if hasattr(arg, 'user_id'):
                    user_id = arg.user_id
                    break

            op_name = operation_name or func.__name__
            smart_log = getattr(self, 'smart_log', None)

            if smart_log:
                smart_log.debug_state(user_id, f"{op_name}_start", {})
            try:
                result = await func(self, *args, **kwargs)
                if smart_log:
                    smart_log.debug_state(user_id, f"{op_name}_complete", {})
                return result
            except Exception as e:
                if smart_log:
                    smart_log.error_occurred(user_id, type(e).__name__, op_name, str(e))
                raise

        if not asyncio.iscoroutinefunction(func):
            raise TypeError("log_method only wraps coroutine functions")
        return async_wrapper
    return decorator


# ═══════════════════════════════════════════════════════════════════════════════
# GLOBAL LOGGER INSTANCES AND CONFIGURATION
# ═══════════════════════════════════════════════════════════════════════════════

_loggers: Dict[str, SmartLogger] = {}


def get_smart_logger(module_name: str, level: LogLevel = None) -> SmartLogger:
    """Get or create a smart logger for a module"""
    if module_name not in _loggers:
        default_level = getattr(LogLevel, os.getenv('BOT_LOG_LEVEL', 'STANDARD').upper(), LogLevel.STANDARD)
        _loggers[module_name] = SmartLogger(module_name, level or default_level)

    if level:
        _loggers[module_name].set_level(level)

    return _loggers[module_name]


def configure_logging(level: LogLevel = LogLevel.STANDARD,
                      format_string: str = None,
                      silence_external: bool = True):
    """Configure the entire logging system"""
    if not format_string:
        format_string = '%(asctime)s | %(message)s'

    logging.basicConfig(
        level=logging.DEBUG if level == LogLevel.DEBUG else logging.INFO,
        format=format_string,
        datefmt='%H:%M:%S',
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    if silence_external:
        logging.getLogger('aiohttp.access').setLevel(logging.WARNING)
        logging.getLogger('aiogram.event').setLevel(logging.WARNING)
        logging.getLogger('werkzeug').setLevel(logging.WARNING)
        logging.getLogger('urllib3').setLevel(logging.WARNING)

    for smart_logger in _loggers.values():
        smart_logger.set_level(level)
