"""
Bridge configuration.
Class-based settings read from the environment, one class per deployment flavour.
"""
from __future__ import annotations

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

_TRUTHY = {"1", "true", "yes", "on"}


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in _TRUTHY


class BaseConfig:
    # Telegram
    TELEGRAM_BOT_TOKEN: str = os.getenv("TELEGRAM_BOT_TOKEN", "")
    BOT_MODE: str = os.getenv("BOT_MODE", "polling").lower()
    WEBHOOK_URL: str = os.getenv("WEBHOOK_URL", "")
    WEBHOOK_SECRET: str = os.getenv("WEBHOOK_SECRET", "")
    HOST: str = os.getenv("HOST", "127.0.0.1")
    PORT: int = int(os.getenv("PORT", "8080"))

    # Voiceflow runtime
    VF_API_KEY: str = os.getenv("VF_API_KEY", "")
    VF_RUNTIME_URL: str = os.getenv("VF_RUNTIME_URL", "https://general-runtime.voiceflow.com").rstrip("/")
    VF_PROJECT_ID: str = os.getenv("VF_PROJECT_ID", "")
    VF_VERSION_ID: str = os.getenv("VF_VERSION_ID", "")
    VF_USE_VERSION_HEADER: bool = _flag("VF_USE_VERSION_HEADER", "false")
    # Streaming interaction endpoint (SSE) instead of the buffered JSON one
    VF_STREAMING: bool = _flag("VF_STREAMING", "false")
    VF_TIMEOUT_SECONDS: float = float(os.getenv("VF_TIMEOUT_SECONDS", "45"))
    VF_USER_PREFIX: str = os.getenv("VF_USER_PREFIX", "telegram_")

    # Media
    MEDIA_FORCE_UPLOAD: bool = _flag("MEDIA_FORCE_UPLOAD", "true")
    DEBUG_MEDIA: bool = _flag("DEBUG_MEDIA", "false")
    MEDIA_CACHE_PATH: str = os.getenv("MEDIA_CACHE_PATH", str(BASE_DIR / "media-cache.json"))
    MEDIA_CACHE_MAX_ENTRIES: int = int(os.getenv("MEDIA_CACHE_MAX_ENTRIES", "1000"))
    MEDIA_CACHE_SAVE_DELAY: float = float(os.getenv("MEDIA_CACHE_SAVE_DELAY", "0.4"))
    MEDIA_MAX_DOWNLOAD_BYTES: int = int(os.getenv("MEDIA_MAX_DOWNLOAD_BYTES", str(50 * 1024 * 1024)))

    # Streamed completion rendering
    STREAM_MIN_FIRST_CHARS: int = int(os.getenv("STREAM_MIN_FIRST_CHARS", "8"))
    STREAM_FIRST_FORCE_CHARS: int = int(os.getenv("STREAM_FIRST_FORCE_CHARS", "80"))
    STREAM_MIN_EDIT_INTERVAL: float = float(os.getenv("STREAM_MIN_EDIT_INTERVAL", "1.0"))
    STREAM_DEBOUNCE_DELAY: float = float(os.getenv("STREAM_DEBOUNCE_DELAY", "0.5"))
    STREAM_DEDUP_WINDOW: float = float(os.getenv("STREAM_DEDUP_WINDOW", "120"))

    # Trace dispatch
    KEYBOARD_RETRY_DELAY: float = float(os.getenv("KEYBOARD_RETRY_DELAY", "0.5"))
    CAROUSEL_CARD_DELAY: float = float(os.getenv("CAROUSEL_CARD_DELAY", "0.25"))
    CHOICE_PROMPT_TEXT: str = os.getenv("CHOICE_PROMPT_TEXT", "Choose an option:")
    ERROR_REPLY_TEXT: str = os.getenv("ERROR_REPLY_TEXT", "Sorry, something went wrong. Please try again.")
    VOICE_UNSUPPORTED_TEXT: str = os.getenv(
        "VOICE_UNSUPPORTED_TEXT", "Sorry, I can't listen to voice messages yet. Please type your message."
    )
    TYPING_INTERVAL: float = float(os.getenv("TYPING_INTERVAL", "4.5"))

    # Callback stash and idle eviction
    CALLBACK_TTL_SECONDS: float = float(os.getenv("CALLBACK_TTL_SECONDS", str(15 * 60)))
    SWEEP_INTERVAL_SECONDS: float = float(os.getenv("SWEEP_INTERVAL_SECONDS", str(5 * 60)))
    USER_STATE_TTL_SECONDS: float = float(os.getenv("USER_STATE_TTL_SECONDS", str(24 * 3600)))

    # Sessions / auto reset
    SESSION_BACKEND: str = os.getenv("SESSION_BACKEND", "memory").lower()
    SESSION_RESET_HOURS: float = float(os.getenv("SESSION_RESET_HOURS", "24"))
    SESSION_RESET_ON_DAY_CHANGE: bool = _flag("SESSION_RESET_ON_DAY_CHANGE", "true")
    LOCAL_UTC_OFFSET_HOURS: float = float(os.getenv("LOCAL_UTC_OFFSET_HOURS", "0"))

    # Redis (SESSION_BACKEND=redis)
    REDIS_HOST: str = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT: int = int(os.getenv("REDIS_PORT", 6379))
    REDIS_DB: int = int(os.getenv("REDIS_DB", 0))
    REDIS_TTL_SECONDS: int = int(os.getenv("REDIS_TTL_SECONDS", str(7 * 24 * 3600)))

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


class DevelopmentConfig(BaseConfig):
    DEBUG: bool = True


class ProductionConfig(BaseConfig):
    DEBUG: bool = False


class TestingConfig(BaseConfig):
    TESTING: bool = True
    REDIS_DB: int = 15
    MEDIA_CACHE_SAVE_DELAY: float = 0.0
    STREAM_MIN_EDIT_INTERVAL: float = 0.0
    STREAM_DEBOUNCE_DELAY: float = 0.01
    KEYBOARD_RETRY_DELAY: float = 0.0
    CAROUSEL_CARD_DELAY: float = 0.0


def get_config() -> BaseConfig:
    """Get configuration instance directly - no complex manager."""
    env = os.getenv("APP_ENV", "development").lower()
    mapping = {
        "development": DevelopmentConfig,
        "production": ProductionConfig,
        "testing": TestingConfig,
        "test": TestingConfig,
    }
    config_class = mapping.get(env, DevelopmentConfig)
    cfg = config_class()

    import logging
    log = logging.getLogger(__name__)
    if not hasattr(get_config, "_logged_startup"):
        log.info(f"⚙️ CONFIG_STARTUP | env={env} | config_class={config_class.__name__}")
        log.info(
            f"🤖 VF_CONFIG | runtime={cfg.VF_RUNTIME_URL} | streaming={cfg.VF_STREAMING} "
            f"| version_header={cfg.VF_USE_VERSION_HEADER} | timeout={cfg.VF_TIMEOUT_SECONDS}s"
        )
        log.info(
            f"🖼️ MEDIA_CONFIG | force_upload={cfg.MEDIA_FORCE_UPLOAD} | cache={cfg.MEDIA_CACHE_PATH} "
            f"| max_entries={cfg.MEDIA_CACHE_MAX_ENTRIES}"
        )
        log.info(
            f"💾 SESSION_CONFIG | backend={cfg.SESSION_BACKEND} | reset_hours={cfg.SESSION_RESET_HOURS} "
            f"| reset_on_day_change={cfg.SESSION_RESET_ON_DAY_CHANGE}"
        )
        get_config._logged_startup = True

    return cfg
