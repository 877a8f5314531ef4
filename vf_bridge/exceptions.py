from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    """Base class for errors raised by the bridge."""


class PlatformError(BridgeError):
    """A Telegram API call failed (wraps the aiogram error)."""

    def __init__(self, operation: str, message: str) -> None:
        super().__init__(f"{operation}: {message}")
        self.operation = operation
        self.message = message


class BackendError(BridgeError):
    """The Voiceflow runtime call failed or returned a non-2xx status."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message if status is None else f"{message} (status={status})")
        self.status = status


class MediaDownloadError(BridgeError):
    """A media URL could not be fetched for re-upload."""
