"""Shared fixtures: testing config and a recording stand-in for the Telegram sink."""

from __future__ import annotations

import os

os.environ.setdefault("APP_ENV", "testing")

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

import pytest

from vf_bridge.callback_stash import CallbackStash
from vf_bridge.enums import MediaKind
from vf_bridge.exceptions import PlatformError
from vf_bridge.media_cache import MediaCache
from vf_bridge.media_resolver import MediaResolver
from vf_bridge.models import MediaBuffer, SentMessage
from vf_bridge.trace_dispatcher import KeyboardTargetTracker


@dataclass
class Call:
    op: str
    args: Dict[str, Any] = field(default_factory=dict)


class FakeSink:
    """Records every platform call; failures can be queued per operation."""

    def __init__(self, chat_id: int = 10) -> None:
        self.calls: List[Call] = []
        self.attempts: Dict[str, int] = {}
        self.texts: Dict[int, str] = {}
        self._failures: Dict[str, List[Exception]] = {}
        self._next_id = 100
        # (kind, source, media) -> True to accept; source is "url" | "buffer" | "handle"
        self.media_rule: Callable[[MediaKind, str, Any], bool] = lambda kind, source, media: True

    def fail_next(self, op: str, times: int = 1) -> None:
        self._failures.setdefault(op, []).extend(PlatformError(op, "injected") for _ in range(times))

    def _enter(self, op: str) -> None:
        self.attempts[op] = self.attempts.get(op, 0) + 1
        queued = self._failures.get(op)
        if queued:
            raise queued.pop(0)

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def ops(self, op: str) -> List[Dict[str, Any]]:
        return [c.args for c in self.calls if c.op == op]

    def op_names(self) -> List[str]:
        return [c.op for c in self.calls if c.op != "send_typing"]

    async def send_text(self, chat_id: int, html: str, reply_markup=None) -> SentMessage:
        self._enter("send_text")
        message_id = self._new_id()
        self.texts[message_id] = html
        self.calls.append(Call("send_text", {"chat_id": chat_id, "html": html, "reply_markup": reply_markup, "message_id": message_id}))
        return SentMessage(chat_id, message_id)

    async def edit_text(self, chat_id: int, message_id: int, html: str) -> None:
        self._enter("edit_text")
        self.texts[message_id] = html
        self.calls.append(Call("edit_text", {"chat_id": chat_id, "message_id": message_id, "html": html}))

    async def edit_keyboard(self, chat_id: int, message_id: int, reply_markup) -> None:
        self._enter("edit_keyboard")
        self.calls.append(Call("edit_keyboard", {"chat_id": chat_id, "message_id": message_id, "reply_markup": reply_markup}))

    async def send_media(
        self,
        chat_id: int,
        kind: MediaKind,
        media: Union[str, MediaBuffer],
        caption: Optional[str] = None,
        reply_markup=None,
    ) -> SentMessage:
        self._enter("send_media")
        if isinstance(media, MediaBuffer):
            source = "buffer"
        elif media.startswith("file-"):
            source = "handle"
        else:
            source = "url"
        if not self.media_rule(kind, source, media):
            raise PlatformError(f"send_{kind.value}", f"rejected {source}")
        message_id = self._new_id()
        self.calls.append(Call("send_media", {
            "chat_id": chat_id, "kind": kind, "media": media, "source": source,
            "caption": caption, "message_id": message_id,
        }))
        return SentMessage(chat_id, message_id, {kind: f"file-{kind.value}-{message_id}"})

    async def delete_message(self, chat_id: int, message_id: int) -> None:
        self._enter("delete_message")
        self.texts.pop(message_id, None)
        self.calls.append(Call("delete_message", {"chat_id": chat_id, "message_id": message_id}))

    async def send_typing(self, chat_id: int) -> None:
        self.calls.append(Call("send_typing", {"chat_id": chat_id}))


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def button_texts(markup) -> List[str]:
    return [row[0].text for row in markup.inline_keyboard]


def button_data(markup) -> List[str]:
    return [row[0].callback_data for row in markup.inline_keyboard]


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def media_cache(tmp_path) -> MediaCache:
    return MediaCache(tmp_path / "media-cache.json", max_entries=50, save_delay=0.0)


@pytest.fixture
def resolver(media_cache) -> MediaResolver:
    return MediaResolver(media_cache, None, force_upload=False, debug=False)


@pytest.fixture
def stash() -> CallbackStash:
    return CallbackStash(ttl_seconds=900)


@pytest.fixture
def tracker() -> KeyboardTargetTracker:
    return KeyboardTargetTracker()
