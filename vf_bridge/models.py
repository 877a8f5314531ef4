"""
Dataclass models shared by the rendering pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from .enums import KeyboardKind, MediaKind, SegmentKind


@dataclass(frozen=True)
class TurnContext:
    """Who a turn is for and where its output goes."""
    user_id: int
    chat_id: int


@dataclass
class MessageRef:
    chat_id: int
    message_id: int
    keyboard_kind: KeyboardKind = KeyboardKind.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chat_id": self.chat_id,
            "message_id": self.message_id,
            "keyboard_kind": self.keyboard_kind.value,
        }


@dataclass
class SentMessage:
    """What the platform sink hands back after a send.

    `handles` maps a media kind to the platform file id issued for it, so the
    media resolver can cache it without knowing the platform's message shape.
    """
    chat_id: int
    message_id: int
    handles: Dict[MediaKind, str] = field(default_factory=dict)

    def ref(self, keyboard_kind: KeyboardKind = KeyboardKind.NONE) -> MessageRef:
        return MessageRef(self.chat_id, self.message_id, keyboard_kind)


@dataclass
class MediaBuffer:
    data: bytes
    filename: str


@dataclass(frozen=True)
class Segment:
    kind: SegmentKind
    value: str

    @property
    def is_image(self) -> bool:
        return self.kind is SegmentKind.IMAGE


@dataclass(frozen=True)
class GalleryItem:
    """An image that stands on its own line, with the caption text around it."""
    image_url: str
    title: str = ""
    menu_url: Optional[str] = None


@dataclass
class CompletionState:
    """Per-user state of one streamed completion message."""
    chat_id: int
    target_message: Optional[MessageRef] = None
    last_rendered_markup: str = ""
    last_edit_at: float = 0.0
    pending_markup: Optional[str] = None
    accumulated_text: str = ""
    is_streaming: bool = False
    has_any_content: bool = False
    stream_ended_at: Optional[float] = None
    sent_image_urls: Set[str] = field(default_factory=set)
    finalized_offset: int = 0
    content_seq: int = 0
    touched_at: float = 0.0

    def summary(self) -> Dict[str, Any]:
        return {
            "streaming": self.is_streaming,
            "chars": len(self.accumulated_text),
            "finalized_offset": self.finalized_offset,
            "images_sent": len(self.sent_image_urls),
            "open_message": self.target_message.to_dict() if self.target_message else None,
            "stream_ended_at": self.stream_ended_at,
        }


@dataclass
class MediaCacheEntry:
    kind: MediaKind
    file_id: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind.value, "fileId": self.file_id}

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "MediaCacheEntry":
        return cls(kind=MediaKind(raw["kind"]), file_id=str(raw["fileId"]))


@dataclass
class StashEntry:
    owner_id: int
    payload: str
    created_at: float


@dataclass
class SessionRecord:
    last_ts: float
    last_day: str

    def to_dict(self) -> Dict[str, Any]:
        return {"last_ts": self.last_ts, "last_day": self.last_day}
