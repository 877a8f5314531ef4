# vf_bridge/enums.py
from enum import Enum


class TraceType(str, Enum):
    TEXT = "text"
    CHOICE = "choice"
    VISUAL = "visual"
    IMAGE = "image"
    CARD = "card"
    CARD_V2 = "cardV2"
    CAROUSEL = "carousel"
    COMPLETION = "completion"


class CompletionPhase(str, Enum):
    """Lifecycle field of a streamed completion trace (payload.state)"""
    START = "start"
    CONTENT = "content"
    END = "end"


class KeyboardKind(str, Enum):
    NONE = "none"
    CHOICE = "choice"      # reply options from a choice trace
    CARD = "card"          # buttons belonging to a card; never overwritten


class MediaKind(str, Enum):
    PHOTO = "photo"
    DOCUMENT = "document"
    ANIMATION = "animation"


class SegmentKind(str, Enum):
    TEXT = "text"
    IMAGE = "image"
