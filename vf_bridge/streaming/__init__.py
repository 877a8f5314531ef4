"""Streaming primitives: deferred tasks and content segmentation."""

from .deferred import Debouncer, SerialTaskQueue
from .segmenter import segment_content

__all__ = ["Debouncer", "SerialTaskQueue", "segment_content"]
