# vf_bridge/utils/__init__.py
"""
Expose helpers at package-level for convenience:

    from vf_bridge.utils import md_to_html, SSEParser
"""

from .formatter import clean_backend_text, esc, md_to_html, normalize_spacing  # noqa: F401
from .helpers import byte_len, text_of_trace, traces_of  # noqa: F401
from .sse import END_OF_STREAM, SSEParser, SSERecord, iter_sse  # noqa: F401

__all__ = [
    "clean_backend_text",
    "esc",
    "md_to_html",
    "normalize_spacing",
    "byte_len",
    "text_of_trace",
    "traces_of",
    "END_OF_STREAM",
    "SSEParser",
    "SSERecord",
    "iter_sse",
]
