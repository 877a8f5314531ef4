"""
Utility helpers
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

_WS = re.compile(r"\s+")


def slate_to_text(slate: Optional[Dict[str, Any]]) -> str:
    """Flatten a Slate document ({content: [{children: [{text}]}]}) to lines."""
    if not isinstance(slate, dict):
        return ""
    lines: List[str] = []
    for block in slate.get("content") or []:
        if not isinstance(block, dict):
            continue
        line = "".join(
            str(child.get("text"))
            for child in block.get("children") or []
            if isinstance(child, dict) and child.get("text")
        )
        if line:
            lines.append(line)
    return "\n".join(lines)


def text_of_trace(trace: Dict[str, Any]) -> str:
    payload = trace.get("payload") or {}
    if not isinstance(payload, dict):
        return str(payload)
    message = payload.get("message")
    if message is not None:
        return str(message)
    return slate_to_text(payload.get("slate"))


def traces_of(response: Any) -> List[Dict[str, Any]]:
    """Backend responses are either a bare trace list or {traces: [...]}."""
    if isinstance(response, list):
        traces = response
    elif isinstance(response, dict) and isinstance(response.get("traces"), list):
        traces = response["traces"]
    else:
        return []
    return [t for t in traces if isinstance(t, dict)]


def byte_len(text: str) -> int:
    return len(text.encode("utf-8"))


def squash(text: str) -> str:
    """Whitespace-insensitive form used to compare rendered text."""
    return _WS.sub("", text or "")


def local_day_stamp(ts: float, utc_offset_hours: float = 0.0) -> str:
    shifted = datetime.fromtimestamp(ts, tz=timezone.utc) + timedelta(hours=utc_offset_hours)
    return shifted.strftime("%Y-%m-%d")

