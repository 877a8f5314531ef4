from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional, Union

log = logging.getLogger(__name__)

END_OF_STREAM = "end-of-stream"


@dataclass
class SSERecord:
    event: str
    data: Any = None
    id: Optional[str] = None

    @property
    def is_end_of_stream(self) -> bool:
        return self.event == END_OF_STREAM


def make_event(event_type: str, data: Dict[str, Any], event_id: Optional[str] = None) -> str:
    """Serialize an SSE event frame with JSON payload."""
    payload = json.dumps(data, ensure_ascii=False)
    head = f"id: {event_id}\n" if event_id is not None else ""
    return f"{head}event: {event_type}\ndata: {payload}\n\n"


class SSEParser:
    """
    Incremental server-sent-events parser.

    Feed it chunks exactly as they come off the socket; chunk boundaries may
    fall anywhere, including inside a line or a multi-byte character.
    A blank line dispatches the pending record. `close()` flushes whatever is
    buffered and appends the terminal end-of-stream record.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._event: Optional[str] = None
        self._id: Optional[str] = None
        self._data_lines: List[str] = []
        self._closed = False

    def feed(self, chunk: Union[bytes, str]) -> List[SSERecord]:
        if self._closed:
            raise RuntimeError("SSE parser already closed")
        text = self._decoder.decode(chunk) if isinstance(chunk, (bytes, bytearray)) else chunk
        self._buffer += text

        records: List[SSERecord] = []
        while True:
            idx = self._buffer.find("\n")
            if idx == -1:
                break
            line = self._buffer[:idx]
            self._buffer = self._buffer[idx + 1:]
            if line.endswith("\r"):
                line = line[:-1]
            record = self._process_line(line)
            if record is not None:
                records.append(record)
        return records

    def close(self) -> List[SSERecord]:
        if self._closed:
            return []
        records: List[SSERecord] = []
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        if tail:
            record = self._process_line(tail.rstrip("\r"))
            if record is not None:
                records.append(record)
        record = self._dispatch()
        if record is not None:
            records.append(record)
        records.append(SSERecord(event=END_OF_STREAM))
        self._closed = True
        return records

    def _process_line(self, line: str) -> Optional[SSERecord]:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            # comment / keepalive
            return None

        field_name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field_name == "event":
            self._event = value
        elif field_name == "id":
            self._id = value
        elif field_name == "data":
            self._data_lines.append(value)
        else:
            log.debug(f"SSE_UNKNOWN_FIELD | field={field_name}")
        return None

    def _dispatch(self) -> Optional[SSERecord]:
        if self._event is None and self._id is None and not self._data_lines:
            return None

        raw = "\n".join(self._data_lines)
        try:
            data: Any = json.loads(raw)
        except ValueError:
            data = raw

        record = SSERecord(event=self._event or "message", data=data, id=self._id)
        self._event = None
        self._id = None
        self._data_lines = []
        return record


async def iter_sse(chunks: AsyncIterable[bytes]) -> AsyncIterator[SSERecord]:
    """Yield SSE records from an async byte stream, ending with end-of-stream."""
    parser = SSEParser()
    async for chunk in chunks:
        for record in parser.feed(chunk):
            yield record
    for record in parser.close():
        yield record
