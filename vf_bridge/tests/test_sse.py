from __future__ import annotations

import pytest

from vf_bridge.utils.sse import END_OF_STREAM, SSEParser, iter_sse, make_event

STREAM = (
    ": keepalive\n"
    "event: trace\n"
    'data: {"type": "completion", "payload": {"state": "start"}}\n'
    "\n"
    "id: 7\n"
    "event: trace\n"
    'data: {"type": "text",\n'
    'data:  "payload": {"message": "hi"}}\n'
    "\n"
).encode("utf-8")


def _parse_all(chunks):
    parser = SSEParser()
    records = []
    for chunk in chunks:
        records.extend(parser.feed(chunk))
    records.extend(parser.close())
    return records


def test_records_and_terminal_end_of_stream():
    records = _parse_all([STREAM])
    assert [r.event for r in records] == ["trace", "trace", END_OF_STREAM]
    assert records[0].data == {"type": "completion", "payload": {"state": "start"}}
    # multi-line data joins with "\n" before JSON parsing
    assert records[1].data == {"type": "text", "payload": {"message": "hi"}}
    assert records[1].id == "7"
    assert records[-1].is_end_of_stream


def test_any_chunk_boundary_gives_same_records():
    expected = _parse_all([STREAM])
    one_byte = _parse_all([STREAM[i:i + 1] for i in range(len(STREAM))])
    odd = _parse_all([STREAM[i:i + 5] for i in range(0, len(STREAM), 5)])
    assert one_byte == expected
    assert odd == expected


def test_crlf_line_endings():
    records = _parse_all([b"event: end\r\ndata: {}\r\n\r\n"])
    assert records[0].event == "end"
    assert records[0].data == {}


def test_multibyte_character_split_across_chunks():
    raw = "data: héllo\n\n".encode("utf-8")
    split = raw.index(b"\xc3") + 1
    records = _parse_all([raw[:split], raw[split:]])
    assert records[0].data == "héllo"


def test_non_json_data_falls_back_to_raw_string():
    records = _parse_all([b"data: not json\n\n"])
    assert records[0].event == "message"
    assert records[0].data == "not json"


def test_blank_lines_and_comments_emit_nothing():
    records = _parse_all([b"\n\n: ping\n\n\n"])
    assert [r.event for r in records] == [END_OF_STREAM]


def test_close_flushes_unterminated_record():
    parser = SSEParser()
    assert parser.feed(b'event: end\ndata: {"ok": true}') == []
    records = parser.close()
    assert records[0].event == "end"
    assert records[0].data == {"ok": True}
    assert records[1].event == END_OF_STREAM
    assert parser.close() == []


def test_make_event_round_trips_through_parser():
    frame = make_event("trace", {"type": "text"}, event_id="3")
    records = _parse_all([frame.encode("utf-8")])
    assert records[0].event == "trace"
    assert records[0].id == "3"
    assert records[0].data == {"type": "text"}


@pytest.mark.asyncio
async def test_iter_sse_over_async_chunks():
    async def chunks():
        for i in range(0, len(STREAM), 11):
            yield STREAM[i:i + 11]

    events = [record.event async for record in iter_sse(chunks())]
    assert events == ["trace", "trace", END_OF_STREAM]
