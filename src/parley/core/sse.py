# src/parley/core/sse.py
"""
Server-Sent Events wire encoding.

Field order is id, event, retry, data. Multi-line data is split into one
`data:` line per physical line; every event ends with a blank line.

    id: 124
    event: message
    retry: 3000
    data: some data
    data: more data

    data: [DONE]

encode() returns one complete event. The HTTP transport yields each event
as its own StreamingResponse body chunk, and the ASGI server sends every
chunk as soon as it is yielded, so no extra flush is needed there.
write_event()/write_done() are for file-like sinks (sockets, stdout), which
they flush after every event.
"""
from __future__ import annotations
import dataclasses
import datetime as dt
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Protocol, Union

DONE_MARKER = "[DONE]"

# Standard transport headers for an event stream. X-Accel-Buffering disables
# nginx response buffering so events reach the client as they are written.
SSE_MEDIA_TYPE = "text/event-stream"
SSE_HEADERS: Dict[str, str] = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@dataclass(frozen=True)
class Event:
    """
    One SSE event. Only `data is None` suppresses the data field; an empty
    dict still renders as `data: {}`.
    """
    data: Any = None
    event: str = ""
    id: str = ""
    retry: int = 0


class Sink(Protocol):
    def write(self, data: bytes) -> Any: ...


def _escape(value: str) -> str:
    return value.replace("\n", "\\n").replace("\r", "\\r")


def _json_default(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (dt.datetime, dt.date)):
        return obj.isoformat()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def format_data(data: Any) -> str:
    """Render primitives as text; everything else as compact JSON."""
    if isinstance(data, str):
        return data
    if isinstance(data, (bytes, bytearray)):
        return bytes(data).decode("utf-8", errors="replace")
    if isinstance(data, bool):
        return "true" if data else "false"
    if isinstance(data, (int, float)):
        return str(data)
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"), default=_json_default)


def encode(event: Event) -> bytes:
    parts = []
    if event.id:
        parts.append(f"id: {_escape(event.id)}\n")
    if event.event:
        parts.append(f"event: {_escape(event.event)}\n")
    if event.retry > 0:
        parts.append(f"retry: {int(event.retry)}\n")
    if event.data is not None:
        for line in format_data(event.data).split("\n"):
            parts.append(f"data: {line}\n")
    parts.append("\n")
    return "".join(parts).encode("utf-8")


def encode_done() -> bytes:
    return f"data: {DONE_MARKER}\n\n".encode("utf-8")


def _flush(sink: Sink) -> None:
    flush = getattr(sink, "flush", None)
    if callable(flush):
        flush()


def write_event(sink: Sink, event: Event) -> None:
    """Write one event and flush immediately so the receiver sees it in real time."""
    sink.write(encode(event))
    _flush(sink)


def write_done(sink: Sink) -> None:
    sink.write(encode_done())
    _flush(sink)


def decode(payload: Union[bytes, str]) -> Iterator[Event]:
    """
    Parse an event-stream payload back into events (client side).
    Data lines are joined with newlines and kept as text; comments and
    unknown fields are ignored. A trailing event without its blank line is
    not dispatched.
    """
    text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
    fields: Dict[str, Any] = {}
    data: List[str] = []
    for line in text.replace("\r\n", "\n").split("\n"):
        if line == "":
            if fields or data:
                yield Event(
                    data="\n".join(data) if data else None,
                    event=fields.get("event", ""),
                    id=fields.get("id", ""),
                    retry=fields.get("retry", 0),
                )
            fields, data = {}, []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "data":
            data.append(value)
        elif name in ("id", "event"):
            fields[name] = value
        elif name == "retry" and value.isdigit():
            fields["retry"] = int(value)


def is_done(event: Event) -> bool:
    return event.data == DONE_MARKER and not event.event


def message_event(text: str, *, event_id: Optional[str] = None) -> Event:
    return Event(event="message", data={"content": text, "delta": text}, id=event_id or "")


def stopped_event(message_id: str) -> Event:
    return Event(event="stopped", data={"message_id": message_id})


def error_event(error: str) -> Event:
    return Event(event="error", data={"error": error})
