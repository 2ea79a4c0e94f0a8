"""Incremental Server-Sent-Events parser."""

from __future__ import annotations

import codecs
from dataclasses import dataclass
from typing import Iterator, List, Optional


@dataclass(frozen=True)
class SSEEvent:
    event: str = "message"
    data: str = ""
    id: Optional[str] = None
    retry: Optional[int] = None


class SSEParser:
    """Turn chunks of an ``text/event-stream`` body into :class:`SSEEvent` objects.

    Follows the WHATWG dispatch rules: comment lines (``:``) are ignored,
    ``data`` lines are joined with ``\\n`` and an event is dispatched on a
    blank line.  Blocks that carry no ``data`` field are not dispatched, but
    a ``retry`` value is still recorded in :attr:`retry`.
    """

    def __init__(self) -> None:
        self._buffer = ""
        # multibyte characters may straddle network chunks
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._data: List[str] = []
        self._event: Optional[str] = None
        self._retry: Optional[int] = None
        self.last_event_id: Optional[str] = None
        self.retry: Optional[int] = None

    def feed(self, chunk: bytes | str) -> Iterator[SSEEvent]:
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._decoder.decode(bytes(chunk))
        text = self._buffer + chunk
        held = ""
        if text.endswith("\r"):
            # may be the first half of a CRLF split across chunks
            text, held = text[:-1], "\r"
        self._buffer = text.replace("\r\n", "\n").replace("\r", "\n")
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            event = self._process_line(line)
            if event is not None:
                yield event
        self._buffer += held

    def _process_line(self, line: str) -> Optional[SSEEvent]:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value
        elif field == "id":
            if "\0" not in value:
                self.last_event_id = value
        elif field == "retry":
            if value.isdigit():
                self._retry = int(value)
                self.retry = self._retry
        return None

    def _dispatch(self) -> Optional[SSEEvent]:
        data, event, retry = self._data, self._event, self._retry
        self._data, self._event, self._retry = [], None, None
        if not data:
            return None
        return SSEEvent(
            event=event or "message",
            data="\n".join(data),
            id=self.last_event_id,
            retry=retry,
        )


__all__ = ["SSEEvent", "SSEParser"]
