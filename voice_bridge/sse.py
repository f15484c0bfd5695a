"""
Incremental decoder for `text/event-stream` framing.

Events are separated by a blank line. Each event has an optional `event:`
line (default type "message") and one or more `data:` lines; data lines are
joined with newlines and JSON-decoded when possible, otherwise kept as text.
An event without data is skipped.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, List, Optional


@dataclass(frozen=True)
class SSEEvent:
    type: str
    data: Any


def parse_event(block: str) -> Optional[SSEEvent]:
    event_type = "message"
    data_lines: List[str] = []
    for line in block.split("\n"):
        if line.startswith("event:"):
            event_type = line[6:].strip() or "message"
        elif line.startswith("data:"):
            data_lines.append(line[5:].strip())

    if not data_lines:
        return None

    data = "\n".join(data_lines).strip()
    try:
        return SSEEvent(type=event_type, data=json.loads(data))
    except json.JSONDecodeError:
        return SSEEvent(type=event_type, data=data)


class SSEDecoder:
    """
    Feed decoded text chunks, get back complete events.

    Usage:
        decoder = SSEDecoder()
        for chunk in chunks:
            for event in decoder.feed(chunk):
                ...
        for event in decoder.flush():
            ...
    """

    def __init__(self):
        self._buffer = ""

    def feed(self, chunk: str) -> List[SSEEvent]:
        self._buffer = (self._buffer + chunk).replace("\r\n", "\n")
        events: List[SSEEvent] = []
        while True:
            boundary = self._buffer.find("\n\n")
            if boundary == -1:
                break
            block = self._buffer[:boundary]
            self._buffer = self._buffer[boundary + 2:]
            event = parse_event(block)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> List[SSEEvent]:
        """Decode whatever is left once the stream has ended."""
        remainder = self._buffer.strip()
        self._buffer = ""
        if not remainder:
            return []
        event = parse_event(remainder)
        return [event] if event is not None else []
