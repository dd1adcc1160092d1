"""Server-sent events line parser.

Learn: SSE framing is line based. `event:`, `data:` and `id:` lines
accumulate into the current event, multiple `data:` lines join with
newlines, lines starting with ":" are comments, and a blank line ends
the event. httpx's aiter_lines() already strips the line terminators.
"""

import json
from dataclasses import dataclass
from typing import Any, Optional

from bosbase.events.types import DEFAULT_EVENT


@dataclass
class SSEEvent:
    event: str = DEFAULT_EVENT
    data: str = ""
    id: str = ""

    def json(self) -> dict[str, Any]:
        """The data parsed as a JSON object, or {} when empty or not an object."""
        if not self.data:
            return {}
        try:
            payload = json.loads(self.data)
        except ValueError:
            return {}
        return payload if isinstance(payload, dict) else {}


class SSEParser:
    """Feed one line at a time; get an SSEEvent back when one completes."""

    def __init__(self):
        self._reset()

    def _reset(self) -> None:
        self._event = ""
        self._data: list[str] = []
        self._id = ""
        self._seen = False

    def feed_line(self, line: str) -> Optional[SSEEvent]:
        line = line.rstrip("\r\n")
        if not line:
            if not self._seen:
                return None
            event = SSEEvent(
                event=self._event or DEFAULT_EVENT,
                data="\n".join(self._data),
                id=self._id,
            )
            self._reset()
            return event

        if line.startswith(":"):
            return None

        field, sep, value = line.partition(":")
        if not sep:
            return None
        value = value.lstrip(" ")

        if field == "event":
            self._event = value
        elif field == "data":
            self._data.append(value)
        elif field == "id":
            self._id = value
        else:
            # retry: and unknown fields
            return None
        self._seen = True
        return None
