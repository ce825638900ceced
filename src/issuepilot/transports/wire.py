"""Server-sent-events framing for the remote transport.

A frame is one ``event:`` line naming an :class:`EventCategory` plus one
or more ``data:`` lines whose newline-joined contents are JSON. Frames
are separated by a blank line.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from issuepilot.engine.models import AuditRecord, Plan
from issuepilot.errors import PipelineError
from issuepilot.transports.base import EventCategory, LogEntry, StateUpdate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Frame:
    event: str
    data: str


def event_to_wire(category: EventCategory, payload: Any) -> dict[str, Any]:
    """Convert an event payload to its JSON-compatible dict."""
    return payload.to_dict()


def event_from_wire(category: EventCategory, data: dict[str, Any]) -> Any:
    """Rebuild the typed payload for *category*.

    Raises:
        ValueError: If *data* does not match the category's shape.
    """
    if not isinstance(data, dict):
        raise ValueError(
            f"Malformed {category.value} payload: expected an object, got {type(data).__name__}"
        )
    try:
        if category == EventCategory.STATE_UPDATE:
            return StateUpdate.from_dict(data)
        if category == EventCategory.LOG:
            return LogEntry.from_dict(data)
        if category == EventCategory.APPROVAL_REQUEST:
            return Plan.from_dict(data)
        return AuditRecord.from_dict(data)
    except (KeyError, TypeError, AttributeError, ValueError, PipelineError) as exc:
        raise ValueError(f"Malformed {category.value} payload: {exc}") from exc


def encode_frame(category: EventCategory, payload: Any) -> str:
    """Serialize one event as an SSE frame, terminated by a blank line."""
    body = json.dumps(event_to_wire(category, payload))
    lines = [f"event: {category.value}"]
    lines.extend(f"data: {line}" for line in body.split("\n"))
    return "\n".join(lines) + "\n\n"


def _field_value(line: str, name: str) -> str:
    value = line[len(name) + 1 :]
    if value.startswith(" "):
        value = value[1:]
    return value


class SSEFrameParser:
    """Incremental SSE parser.

    Feed raw text chunks as they arrive; complete frames are returned as
    soon as their terminating blank line has been seen. Partial frames
    are buffered across calls. Comment lines (starting with ``:``) and
    unknown fields are ignored.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._carry = ""

    def feed(self, chunk: str) -> list[Frame]:
        # A trailing CR may be the first half of a CRLF split across chunks.
        text, self._carry = self._carry + chunk, ""
        if text.endswith("\r"):
            text, self._carry = text[:-1], "\r"
        self._buffer += text.replace("\r\n", "\n").replace("\r", "\n")
        frames: list[Frame] = []
        while "\n\n" in self._buffer:
            block, self._buffer = self._buffer.split("\n\n", 1)
            frame = self._parse_block(block)
            if frame is not None:
                frames.append(frame)
        return frames

    def reset(self) -> None:
        self._buffer = ""
        self._carry = ""

    @staticmethod
    def _parse_block(block: str) -> Frame | None:
        event = ""
        data: list[str] = []
        for line in block.split("\n"):
            if not line or line.startswith(":"):
                continue
            if line.startswith("event:"):
                event = _field_value(line, "event")
            elif line.startswith("data:"):
                data.append(_field_value(line, "data"))
        if not event or not data:
            return None
        return Frame(event=event, data="\n".join(data))


def decode_frame(frame: Frame) -> tuple[EventCategory, Any] | None:
    """Turn a frame into ``(category, payload)``.

    Returns ``None`` for unknown event types and unparseable payloads.
    """
    try:
        category = EventCategory(frame.event)
    except ValueError:
        logger.debug("Ignoring unknown event type %r", frame.event)
        return None
    try:
        data = json.loads(frame.data)
        return category, event_from_wire(category, data)
    except ValueError as exc:
        logger.debug("Dropping unparseable %s frame: %s", frame.event, exc)
        return None
