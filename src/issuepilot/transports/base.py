"""Command and event protocol shared by every engine transport.

A transport has two surfaces. Commands flow in through
:meth:`EngineTransport.send_command`. Events flow out through four
subscription methods, each of which returns an unsubscribe callable.
"""

from __future__ import annotations

import enum
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable

from issuepilot.engine.models import AuditRecord, EngineState, EngineStats, Plan, WorkItem
from issuepilot.errors import TransportDisposedError

logger = logging.getLogger(__name__)


class EventCategory(str, enum.Enum):
    """Event categories, named as they appear on the wire."""

    STATE_UPDATE = "stateUpdate"
    LOG = "log"
    APPROVAL_REQUEST = "approvalRequest"
    EVENT = "event"


class CommandType(str, enum.Enum):
    START = "start"
    STOP = "stop"
    APPROVE = "approve"
    REJECT = "reject"
    SKIP = "skip"


LOG_LEVELS = ("debug", "info", "warn", "error")


@dataclass(frozen=True)
class Command:
    """A controller command.

    Attributes:
        type: What to do.
        once: For ``start`` only; process a single item instead of looping.
    """

    type: CommandType
    once: bool = False

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type.value}
        if self.once:
            payload["options"] = {"once": True}
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Command:
        """Parse the wire shape; raises ``ValueError`` on an unknown type."""
        options = data.get("options") or {}
        if not isinstance(options, dict):
            raise ValueError("'options' must be an object")
        return cls(type=CommandType(data.get("type")), once=bool(options.get("once", False)))


@dataclass(frozen=True)
class CommandResult:
    ok: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": self.ok}
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(frozen=True)
class StateUpdate:
    """Snapshot pushed on every engine state transition."""

    state: EngineState
    item: WorkItem | None
    stats: EngineStats

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "item": self.item.to_dict() if self.item else None,
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateUpdate:
        item = data.get("item")
        return cls(
            state=EngineState(data["state"]),
            item=WorkItem.from_dict(item) if item else None,
            stats=EngineStats.from_dict(data.get("stats") or {}),
        )


@dataclass(frozen=True)
class LogEntry:
    level: str
    message: str
    timestamp: float = field(default_factory=time.time)
    context: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "level": self.level,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.context is not None:
            payload["context"] = self.context
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEntry:
        level = data["level"]
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {level!r}")
        context = data.get("context")
        return cls(
            level=level,
            message=str(data["message"]),
            timestamp=float(data.get("timestamp", 0.0)),
            context=dict(context) if context is not None else None,
        )


Listener = Callable[[Any], None]
Unsubscribe = Callable[[], None]


class ListenerRegistry:
    """Observer registry keyed by :class:`EventCategory`.

    :meth:`emit` iterates a snapshot of the current listeners, so a
    listener may unsubscribe itself (or others) during dispatch. A
    listener that raises is logged and does not stop the rest.
    """

    def __init__(self) -> None:
        self._listeners: dict[EventCategory, list[Listener]] = defaultdict(list)

    def add(self, category: EventCategory, listener: Listener) -> Unsubscribe:
        self._listeners[category].append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners[category].remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def count(self, category: EventCategory) -> int:
        return len(self._listeners.get(category, []))

    def emit(self, category: EventCategory, payload: Any) -> None:
        for listener in list(self._listeners.get(category, [])):
            try:
                listener(payload)
            except Exception as exc:
                logger.error("Listener error for %s: %s", category.value, exc)

    def clear(self) -> None:
        self._listeners.clear()


@runtime_checkable
class EngineTransport(Protocol):
    """What a controller (CLI, dashboard) talks to."""

    async def send_command(self, command: Command) -> CommandResult: ...

    def on_state_update(self, listener: Callable[[StateUpdate], None]) -> Unsubscribe: ...

    def on_log(self, listener: Callable[[LogEntry], None]) -> Unsubscribe: ...

    def on_approval_request(self, listener: Callable[[Plan], None]) -> Unsubscribe: ...

    def on_event(self, listener: Callable[[AuditRecord], None]) -> Unsubscribe: ...

    async def dispose(self) -> None: ...


class BaseTransport:
    """Subscription and disposal plumbing shared by the concrete transports."""

    def __init__(self) -> None:
        self._registry = ListenerRegistry()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def on_state_update(self, listener: Callable[[StateUpdate], None]) -> Unsubscribe:
        return self._registry.add(EventCategory.STATE_UPDATE, listener)

    def on_log(self, listener: Callable[[LogEntry], None]) -> Unsubscribe:
        return self._registry.add(EventCategory.LOG, listener)

    def on_approval_request(self, listener: Callable[[Plan], None]) -> Unsubscribe:
        return self._registry.add(EventCategory.APPROVAL_REQUEST, listener)

    def on_event(self, listener: Callable[[AuditRecord], None]) -> Unsubscribe:
        return self._registry.add(EventCategory.EVENT, listener)

    def _emit(self, category: EventCategory, payload: Any) -> None:
        if not self._disposed:
            self._registry.emit(category, payload)

    def _emit_log(self, level: str, message: str, context: dict[str, Any] | None = None) -> None:
        self._emit(EventCategory.LOG, LogEntry(level=level, message=message, context=context))

    def _assert_not_disposed(self) -> None:
        if self._disposed:
            raise TransportDisposedError(f"{type(self).__name__} has been disposed")
