"""Transports connecting a controller to a pipeline engine.

:class:`InProcessTransport` drives an engine in the same event loop;
:class:`RemoteTransport` drives one behind an :class:`EngineServer`.
"""

from issuepilot.transports.base import (
    BaseTransport,
    Command,
    CommandResult,
    CommandType,
    EngineTransport,
    EventCategory,
    ListenerRegistry,
    LogEntry,
    StateUpdate,
)
from issuepilot.transports.in_process import ApprovalCell, InProcessTransport
from issuepilot.transports.remote import RemoteTransport
from issuepilot.transports.server import EngineServer
from issuepilot.transports.wire import SSEFrameParser, decode_frame, encode_frame

__all__ = [
    "ApprovalCell",
    "BaseTransport",
    "Command",
    "CommandResult",
    "CommandType",
    "EngineServer",
    "EngineTransport",
    "EventCategory",
    "InProcessTransport",
    "ListenerRegistry",
    "LogEntry",
    "RemoteTransport",
    "SSEFrameParser",
    "StateUpdate",
    "decode_frame",
    "encode_frame",
]
