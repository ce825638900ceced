"""Same-process transport.

Wires a controller straight to a :class:`PipelineEngine` with no
serialization. The host builds the engine with the handlers returned by
the ``create_*`` factories so engine callbacks become transport events::

    transport = InProcessTransport()
    engine = PipelineEngine(
        config, tracker, agent,
        logger=transport.create_logger(),
        on_state_change=transport.create_state_change_handler(),
        on_event=transport.create_event_handler(),
        approval_handler=transport.create_approval_handler(),
    )
    transport.attach(engine)
"""

from __future__ import annotations

import asyncio
import enum
from typing import Any, Callable

from issuepilot.engine.approval import ApprovalHandler
from issuepilot.engine.engine import PipelineEngine
from issuepilot.engine.models import (
    ApprovalDecision,
    AuditRecord,
    EngineState,
    EngineStats,
    Plan,
    WorkItem,
)
from issuepilot.errors import IssuePilotError
from issuepilot.transports.base import (
    BaseTransport,
    Command,
    CommandResult,
    CommandType,
    EventCategory,
    StateUpdate,
)

_DECISIONS = {
    CommandType.APPROVE: ApprovalDecision.APPROVE,
    CommandType.REJECT: ApprovalDecision.REJECT,
    CommandType.SKIP: ApprovalDecision.SKIP,
}


class CellState(str, enum.Enum):
    EMPTY = "empty"
    PENDING = "pending"
    QUEUED = "queued"


class ApprovalCell:
    """Holds at most one approval exchange.

    ``EMPTY``: nothing outstanding. ``PENDING``: the engine is waiting on
    a future. ``QUEUED``: a decision arrived before any request and will
    answer the next one immediately. A later queued decision replaces an
    earlier one.
    """

    def __init__(self) -> None:
        self._future: asyncio.Future[ApprovalDecision] | None = None
        self._queued: ApprovalDecision | None = None

    @property
    def state(self) -> CellState:
        if self._future is not None:
            return CellState.PENDING
        if self._queued is not None:
            return CellState.QUEUED
        return CellState.EMPTY

    def take_queued(self) -> ApprovalDecision | None:
        decision, self._queued = self._queued, None
        return decision

    def wait(self) -> asyncio.Future[ApprovalDecision]:
        self._future = asyncio.get_running_loop().create_future()
        return self._future

    def resolve(self, decision: ApprovalDecision) -> None:
        """Answer the pending wait, or queue *decision* if there is none."""
        future, self._future = self._future, None
        if future is not None and not future.done():
            future.set_result(decision)
        else:
            self._queued = decision

    def release(self) -> None:
        """Unblock a pending wait with ``SKIP`` and drop any queued decision."""
        future, self._future = self._future, None
        self._queued = None
        if future is not None and not future.done():
            future.set_result(ApprovalDecision.SKIP)


class _TransportLogger:
    def __init__(self, transport: InProcessTransport) -> None:
        self._transport = transport

    def debug(self, message: str, context: dict[str, Any] | None = None) -> None:
        self._transport._emit_log("debug", message, context)

    def info(self, message: str, context: dict[str, Any] | None = None) -> None:
        self._transport._emit_log("info", message, context)

    def warn(self, message: str, context: dict[str, Any] | None = None) -> None:
        self._transport._emit_log("warn", message, context)

    def error(self, message: str, context: dict[str, Any] | None = None) -> None:
        self._transport._emit_log("error", message, context)


class InProcessTransport(BaseTransport):
    """Transport for an engine living in the same event loop.

    Args:
        engine: The engine to drive. May instead be supplied later with
            :meth:`attach`, since the engine is usually built with this
            transport's handler factories.
    """

    def __init__(self, engine: PipelineEngine | None = None) -> None:
        super().__init__()
        self._engine = engine
        self._approval = ApprovalCell()
        self._task: asyncio.Task[Any] | None = None

    def attach(self, engine: PipelineEngine) -> None:
        self._engine = engine

    @property
    def engine(self) -> PipelineEngine:
        if self._engine is None:
            raise IssuePilotError("No engine attached to transport")
        return self._engine

    @property
    def approval(self) -> ApprovalCell:
        return self._approval

    @property
    def task(self) -> asyncio.Task[Any] | None:
        """The background task started by the last accepted ``start``."""
        return self._task

    # -----------------------------------------------------------------
    # Commands
    # -----------------------------------------------------------------

    async def send_command(self, command: Command) -> CommandResult:
        """Execute *command* against the engine.

        Raises:
            TransportDisposedError: After :meth:`dispose`.
        """
        self._assert_not_disposed()

        try:
            if command.type == CommandType.START:
                return self._start(command.once)
            if command.type == CommandType.STOP:
                await self.engine.dispose()
            else:
                self._approval.resolve(_DECISIONS[command.type])
        except Exception as exc:
            return CommandResult(ok=False, error=str(exc))
        return CommandResult(ok=True)

    def _start(self, once: bool) -> CommandResult:
        engine = self.engine
        if engine.state not in (EngineState.IDLE, EngineState.ERROR) or (
            self._task is not None and not self._task.done()
        ):
            self._emit_log("warn", "Engine is already running, ignoring start command")
            return CommandResult(ok=False, error="Engine is already running")

        if once:
            self._task = asyncio.create_task(engine.process_one_issue())
            label = "process_one_issue"
        else:
            self._task = asyncio.create_task(engine.run())
            label = "Engine run loop"
        self._task.add_done_callback(lambda task: self._report_task(task, label))
        return CommandResult(ok=True)

    def _report_task(self, task: asyncio.Task[Any], label: str) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._emit_log("error", f"{label} failed: {exc}")

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def dispose(self) -> None:
        """Stop emitting, drop listeners and release any approval wait with ``skip``.

        Safe to call more than once. The engine itself is left running;
        send ``stop`` first to end it.
        """
        if self._disposed:
            return
        self._disposed = True
        self._registry.clear()
        self._approval.release()

    # -----------------------------------------------------------------
    # Engine-side handler factories
    # -----------------------------------------------------------------

    def create_state_change_handler(
        self,
    ) -> Callable[[EngineState, WorkItem | None, EngineStats], None]:
        def handle(state: EngineState, item: WorkItem | None, stats: EngineStats) -> None:
            self._emit(EventCategory.STATE_UPDATE, StateUpdate(state=state, item=item, stats=stats))

        return handle

    def create_approval_handler(self) -> ApprovalHandler:
        """Emit ``approvalRequest`` and wait for an approve/reject/skip command.

        A decision queued before the request answers it immediately,
        without emitting anything.
        """

        async def handle(plan: Plan) -> ApprovalDecision:
            queued = self._approval.take_queued()
            if queued is not None:
                return queued
            if self._disposed:
                return ApprovalDecision.SKIP
            waiter = self._approval.wait()
            self._emit(EventCategory.APPROVAL_REQUEST, plan)
            return await waiter

        return handle

    def create_event_handler(self) -> Callable[[AuditRecord], None]:
        def handle(record: AuditRecord) -> None:
            self._emit(EventCategory.EVENT, record)

        return handle

    def create_logger(self) -> _TransportLogger:
        """An :class:`EngineLogger` whose calls become ``log`` events."""
        return _TransportLogger(self)
