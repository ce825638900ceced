"""Interfaces of the external systems the engine drives.

Concrete trackers and agents live outside this package; the engine only
depends on these protocols. A tracker instance is bound to one
repository. Implementations report boundary failures as
:class:`issuepilot.errors.CollaboratorError`.
"""

from __future__ import annotations

import enum
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from issuepilot.engine.models import (
    AuditEventType,
    AuditRecord,
    ChangeRequest,
    WorkItem,
)


class VerificationState(str, enum.Enum):
    """Combined state of the checks running against a branch."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"


@dataclass(frozen=True)
class VerificationStatus:
    state: VerificationState
    success_count: int = 0
    failure_count: int = 0
    pending_count: int = 0


@dataclass(frozen=True)
class MergeResult:
    merged: bool
    sha: str = ""
    message: str = ""


@dataclass(frozen=True)
class Commit:
    sha: str
    message: str
    author: str = ""


@runtime_checkable
class IssueTracker(Protocol):
    """Issue tracker and code host for a single repository."""

    async def list_issues(
        self,
        labels: Sequence[str],
        state: str = "open",
        sort: str = "created",
        direction: str = "asc",
    ) -> list[WorkItem]: ...

    async def get_issue(self, number: int) -> WorkItem: ...

    async def assign_issue(self, number: int, assignees: Sequence[str]) -> None: ...

    async def add_comment(self, number: int, body: str) -> None: ...

    async def close_issue(self, number: int) -> None: ...

    async def get_default_branch(self) -> str: ...

    async def create_branch(self, name: str, from_branch: str) -> None: ...

    async def get_branch(self, name: str) -> None: ...

    async def delete_branch(self, name: str) -> None: ...

    async def create_change_request(
        self,
        title: str,
        body: str,
        head: str,
        base: str,
        labels: Sequence[str] = (),
    ) -> ChangeRequest: ...

    async def get_change_request(self, number: int) -> ChangeRequest: ...

    async def merge_change_request(self, number: int, method: str) -> MergeResult: ...

    async def get_verification_status(self, ref: str) -> VerificationStatus: ...

    async def list_commits(self, limit: int = 10) -> list[Commit]: ...

    async def dispose(self) -> None: ...


@dataclass
class AgentTask:
    """A unit of work for the coding agent.

    Attributes:
        prompt: Instructions for the agent.
        cwd: Repository checkout the agent works in.
        model: Model identifier.
        max_budget_usd: Spend ceiling for this task.
        permission_mode: ``"default"`` or ``"bypassPermissions"``.
        allowed_tools: Tool names the agent may use; empty means its default.
        output_schema: JSON schema the final output must conform to.
    """

    prompt: str
    cwd: str = "."
    model: str = ""
    max_budget_usd: float = 1.0
    permission_mode: str = "default"
    allowed_tools: list[str] = field(default_factory=list)
    output_schema: dict[str, Any] | None = None


@dataclass(frozen=True)
class AgentResult:
    success: bool
    output: str = ""
    cost_usd: float = 0.0
    duration_ms: float = 0.0
    error: str | None = None


@dataclass(frozen=True)
class AgentProgress:
    type: str
    message: str = ""
    cost_so_far: float = 0.0


ProgressCallback = Callable[[AgentProgress], None]


@runtime_checkable
class CodingAgent(Protocol):
    """An autonomous coding agent."""

    async def is_available(self) -> bool: ...

    async def execute_task(
        self, task: AgentTask, on_progress: ProgressCallback | None = None
    ) -> AgentResult: ...

    async def dispose(self) -> None: ...


@runtime_checkable
class AuditLog(Protocol):
    """Append-only record of pipeline milestones."""

    def record(
        self,
        type: AuditEventType,
        item_number: int | None = None,
        data: dict[str, Any] | None = None,
    ) -> AuditRecord: ...

    def events(self, item_number: int | None = None) -> list[AuditRecord]: ...

    def last_event(self, type: AuditEventType) -> AuditRecord | None: ...

    def clear(self) -> None: ...
