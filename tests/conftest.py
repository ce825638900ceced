"""Shared fakes and fixtures: an in-memory tracker and a scripted coding agent."""

from __future__ import annotations

import json
from typing import Any

import pytest

from issuepilot.config import (
    AgentSettings,
    EngineSettings,
    IssuePilotConfig,
    TrackerSettings,
)
from issuepilot.engine.collaborators import (
    AgentProgress,
    AgentResult,
    AgentTask,
    Commit,
    MergeResult,
    VerificationState,
    VerificationStatus,
)
from issuepilot.engine.models import ChangeRequest, ChangeRequestStatus, WorkItem
from issuepilot.errors import CollaboratorError


def plan_output(number: int = 42, **overrides: Any) -> str:
    """JSON plan text as the agent would return it."""
    data: dict[str, Any] = {
        "issueNumber": number,
        "summary": "Add a health endpoint",
        "approach": "Add a route returning 200",
        "fileChanges": [
            {"filePath": "src/app.py", "action": "modify", "description": "Add route"},
            {"filePath": "tests/test_app.py", "action": "create", "description": "Test it"},
        ],
        "testingStrategy": "Unit test the route",
        "estimatedComplexity": "low",
        "risks": ["None"],
    }
    data.update(overrides)
    return json.dumps(data)


class FakeTracker:
    """In-memory :class:`IssueTracker`.

    ``change_request_statuses`` and ``verification_states`` are consumed
    one per poll; the last entry repeats.
    """

    def __init__(self, issues: list[WorkItem] | None = None) -> None:
        self.issues = list(issues or [])
        self.details: dict[int, WorkItem] = {}
        self.list_errors: list[Exception] = []
        self.on_list: Any = None
        self.default_branch = "main"
        self.failing_branches: set[str] = set()
        self.created_branches: list[str] = []
        self.deleted_branches: list[str] = []
        self.delete_error: Exception | None = None
        self.assigned: list[tuple[int, list[str]]] = []
        self.comments: list[tuple[int, str]] = []
        self.closed: list[int] = []
        self.created_change_requests: list[dict[str, Any]] = []
        self.change_request_statuses = [ChangeRequestStatus.OPEN]
        self.verification_states = [VerificationState.SUCCESS]
        self.merge_result = MergeResult(merged=True, sha="abc1234", message="Merged")
        self.merges: list[tuple[int, str]] = []
        self.commits = [Commit(sha="0123456789", message="Initial commit\n\nbody", author="dev")]
        self.commit_error: Exception | None = None
        self.disposed = False

    async def list_issues(self, labels, state="open", sort="created", direction="asc"):
        if self.on_list is not None:
            await self.on_list()
        if self.list_errors:
            raise self.list_errors.pop(0)
        return [i for i in self.issues if set(labels) & set(i.labels)]

    async def get_issue(self, number):
        if number in self.details:
            return self.details[number]
        for issue in self.issues:
            if issue.number == number:
                return issue
        raise CollaboratorError(f"Issue #{number} not found", collaborator="tracker")

    async def assign_issue(self, number, assignees):
        self.assigned.append((number, list(assignees)))

    async def add_comment(self, number, body):
        self.comments.append((number, body))

    async def close_issue(self, number):
        self.closed.append(number)

    async def get_default_branch(self):
        return self.default_branch

    async def create_branch(self, name, from_branch):
        if name in self.failing_branches:
            raise CollaboratorError(f"Reference already exists: {name}", collaborator="tracker")
        self.created_branches.append(name)

    async def get_branch(self, name):
        return None

    async def delete_branch(self, name):
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted_branches.append(name)

    async def create_change_request(self, title, body, head, base, labels=()):
        self.created_change_requests.append(
            {"title": title, "body": body, "head": head, "base": base, "labels": list(labels)}
        )
        return ChangeRequest(
            number=100, url="https://example.test/pull/100", title=title, body=body
        )

    async def get_change_request(self, number):
        status = self._next(self.change_request_statuses)
        return ChangeRequest(number=number, url=f"https://example.test/pull/{number}", status=status)

    async def merge_change_request(self, number, method):
        self.merges.append((number, method))
        return self.merge_result

    async def get_verification_status(self, ref):
        state = self._next(self.verification_states)
        failures = 1 if state == VerificationState.FAILURE else 0
        return VerificationStatus(state=state, success_count=1 - failures, failure_count=failures)

    async def list_commits(self, limit=10):
        if self.commit_error is not None:
            raise self.commit_error
        return self.commits[:limit]

    async def dispose(self):
        self.disposed = True

    @staticmethod
    def _next(sequence: list[Any]) -> Any:
        return sequence.pop(0) if len(sequence) > 1 else sequence[0]


class FakeAgent:
    """Scripted :class:`CodingAgent`; results are returned in order, the last repeats."""

    def __init__(self, results: list[AgentResult] | None = None, available: bool = True) -> None:
        self.results = list(
            results
            or [
                AgentResult(success=True, output=plan_output(), cost_usd=0.25, duration_ms=10),
                AgentResult(success=True, output="done", cost_usd=0.75, duration_ms=20),
            ]
        )
        self.available = available
        self.tasks: list[AgentTask] = []
        self.disposed = False

    async def is_available(self):
        return self.available

    async def execute_task(self, task, on_progress=None):
        self.tasks.append(task)
        if on_progress is not None:
            on_progress(AgentProgress(type="text", message="working"))
        return self.results.pop(0) if len(self.results) > 1 else self.results[0]

    async def dispose(self):
        self.disposed = True


class RecordingLogger:
    """:class:`EngineLogger` that keeps every call."""

    def __init__(self) -> None:
        self.records: list[tuple[str, str, dict[str, Any] | None]] = []

    def debug(self, message, context=None):
        self.records.append(("debug", message, context))

    def info(self, message, context=None):
        self.records.append(("info", message, context))

    def warn(self, message, context=None):
        self.records.append(("warn", message, context))

    def error(self, message, context=None):
        self.records.append(("error", message, context))

    def messages(self, level: str) -> list[str]:
        return [m for lvl, m, _ in self.records if lvl == level]


def make_issue(number: int = 42, **overrides: Any) -> WorkItem:
    data: dict[str, Any] = {
        "number": number,
        "title": "Add health endpoint",
        "body": "We need a /health route.",
        "labels": ("issuepilot",),
        "url": f"https://example.test/issues/{number}",
        "created_at": "2024-01-01T00:00:00Z",
    }
    data.update(overrides)
    return WorkItem(**data)


@pytest.fixture
def config(tmp_path) -> IssuePilotConfig:
    return IssuePilotConfig(
        tracker=TrackerSettings(owner="acme", repo="widgets", token="t"),
        agent=AgentSettings(model="test-model"),
        engine=EngineSettings(
            poll_interval_seconds=0,
            working_directory=str(tmp_path),
            approval_mode="auto",
            ci_poll_interval_seconds=0,
            ci_monitor_timeout_seconds=60,
        ),
    )


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker([make_issue()])


@pytest.fixture
def agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def recording_logger() -> RecordingLogger:
    return RecordingLogger()
