"""Data models for the issue pipeline.

Work items, plans and change requests are frozen once the engine accepts
them. Each type converts to and from the camelCase JSON shape used on the
wire and in the agent's structured plan output.
"""

from __future__ import annotations

import enum
import json
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from issuepilot.errors import PipelineError


class EngineState(str, enum.Enum):
    """Pipeline state. Exactly one is active at any instant."""

    IDLE = "idle"
    SELECTING_ISSUE = "selecting_issue"
    ANALYZING = "analyzing"
    PLANNING = "planning"
    AWAITING_APPROVAL = "awaiting_approval"
    IMPLEMENTING = "implementing"
    CREATING_PR = "creating_pr"
    MONITORING = "monitoring"
    MERGING = "merging"
    ERROR = "error"


class FileAction(str, enum.Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class Complexity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ChangeRequestStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"
    MERGED = "merged"


class ApprovalDecision(str, enum.Enum):
    """Outcome of the approval gate."""

    APPROVE = "approve"
    REJECT = "reject"
    SKIP = "skip"


class AuditEventType(str, enum.Enum):
    """Milestones recorded in the audit log."""

    ITEM_SELECTED = "item_selected"
    ITEM_ANALYZED = "item_analyzed"
    PLAN_GENERATED = "plan_generated"
    PLAN_APPROVED = "plan_approved"
    PLAN_REJECTED = "plan_rejected"
    BRANCH_CREATED = "branch_created"
    IMPLEMENTATION_STARTED = "implementation_started"
    IMPLEMENTATION_COMPLETED = "implementation_completed"
    IMPLEMENTATION_FAILED = "implementation_failed"
    PR_CREATED = "pr_created"
    CI_CHECK_STARTED = "ci_check_started"
    CI_CHECK_PASSED = "ci_check_passed"
    CI_CHECK_FAILED = "ci_check_failed"
    PR_MERGED = "pr_merged"
    ISSUE_CLOSED = "issue_closed"
    BRANCH_DELETED = "branch_deleted"
    ERROR_OCCURRED = "error_occurred"
    STATE_TRANSITION = "state_transition"


# ---------------------------------------------------------------------------
# Work items
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Comment:
    author: str
    body: str
    created_at: str = ""
    id: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "author": self.author,
            "body": self.body,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Comment:
        return cls(
            id=int(data.get("id", 0)),
            author=str(data.get("author", "")),
            body=str(data.get("body", "")),
            created_at=str(data.get("createdAt", "")),
        )


@dataclass(frozen=True)
class WorkItem:
    """A tracker item selected for one pipeline cycle.

    Attributes:
        number: Tracker-assigned item number.
        title: Item title.
        body: Item description.
        labels: Labels attached to the item.
        url: Browser URL of the item.
        comments: Discussion on the item, oldest first.
        related_numbers: Other items referenced as ``#N``.
        created_at: Creation timestamp as reported by the tracker.
    """

    number: int
    title: str
    body: str = ""
    labels: tuple[str, ...] = ()
    url: str = ""
    comments: tuple[Comment, ...] = ()
    related_numbers: tuple[int, ...] = ()
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "title": self.title,
            "body": self.body,
            "labels": list(self.labels),
            "url": self.url,
            "comments": [c.to_dict() for c in self.comments],
            "relatedNumbers": list(self.related_numbers),
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkItem:
        return cls(
            number=int(data["number"]),
            title=str(data.get("title", "")),
            body=str(data.get("body", "")),
            labels=tuple(data.get("labels", ())),
            url=str(data.get("url", "")),
            comments=tuple(Comment.from_dict(c) for c in data.get("comments", ())),
            related_numbers=tuple(int(n) for n in data.get("relatedNumbers", ())),
            created_at=str(data.get("createdAt", "")),
        )


_ISSUE_REF_RE = re.compile(r"(?<![\w&])#(\d+)\b")


def extract_issue_references(text: str, exclude: int | None = None) -> tuple[int, ...]:
    """Return item numbers referenced as ``#N`` in *text*.

    Order of first appearance is kept and duplicates are dropped.

    Args:
        text: Free text to scan.
        exclude: A number to leave out, usually the item's own.
    """
    seen: dict[int, None] = {}
    for match in _ISSUE_REF_RE.finditer(text):
        number = int(match.group(1))
        if number != exclude:
            seen.setdefault(number, None)
    return tuple(seen)


_SLUG_STRIP_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str, max_length: int = 50) -> str:
    """Lowercase *text* and collapse anything non-alphanumeric to ``-``."""
    slug = _SLUG_STRIP_RE.sub("-", text.lower()).strip("-")
    return slug[:max_length].rstrip("-")


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FileChange:
    path: str
    action: FileAction
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "filePath": self.path,
            "action": self.action.value,
            "description": self.description,
        }


@dataclass(frozen=True)
class Plan:
    """Structured development plan produced by the planning step."""

    item_number: int
    summary: str
    approach: str
    file_changes: tuple[FileChange, ...] = ()
    testing_strategy: str = ""
    complexity: Complexity = Complexity.MEDIUM
    risks: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "issueNumber": self.item_number,
            "summary": self.summary,
            "approach": self.approach,
            "fileChanges": [fc.to_dict() for fc in self.file_changes],
            "testingStrategy": self.testing_strategy,
            "estimatedComplexity": self.complexity.value,
            "risks": list(self.risks),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], item_number: int | None = None) -> Plan:
        """Validate and build a plan from its JSON shape.

        ``summary``, ``approach`` and ``fileChanges`` are required;
        ``issueNumber`` falls back to *item_number*.

        Raises:
            PipelineError: Retryable, naming the missing or invalid fields.
        """
        if not isinstance(data, dict):
            raise PipelineError(
                "Plan output is not a JSON object", retryable=True
            )

        missing = [
            key
            for key in ("summary", "approach")
            if not isinstance(data.get(key), str) or not data.get(key)
        ]
        if not isinstance(data.get("fileChanges"), list):
            missing.append("fileChanges")
        number = data.get("issueNumber", item_number)
        if not isinstance(number, int) or isinstance(number, bool):
            missing.append("issueNumber")
        if missing:
            raise PipelineError(
                f"Plan output missing required fields: {', '.join(missing)}",
                retryable=True,
                context={"missing": missing},
            )

        changes: list[FileChange] = []
        for raw in data["fileChanges"]:
            try:
                changes.append(
                    FileChange(
                        path=str(raw["filePath"]),
                        action=FileAction(raw["action"]),
                        description=str(raw.get("description", "")),
                    )
                )
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                raise PipelineError(
                    f"Invalid file change in plan: {raw!r}",
                    retryable=True,
                ) from exc

        try:
            complexity = Complexity(data.get("estimatedComplexity", "medium"))
        except ValueError:
            complexity = Complexity.MEDIUM

        return cls(
            item_number=number,
            summary=data["summary"],
            approach=data["approach"],
            file_changes=tuple(changes),
            testing_strategy=str(data.get("testingStrategy", "")),
            complexity=complexity,
            risks=tuple(str(r) for r in data.get("risks", ()) or ()),
        )


def parse_plan(raw_output: str, item_number: int) -> Plan:
    """Parse the agent's plan output.

    Raises:
        PipelineError: Retryable, if the output is not valid JSON or fails
            validation.
    """
    try:
        data = json.loads(raw_output)
    except (json.JSONDecodeError, TypeError) as exc:
        raise PipelineError(
            f"Failed to parse plan output as JSON: {exc}",
            retryable=True,
            context={"raw_output": str(raw_output)[:200]},
        ) from exc
    return Plan.from_dict(data, item_number=item_number)


PLAN_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "issueNumber": {"type": "number"},
        "summary": {"type": "string"},
        "approach": {"type": "string"},
        "fileChanges": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "filePath": {"type": "string"},
                    "action": {
                        "type": "string",
                        "enum": [a.value for a in FileAction],
                    },
                    "description": {"type": "string"},
                },
                "required": ["filePath", "action", "description"],
            },
        },
        "testingStrategy": {"type": "string"},
        "estimatedComplexity": {
            "type": "string",
            "enum": [c.value for c in Complexity],
        },
        "risks": {"type": "array", "items": {"type": "string"}},
    },
    "required": [
        "issueNumber",
        "summary",
        "approach",
        "fileChanges",
        "testingStrategy",
        "estimatedComplexity",
        "risks",
    ],
}


# ---------------------------------------------------------------------------
# Change requests and stats
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChangeRequest:
    number: int
    url: str
    title: str = ""
    body: str = ""
    branch: str = ""
    status: ChangeRequestStatus = ChangeRequestStatus.OPEN

    def to_dict(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "url": self.url,
            "title": self.title,
            "body": self.body,
            "branch": self.branch,
            "status": self.status.value,
        }


@dataclass
class EngineStats:
    """Counters that accumulate over the lifetime of an engine."""

    items_completed: int = 0
    total_cost_usd: float = 0.0
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "itemsCompleted": self.items_completed,
            "totalCostUsd": self.total_cost_usd,
            "startedAt": self.started_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineStats:
        return cls(
            items_completed=int(data.get("itemsCompleted", 0)),
            total_cost_usd=float(data.get("totalCostUsd", 0.0)),
            started_at=float(data.get("startedAt", 0.0)),
        )


@dataclass
class CycleWork:
    """Per-cycle working data, replaced as a whole when a cycle ends."""

    item: WorkItem | None = None
    plan: Plan | None = None
    branch: str | None = None
    change_request: ChangeRequest | None = None


# ---------------------------------------------------------------------------
# Audit records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AuditRecord:
    """An append-only audit entry, also pushed to controllers as a domain event."""

    type: AuditEventType
    data: dict[str, Any] = field(default_factory=dict)
    item_number: int | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
        }
        if self.item_number is not None:
            payload["itemId"] = self.item_number
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditRecord:
        item = data.get("itemId")
        return cls(
            id=str(data["id"]),
            type=AuditEventType(data["type"]),
            data=dict(data.get("data") or {}),
            item_number=int(item) if item is not None else None,
            timestamp=float(data.get("timestamp", 0.0)),
        )
