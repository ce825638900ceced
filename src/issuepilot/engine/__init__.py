"""issuepilot engine: selects an issue, plans it, implements it and merges it.

The engine drives one work item at a time through a fixed state machine,
calling out to an issue tracker and a coding agent supplied by the host.
"""

from issuepilot.engine.approval import ApprovalHandler, ConsoleApprover
from issuepilot.engine.audit import InMemoryAuditLog
from issuepilot.engine.collaborators import (
    AgentProgress,
    AgentResult,
    AgentTask,
    AuditLog,
    CodingAgent,
    Commit,
    IssueTracker,
    MergeResult,
    VerificationState,
    VerificationStatus,
)
from issuepilot.engine.engine import PipelineEngine
from issuepilot.engine.models import (
    ApprovalDecision,
    AuditEventType,
    AuditRecord,
    ChangeRequest,
    ChangeRequestStatus,
    EngineState,
    EngineStats,
    Plan,
    WorkItem,
)

__all__ = [
    "AgentProgress",
    "AgentResult",
    "AgentTask",
    "ApprovalDecision",
    "ApprovalHandler",
    "AuditEventType",
    "AuditLog",
    "AuditRecord",
    "ChangeRequest",
    "ChangeRequestStatus",
    "CodingAgent",
    "Commit",
    "ConsoleApprover",
    "EngineState",
    "EngineStats",
    "InMemoryAuditLog",
    "IssueTracker",
    "MergeResult",
    "PipelineEngine",
    "Plan",
    "VerificationState",
    "VerificationStatus",
    "WorkItem",
]
