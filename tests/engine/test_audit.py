"""Tests for the in-memory audit log and the console approver."""

from __future__ import annotations

import io
from unittest.mock import patch

from rich.console import Console

from conftest import plan_output
from issuepilot.engine.approval import ConsoleApprover
from issuepilot.engine.audit import InMemoryAuditLog
from issuepilot.engine.collaborators import AuditLog
from issuepilot.engine.models import ApprovalDecision, AuditEventType, parse_plan


class TestInMemoryAuditLog:
    def test_satisfies_protocol(self):
        assert isinstance(InMemoryAuditLog(), AuditLog)

    def test_record_and_filter(self):
        log = InMemoryAuditLog()
        log.record(AuditEventType.ITEM_SELECTED, 1, {"title": "a"})
        log.record(AuditEventType.STATE_TRANSITION, None, {"to": "idle"})
        log.record(AuditEventType.PLAN_GENERATED, 2)

        assert len(log) == 3
        assert [e.item_number for e in log.events()] == [1, None, 2]
        assert [e.type for e in log.events(2)] == [AuditEventType.PLAN_GENERATED]

    def test_record_copies_data(self):
        log = InMemoryAuditLog()
        data = {"k": 1}

        entry = log.record(AuditEventType.ITEM_SELECTED, 1, data)
        data["k"] = 2

        assert entry.data == {"k": 1}

    def test_last_event(self):
        log = InMemoryAuditLog()
        log.record(AuditEventType.ITEM_SELECTED, 1)
        second = log.record(AuditEventType.ITEM_SELECTED, 2)

        assert log.last_event(AuditEventType.ITEM_SELECTED) == second
        assert log.last_event(AuditEventType.PR_MERGED) is None

    def test_clear(self):
        log = InMemoryAuditLog()
        log.record(AuditEventType.ITEM_SELECTED, 1)
        log.clear()
        assert log.events() == []


class TestConsoleApprover:
    async def test_yes_approves(self):
        console = Console(file=io.StringIO())
        approver = ConsoleApprover(console)

        with patch("issuepilot.engine.approval.Confirm.ask", return_value=True):
            decision = await approver(parse_plan(plan_output(), 42))

        assert decision == ApprovalDecision.APPROVE
        assert "Development Plan for Issue #42" in console.file.getvalue()

    async def test_no_rejects(self):
        approver = ConsoleApprover(Console(file=io.StringIO()))

        with patch("issuepilot.engine.approval.Confirm.ask", return_value=False):
            decision = await approver(parse_plan(plan_output(), 42))

        assert decision == ApprovalDecision.REJECT
