"""Approval handlers for the plan gate.

An approval handler is an async callable that receives the plan and
returns an :class:`ApprovalDecision`. Transports provide their own;
:class:`ConsoleApprover` covers a plain terminal session.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.text import Text

from issuepilot.engine.models import ApprovalDecision, Plan
from issuepilot.engine.prompts import render_plan

ApprovalHandler = Callable[[Plan], Awaitable[ApprovalDecision]]


class ConsoleApprover:
    """Asks the operator on the terminal using ``rich``.

    Only an explicit yes approves; the default answer rejects.
    """

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console()

    async def __call__(self, plan: Plan) -> ApprovalDecision:
        self._console.print(
            Panel(Text(render_plan(plan)), title=f"Plan for issue #{plan.item_number}")
        )
        approved = await asyncio.to_thread(
            Confirm.ask,
            "Approve this plan?",
            default=False,
            console=self._console,
        )
        if approved:
            return ApprovalDecision.APPROVE
        return ApprovalDecision.REJECT

