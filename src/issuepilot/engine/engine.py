"""Issue pipeline engine.

Drives one work item at a time through eight steps::

    select -> analyze -> plan -> approve -> branch -> implement
           -> open change request -> monitor and merge

Each step is a state transition plus one unit of work against the
tracker or the coding agent. State transitions and audit milestones are
pushed to optional callbacks, which is how transports observe the engine.

Errors inside a cycle are caught once at the cycle boundary: the state
moves to ``ERROR``, the per-cycle data is dropped and the error is
re-raised. :meth:`PipelineEngine.run` logs it and carries on with the
next poll.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import replace
from typing import Any

from issuepilot.config import IssuePilotConfig
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
    VerificationState,
)
from issuepilot.engine.models import (
    PLAN_SCHEMA,
    ApprovalDecision,
    AuditEventType,
    AuditRecord,
    ChangeRequest,
    ChangeRequestStatus,
    CycleWork,
    EngineState,
    EngineStats,
    Plan,
    WorkItem,
    extract_issue_references,
    parse_plan,
    slugify,
)
from issuepilot.engine import prompts
from issuepilot.errors import ConfigurationError, PipelineError
from issuepilot.log import EngineLogger, StdlibEngineLogger

MAX_BRANCH_ATTEMPTS = 5

StateChangeCallback = Callable[[EngineState, "WorkItem | None", EngineStats], None]
EventCallback = Callable[[AuditRecord], None]


class PipelineEngine:
    """Autonomous issue-to-merge engine.

    Lifecycle: construct, :meth:`initialize`, then either :meth:`run` for
    the continuous poll loop or :meth:`process_one_issue` for one cycle,
    and finally :meth:`dispose`.

    Args:
        config: Effective configuration.
        tracker: Issue tracker bound to the target repository.
        agent: Coding agent used for planning and implementation.
        logger: Structured logger; defaults to the ``logging`` module.
        audit_log: Audit trail; defaults to an in-memory log.
        on_state_change: Called on every state transition.
        on_event: Called with every audit record as it is written.
        approval_handler: Decides on plans when ``approval_mode`` is ``"cli"``.
        clock: Monotonic clock used to bound the monitor step.
    """

    def __init__(
        self,
        config: IssuePilotConfig,
        tracker: IssueTracker,
        agent: CodingAgent,
        *,
        logger: EngineLogger | None = None,
        audit_log: AuditLog | None = None,
        on_state_change: StateChangeCallback | None = None,
        on_event: EventCallback | None = None,
        approval_handler: ApprovalHandler | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._tracker = tracker
        self._agent = agent
        self._logger: EngineLogger = logger or StdlibEngineLogger()
        self._audit_log: AuditLog = audit_log if audit_log is not None else InMemoryAuditLog()
        self._on_state_change = on_state_change
        self._on_event = on_event
        self._approval_handler = approval_handler
        self._clock = clock

        self._state = EngineState.IDLE
        self._work = CycleWork()
        self._stats = EngineStats(started_at=time.time())
        self._running = False
        self._stop_event = asyncio.Event()

    # -----------------------------------------------------------------
    # Accessors
    # -----------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_running(self) -> bool:
        """Whether the continuous run loop is active."""
        return self._running

    @property
    def current_item(self) -> WorkItem | None:
        return self._work.item

    @property
    def current_plan(self) -> Plan | None:
        return self._work.plan

    @property
    def current_branch(self) -> str | None:
        return self._work.branch

    @property
    def current_change_request(self) -> ChangeRequest | None:
        return self._work.change_request

    @property
    def audit_log(self) -> AuditLog:
        return self._audit_log

    def get_stats(self) -> EngineStats:
        """Return a copy of the lifetime counters."""
        return replace(self._stats)

    # -----------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------

    async def initialize(self) -> None:
        """Verify the coding agent is reachable.

        Raises:
            ConfigurationError: If the agent reports itself unavailable.
        """
        if not await self._agent.is_available():
            raise ConfigurationError(
                "Coding agent is not available. Check its credentials and installation."
            )
        self._logger.info(
            "Engine initialized",
            {
                "model": self._config.agent.model,
                "approval_mode": self._config.engine.approval_mode,
            },
        )

    async def dispose(self) -> None:
        """Stop the run loop before its next iteration and release collaborators."""
        self._running = False
        self._stop_event.set()
        await self._agent.dispose()
        await self._tracker.dispose()
        self._logger.info("Engine disposed")

    async def run(self) -> None:
        """Process items until :meth:`dispose` is called.

        One cycle per iteration, then a wait of ``poll_interval_seconds``.
        A failed cycle is logged and the engine returns to ``IDLE``; the
        loop itself never exits on error.
        """
        self._running = True
        self._stop_event.clear()
        self._logger.info("Engine run loop started")

        while self._running:
            try:
                await self.process_one_issue()
            except Exception as exc:
                self._logger.error(
                    "Error processing issue",
                    {
                        "error": str(exc),
                        "state": self._state.value,
                        "retryable": getattr(exc, "is_retryable", False),
                    },
                )
                self._reset_current_work()

            if self._running:
                interval = self._config.engine.poll_interval_seconds
                self._logger.info("Polling for next issue", {"interval_seconds": interval})
                await self._wait_for_stop(interval)

        self._logger.info("Engine run loop stopped")

    async def _wait_for_stop(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    async def process_one_issue(self) -> bool:
        """Run one full cycle for the oldest eligible item.

        Returns:
            ``True`` if an item was processed, ``False`` if there was no work.

        Raises:
            Exception: Whatever stopped the cycle, after the state has been
                set to ``ERROR`` and per-cycle data cleared.
        """
        try:
            item = await self.select_issue()
            if item is None:
                self._logger.info("No issues found, staying idle")
                return False

            context = await self.analyze_issue(item)
            plan = await self.generate_plan(item, context)
            await self.await_approval(plan)
            branch = await self.create_branch(item)
            await self.implement(item, plan, branch)
            change_request = await self.create_change_request(item, plan, branch)
            await self.monitor_and_merge(change_request, item)
        except Exception as exc:
            number = self._work.item.number if self._work.item else None
            self._record(AuditEventType.ERROR_OCCURRED, number, {"error": str(exc)})
            self._set_state(EngineState.ERROR)
            raise
        finally:
            # ERROR survives this; only the run loop returns to IDLE.
            self._work = CycleWork()

        self._set_state(EngineState.IDLE)
        return True

    # -----------------------------------------------------------------
    # Step 1: select
    # -----------------------------------------------------------------

    async def select_issue(self) -> WorkItem | None:
        """Pick the oldest open item carrying an inclusion label and no exclusion label.

        The item is assigned to the bot user and acknowledged with a
        comment. Returns ``None`` (and moves to ``IDLE``) when nothing is
        eligible.
        """
        self._set_state(EngineState.SELECTING_ISSUE)
        settings = self._config.tracker

        issues = await self._tracker.list_issues(
            settings.issue_labels, state="open", sort="created", direction="asc"
        )
        excluded = set(settings.exclude_labels)
        candidates = [i for i in issues if not excluded.intersection(i.labels)]

        if not candidates:
            self._set_state(EngineState.IDLE)
            return None

        selected = candidates[0]
        await self._tracker.assign_issue(selected.number, [settings.bot_username])
        await self._tracker.add_comment(selected.number, prompts.PICKUP_COMMENT)

        text = " ".join([selected.body, *(c.body for c in selected.comments)])
        item = replace(
            selected,
            related_numbers=extract_issue_references(text, exclude=selected.number),
        )

        self._work.item = item
        self._record(
            AuditEventType.ITEM_SELECTED, item.number, {"title": item.title, "url": item.url}
        )
        self._logger.info(
            "Issue selected", {"number": item.number, "title": item.title, "url": item.url}
        )
        return item

    # -----------------------------------------------------------------
    # Step 2: analyze
    # -----------------------------------------------------------------

    async def analyze_issue(self, item: WorkItem) -> str:
        """Build the planning context from the item, related items and recent history."""
        self._set_state(EngineState.ANALYZING)

        full_item = await self._tracker.get_issue(item.number)

        related: list[WorkItem] = []
        for number in item.related_numbers:
            try:
                related.append(await self._tracker.get_issue(number))
            except Exception as exc:
                self._logger.warn(
                    "Failed to fetch related issue", {"issue_number": number, "error": str(exc)}
                )

        commits: list[Commit] = []
        try:
            commits = await self._tracker.list_commits(self._config.engine.commit_window)
        except Exception as exc:
            self._logger.warn("Failed to fetch recent commits", {"error": str(exc)})

        context = prompts.build_context(item, full_item, related, commits)

        self._record(
            AuditEventType.ITEM_ANALYZED,
            item.number,
            {"contextLength": len(context), "relatedIssues": len(item.related_numbers)},
        )
        self._logger.info(
            "Issue analysis complete",
            {
                "issue_number": item.number,
                "context_length": len(context),
                "related_issues": len(item.related_numbers),
            },
        )
        return context

    # -----------------------------------------------------------------
    # Step 3: plan
    # -----------------------------------------------------------------

    async def generate_plan(self, item: WorkItem, context: str) -> Plan:
        """Ask the agent for a structured plan and validate it.

        Raises:
            PipelineError: Retryable, if the agent fails or the output is not
                a valid plan.
        """
        self._set_state(EngineState.PLANNING)
        agent_settings = self._config.agent

        task = AgentTask(
            prompt=prompts.plan_prompt(item, context),
            cwd=self._config.engine.working_directory,
            model=agent_settings.model,
            max_budget_usd=agent_settings.max_budget_usd,
            permission_mode=agent_settings.permission_mode,
            output_schema=PLAN_SCHEMA,
        )
        result = await self._agent.execute_task(task, self._progress("Plan generation progress"))

        if not result.success:
            raise PipelineError(
                f"Plan generation failed: {result.error or 'Unknown error'}",
                retryable=True,
                context={"issue_number": item.number},
            )
        self._stats.total_cost_usd += result.cost_usd

        plan = parse_plan(result.output, item.number)
        self._work.plan = plan

        self._record(
            AuditEventType.PLAN_GENERATED,
            item.number,
            {
                "summary": plan.summary,
                "complexity": plan.complexity.value,
                "fileChanges": len(plan.file_changes),
            },
        )
        self._logger.info(
            "Plan generated",
            {
                "issue_number": plan.item_number,
                "summary": plan.summary,
                "file_changes": len(plan.file_changes),
                "complexity": plan.complexity.value,
            },
        )
        return plan

    # -----------------------------------------------------------------
    # Step 4: approve
    # -----------------------------------------------------------------

    async def await_approval(self, plan: Plan) -> None:
        """Gate the plan behind an approval decision.

        Raises:
            PipelineError: Non-retryable, for any decision other than approve.
        """
        self._set_state(EngineState.AWAITING_APPROVAL)

        if self._config.engine.approval_mode == "auto":
            self._record(AuditEventType.PLAN_APPROVED, plan.item_number, {"mode": "auto"})
            self._logger.info("Auto-approval mode, skipping approval gate")
            return

        self._logger.info(prompts.render_plan(plan))
        handler = self._approval_handler or ConsoleApprover()
        decision = await handler(plan)

        if decision != ApprovalDecision.APPROVE:
            self._record(
                AuditEventType.PLAN_REJECTED, plan.item_number, {"decision": decision.value}
            )
            raise PipelineError(
                f"Plan not approved (decision: {decision.value})",
                retryable=False,
                context={"issue_number": plan.item_number, "decision": decision.value},
            )

        self._record(AuditEventType.PLAN_APPROVED, plan.item_number, {"mode": "cli"})
        self._logger.info("Plan approved")

    # -----------------------------------------------------------------
    # Step 5: branch
    # -----------------------------------------------------------------

    async def create_branch(self, item: WorkItem) -> str:
        """Create ``feature/<number>-<slug>``, adding ``-1`` .. ``-4`` on failure.

        Any creation failure moves on to the next name, not only a name
        collision.

        Raises:
            PipelineError: Non-retryable, after the last name fails.
        """
        slug = slugify(item.title)
        stem = f"feature/{item.number}-{slug}" if slug else f"feature/{item.number}"
        base = await self._tracker.get_default_branch()

        for attempt in range(MAX_BRANCH_ATTEMPTS):
            name = stem if attempt == 0 else f"{stem}-{attempt}"
            try:
                await self._tracker.create_branch(name, base)
            except Exception as exc:
                self._logger.warn(
                    "Branch creation failed, retrying with suffix",
                    {"branch": name, "attempt": attempt + 1, "error": str(exc)},
                )
                continue

            try:
                await self._tracker.get_branch(name)
            except Exception as exc:
                self._logger.warn(
                    "Branch validation failed, branch may not be available yet",
                    {"branch": name, "error": str(exc)},
                )

            self._work.branch = name
            self._record(AuditEventType.BRANCH_CREATED, item.number, {"branch": name})
            self._logger.info("Branch created", {"branch": name, "issue_number": item.number})
            return name

        raise PipelineError(
            f"Failed to create branch after {MAX_BRANCH_ATTEMPTS} attempts",
            retryable=False,
            context={"issue_number": item.number},
        )

    # -----------------------------------------------------------------
    # Step 6: implement
    # -----------------------------------------------------------------

    async def implement(self, item: WorkItem, plan: Plan, branch: str) -> AgentResult:
        """Have the agent implement, test and push the plan to *branch*.

        Raises:
            PipelineError: Retryable, if the agent reports failure.
        """
        self._set_state(EngineState.IMPLEMENTING)
        settings = self._config
        repository = f"{settings.tracker.owner}/{settings.tracker.repo}"

        self._record(AuditEventType.IMPLEMENTATION_STARTED, item.number, {"branch": branch})

        task = AgentTask(
            prompt=prompts.implementation_prompt(item, plan, branch, repository),
            cwd=settings.engine.working_directory,
            model=settings.agent.model,
            max_budget_usd=settings.agent.max_budget_usd,
            permission_mode=settings.agent.permission_mode,
            allowed_tools=list(settings.agent.allowed_tools),
        )
        result = await self._agent.execute_task(task, self._progress("Implementation progress"))

        self._logger.info(
            "Implementation complete",
            {
                "issue_number": item.number,
                "success": result.success,
                "cost_usd": result.cost_usd,
                "duration_ms": result.duration_ms,
            },
        )

        if not result.success:
            self._record(
                AuditEventType.IMPLEMENTATION_FAILED, item.number, {"error": result.error}
            )
            raise PipelineError(
                f"Implementation failed: {result.error or 'Unknown error'}",
                retryable=True,
                context={"issue_number": item.number},
            )

        self._stats.total_cost_usd += result.cost_usd
        self._record(
            AuditEventType.IMPLEMENTATION_COMPLETED,
            item.number,
            {"costUsd": result.cost_usd, "durationMs": result.duration_ms},
        )
        return result

    # -----------------------------------------------------------------
    # Step 7: open change request
    # -----------------------------------------------------------------

    async def create_change_request(
        self, item: WorkItem, plan: Plan, branch: str
    ) -> ChangeRequest:
        """Open a change request from *branch* to the default branch."""
        self._set_state(EngineState.CREATING_PR)

        base = await self._tracker.get_default_branch()
        created = await self._tracker.create_change_request(
            title=prompts.change_request_title(item),
            body=prompts.change_request_body(item, plan),
            head=branch,
            base=base,
            labels=[prompts.AUTOMATED_LABEL],
        )
        change_request = replace(created, branch=branch)

        try:
            current = await self._tracker.get_change_request(change_request.number)
            if current.status != ChangeRequestStatus.OPEN:
                self._logger.warn(
                    "PR was created but is not in open state",
                    {"pr_number": change_request.number, "state": current.status.value},
                )
        except Exception as exc:
            self._logger.warn(
                "Failed to verify PR state",
                {"pr_number": change_request.number, "error": str(exc)},
            )

        await self._tracker.add_comment(
            item.number, prompts.change_request_comment(change_request.url)
        )

        self._work.change_request = change_request
        self._record(
            AuditEventType.PR_CREATED,
            item.number,
            {"prNumber": change_request.number, "url": change_request.url},
        )
        self._logger.info(
            "PR created",
            {
                "pr_number": change_request.number,
                "url": change_request.url,
                "issue_number": item.number,
            },
        )
        return change_request

    # -----------------------------------------------------------------
    # Step 8: monitor and merge
    # -----------------------------------------------------------------

    async def monitor_and_merge(self, change_request: ChangeRequest, item: WorkItem) -> bool:
        """Poll verification until it settles, then merge.

        Returns:
            ``True`` if this engine merged the change request, ``False`` if
            it was closed or merged by someone else.

        Raises:
            PipelineError: Non-retryable on failed verification or timeout;
                retryable if the merge itself is refused.
        """
        self._set_state(EngineState.MONITORING)
        poll_interval = self._config.engine.ci_poll_interval_seconds
        timeout = self._config.engine.ci_monitor_timeout_seconds
        started = self._clock()

        self._record(
            AuditEventType.CI_CHECK_STARTED, item.number, {"prNumber": change_request.number}
        )

        while True:
            if self._clock() - started > timeout:
                raise PipelineError(
                    f"CI monitoring timed out after {round(timeout / 60)} minutes",
                    retryable=False,
                    context={"pr_number": change_request.number, "timeout_seconds": timeout},
                )

            current = await self._tracker.get_change_request(change_request.number)
            if current.status == ChangeRequestStatus.CLOSED:
                self._logger.warn("PR was closed externally", {"pr_number": change_request.number})
                return False
            if current.status == ChangeRequestStatus.MERGED:
                self._logger.info("PR was merged externally", {"pr_number": change_request.number})
                return False

            status = await self._tracker.get_verification_status(change_request.branch)
            self._logger.debug(
                "CI status check",
                {
                    "pr_number": change_request.number,
                    "state": status.state.value,
                    "success": status.success_count,
                    "failure": status.failure_count,
                    "pending": status.pending_count,
                },
            )

            if status.state in (VerificationState.FAILURE, VerificationState.ERROR):
                self._record(
                    AuditEventType.CI_CHECK_FAILED,
                    item.number,
                    {"prNumber": change_request.number, "state": status.state.value},
                )
                self._logger.error(
                    "CI checks failed",
                    {"pr_number": change_request.number, "failures": status.failure_count},
                )
                raise PipelineError(
                    "CI checks failed for PR",
                    retryable=False,
                    context={"pr_number": change_request.number},
                )

            if status.state == VerificationState.SUCCESS:
                self._record(
                    AuditEventType.CI_CHECK_PASSED,
                    item.number,
                    {"prNumber": change_request.number},
                )
                await self._merge(change_request, item)
                return True

            await asyncio.sleep(poll_interval)

    async def _merge(self, change_request: ChangeRequest, item: WorkItem) -> None:
        self._set_state(EngineState.MERGING)
        settings = self._config.engine
        self._logger.info("CI checks passed, merging PR", {"pr_number": change_request.number})

        result = await self._tracker.merge_change_request(
            change_request.number, settings.merge_strategy
        )
        if not result.merged:
            raise PipelineError(
                f"Failed to merge PR: {result.message}",
                retryable=True,
                context={"pr_number": change_request.number},
            )
        self._work.change_request = replace(change_request, status=ChangeRequestStatus.MERGED)
        self._record(
            AuditEventType.PR_MERGED,
            item.number,
            {"prNumber": change_request.number, "sha": result.sha},
        )

        if settings.delete_branch_on_merge:
            try:
                await self._tracker.delete_branch(change_request.branch)
                self._record(
                    AuditEventType.BRANCH_DELETED, item.number, {"branch": change_request.branch}
                )
                self._logger.info("Branch deleted", {"branch": change_request.branch})
            except Exception as exc:
                self._logger.warn(
                    "Failed to delete branch",
                    {"branch": change_request.branch, "error": str(exc)},
                )
        else:
            self._logger.info(
                "Branch deletion skipped (delete_branch_on_merge=False)",
                {"branch": change_request.branch},
            )

        await self._tracker.add_comment(
            item.number, prompts.resolved_comment(change_request.number)
        )
        await self._tracker.close_issue(item.number)
        self._record(
            AuditEventType.ISSUE_CLOSED, item.number, {"prNumber": change_request.number}
        )

        self._stats.items_completed += 1
        self._logger.info(
            "Issue completed",
            {
                "issue_number": item.number,
                "pr_number": change_request.number,
                "merge_sha": result.sha,
            },
        )

    # -----------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------

    def _progress(self, label: str) -> Callable[[AgentProgress], None]:
        def report(event: AgentProgress) -> None:
            self._logger.debug(
                label,
                {"type": event.type, "message": event.message, "cost_so_far": event.cost_so_far},
            )

        return report

    def _record(
        self,
        type: AuditEventType,
        item_number: int | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        entry = self._audit_log.record(type, item_number, data or {})
        if self._on_event is not None:
            self._on_event(entry)

    def _set_state(self, state: EngineState) -> None:
        previous = self._state
        self._state = state
        item = self._work.item
        self._record(
            AuditEventType.STATE_TRANSITION,
            item.number if item else None,
            {"from": previous.value, "to": state.value},
        )
        self._logger.debug("State transition", {"from": previous.value, "to": state.value})
        if self._on_state_change is not None:
            self._on_state_change(state, item, self.get_stats())

    def _reset_current_work(self) -> None:
        self._work = CycleWork()
        self._set_state(EngineState.IDLE)
