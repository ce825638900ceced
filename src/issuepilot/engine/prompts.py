"""Text the engine sends to the agent, the tracker and the operator."""

from __future__ import annotations

from collections.abc import Sequence

from issuepilot.engine.collaborators import Commit
from issuepilot.engine.models import Plan, WorkItem

PICKUP_COMMENT = "🤖 issuepilot is picking up this issue and will begin working on it."
AUTOMATED_LABEL = "issuepilot-automated"


def build_context(
    item: WorkItem,
    full_item: WorkItem,
    related: Sequence[WorkItem],
    commits: Sequence[Commit],
) -> str:
    """Assemble the markdown context block used for planning.

    Args:
        item: The item as selected.
        full_item: The same item re-fetched, with the latest comments.
        related: Related items that could be fetched.
        commits: Recent repository history.
    """
    sections = [
        f"## Issue #{item.number}: {item.title}",
        f"**Labels:** {', '.join(item.labels)}",
        f"**Created:** {item.created_at}",
        "",
        "### Description",
        full_item.body,
        "",
    ]

    if full_item.comments:
        sections.append("### Comments")
        for comment in full_item.comments:
            sections.append(f"**{comment.author}** ({comment.created_at}):")
            sections.append(comment.body)
            sections.append("")

    if related:
        sections.append("### Related Issues")
        for other in related:
            sections.append(f"Related Issue #{other.number}: {other.title}\n{other.body}")
        sections.append("")

    if commits:
        sections.append("### Recent Commits")
        for commit in commits:
            first_line = commit.message.split("\n", 1)[0]
            sections.append(f"- `{commit.sha[:7]}` {first_line} ({commit.author})")
        sections.append("")

    return "\n".join(sections)


def plan_prompt(item: WorkItem, context: str) -> str:
    return f"""You are analyzing a GitHub issue to create a development plan.

{context}

Generate a structured development plan as JSON with the following fields:
- issueNumber: {item.number}
- summary: A brief summary of what needs to be done
- approach: Detailed implementation approach
- fileChanges: Array of {{ filePath, action ("create"|"modify"|"delete"), description }}
- testingStrategy: How to test the changes
- estimatedComplexity: "low", "medium", or "high"
- risks: Array of potential risks or concerns

If requirements are ambiguous, note the ambiguity in the risks array and make reasonable assumptions.
Consider multiple implementation options where appropriate and choose the best one, noting alternatives in the approach.

Return ONLY valid JSON matching the schema."""


def _file_change_lines(plan: Plan) -> list[str]:
    return [
        f"- [{fc.action.value}] {fc.path}: {fc.description}" for fc in plan.file_changes
    ]


def implementation_prompt(
    item: WorkItem, plan: Plan, branch: str, repository: str
) -> str:
    changes = "\n".join(_file_change_lines(plan))
    return f"""You are an autonomous coding agent. Implement the following plan for issue #{item.number}.

## Issue: {item.title}
{item.body}

## Plan
Summary: {plan.summary}
Approach: {plan.approach}

## File Changes
{changes}

## Testing Strategy
{plan.testing_strategy}

## Instructions
1. Implement all the file changes described in the plan.
2. Write or update tests as described in the testing strategy.
3. Ensure the project builds without errors.
4. Ensure all tests pass (run the project's test command).
5. Git add, commit, and push your changes to the branch: {branch}
   - Use remote: origin
   - Repository: {repository}
   - Commit message should reference issue #{item.number}

Follow existing project conventions and patterns."""


def render_plan(plan: Plan) -> str:
    """Human-readable plan for the approval gate."""
    rule = "=" * 60
    risks = ", ".join(plan.risks) if plan.risks else "None identified"
    lines = [
        "",
        rule,
        f"Development Plan for Issue #{plan.item_number}",
        rule,
        "",
        f"Summary: {plan.summary}",
        "",
        f"Approach: {plan.approach}",
        "",
        "File Changes:",
        *(f"  {line}" for line in _file_change_lines(plan)),
        "",
        f"Testing Strategy: {plan.testing_strategy}",
        f"Complexity: {plan.complexity.value}",
        f"Risks: {risks}",
        "",
        rule,
    ]
    return "\n".join(lines)


def change_request_title(item: WorkItem) -> str:
    return f"feat: {item.title} (#{item.number})"


def change_request_body(item: WorkItem, plan: Plan) -> str:
    risks = "\n".join(f"- {r}" for r in plan.risks) if plan.risks else "None identified"
    return "\n".join(
        [
            "## Summary",
            plan.summary,
            "",
            "## Approach",
            plan.approach,
            "",
            "## Changes",
            *(
                f"- **{fc.action.value}** `{fc.path}`: {fc.description}"
                for fc in plan.file_changes
            ),
            "",
            "## Testing",
            plan.testing_strategy,
            "",
            "## Risks",
            risks,
            "",
            f"Closes #{item.number}",
            "",
            "---",
            "_This PR was automatically generated by issuepilot._",
        ]
    )


def change_request_comment(url: str) -> str:
    return f"🤖 PR created: {url}"


def resolved_comment(change_request_number: int) -> str:
    return f"✅ Resolved via PR #{change_request_number}"
