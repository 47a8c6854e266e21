from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from foreman.learnings import LearningEntry
from foreman.tasklist import Task

PROTOCOL_INSTRUCTIONS = """\
Report what you learn as JSON lines on their own line, one object per line:
{"marker": "learning", "text": "<something the next iteration should know>"}
{"marker": "pattern", "text": "<a convention this codebase follows>"}
{"marker": "fixed", "error": "<error you hit>", "fix": "<what fixed it>"}
{"marker": "blocker", "text": "<what stops you and what is needed>"}
{"marker": "completed", "text": "<what you finished in this iteration>"}

Only when every task in the task list is checked and every quality gate passes, print:
{"marker": "complete"}
The claim is rejected if any gate fails, and then verified with the full test suite."""


@dataclass(slots=True)
class IterationContext:
    spec_path: Path
    iteration: int
    max_iterations: int
    task: Task | None = None
    previous_summary: str = ""
    pending_issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    learnings: str = ""
    similar_fixes: list[LearningEntry] = field(default_factory=list)
    continuation: str | None = None
    gates: list[str] = field(default_factory=list)


def _section(title: str, body: str) -> str:
    return f"## {title}\n\n{body.strip()}"


def build_prompt(context: IterationContext) -> str:
    blocks = [
        f"# Iteration {context.iteration} of {context.max_iterations}",
        (
            f"You are implementing the feature described in `{context.spec_path}`. "
            "That file is the task list and the single source of truth: read it first, "
            "keep its header and section layout intact, and update task checkboxes there."
        ),
    ]

    if context.pending_issues:
        issues = "\n\n".join(
            f"{index}. {issue}" for index, issue in enumerate(context.pending_issues, 1)
        )
        blocks.append(
            _section(
                "Fix these first",
                "The previous iteration left these problems. They were caused by recent changes, "
                "they are not pre-existing, and they must be fixed before anything else:\n\n"
                + issues,
            )
        )
    if context.warnings:
        warnings = "\n".join(f"- {warning}" for warning in context.warnings)
        blocks.append(_section("Warnings", warnings))
    if context.previous_summary:
        blocks.append(_section("Previous iteration", context.previous_summary))
    if context.learnings:
        blocks.append(_section("Learnings from earlier iterations", context.learnings))
    if context.similar_fixes:
        fixes = "\n".join(f"- {entry.text}" for entry in context.similar_fixes)
        blocks.append(_section("Fixes that worked for similar errors", fixes))
    if context.continuation:
        blocks.append(_section("Continuation note", context.continuation))

    if context.task is not None:
        task_body = (
            f"{context.task.id}: {context.task.description}\n\n"
            "Work on this task only. It is marked in progress (`[~]`); mark it `[x]` when it is "
            "done and its gates pass. If you cannot finish, leave a "
            "`<!-- CONTINUATION: ... -->` note in the Notes section for the next iteration."
        )
    else:
        task_body = (
            "No pending task is left. Confirm the Exit Criteria hold and that every quality "
            "gate passes, then emit the completion marker."
        )
    blocks.append(_section("Your task", task_body))

    if context.gates:
        gates = "\n".join(f"- `{command}`" for command in context.gates)
        blocks.append(
            _section(
                "Quality gates",
                f"These commands run after you finish and must pass:\n{gates}\n\n"
                "Do not skip, disable or weaken them.",
            )
        )
    blocks.append(_section("Reporting protocol", PROTOCOL_INSTRUCTIONS))
    return "\n\n".join(blocks) + "\n"


def rejected_completion_issue(issue: str) -> str:
    """Wrap a gate failure that contradicted a completion claim."""
    return (
        "You claimed the work is complete, but a blocking quality gate failed. The completion "
        "claim was rejected. This failure is NOT pre-existing and NOT environmental; it must be "
        "fixed in this iteration.\n\n" + issue
    )
