"""Iteration loop: context, invoke, validate, learn, decide."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from foreman.backends import PermanentAgentFailure, ResilientInvoker, ShutdownRequested
from foreman.config import ForemanConfig
from foreman.gates import GateReport, GateRunner
from foreman.learnings import LearningEntry, LearningStore, summarize
from foreman.markers import has_completion_marker
from foreman.prompts import IterationContext, build_prompt, rejected_completion_issue
from foreman.shutdown import ShutdownFlag
from foreman.state import IterationJournal, IterationOutcome, IterationRecord, StateStore
from foreman.state.store import atomic_write_text
from foreman.tasklist import TaskListDocument
from foreman.verifier import CompletionVerifier, VerificationResult

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_SHUTDOWN = 130


class LoopStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    BLOCKED = "blocked"
    MAX_ITERATIONS = "max_iterations"
    STOPPED = "stopped"


HEADER_STATUS = {
    LoopStatus.IDLE: "pending",
    LoopStatus.RUNNING: "building",
    LoopStatus.COMPLETED: "complete",
    LoopStatus.BLOCKED: "blocked",
    LoopStatus.MAX_ITERATIONS: "max_iterations",
    LoopStatus.STOPPED: "stopped",
}
EXIT_CODES = {
    LoopStatus.COMPLETED: EXIT_SUCCESS,
    LoopStatus.BLOCKED: EXIT_FAILURE,
    LoopStatus.MAX_ITERATIONS: EXIT_FAILURE,
    LoopStatus.STOPPED: EXIT_SHUTDOWN,
}


@dataclass(slots=True)
class SpecPaths:
    spec_dir: Path

    @property
    def document(self) -> Path:
        return self.spec_dir / "SPEC.md"

    @property
    def logs_dir(self) -> Path:
        return self.spec_dir / "logs"

    @property
    def runtime_dir(self) -> Path:
        return self.spec_dir / ".foreman"

    @property
    def state_dir(self) -> Path:
        return self.runtime_dir / "state"

    @property
    def journal(self) -> Path:
        return self.runtime_dir / "iterations.jsonl"

    @property
    def context(self) -> Path:
        return self.runtime_dir / "context.md"

    def log_path(self, iteration: int) -> Path:
        return self.logs_dir / f"iteration-{iteration:03d}.log"


@dataclass(slots=True)
class LoopState:
    iteration: int = 0
    consecutive_failures: int = 0
    max_iterations: int = 25
    pending_issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    last_summary: str = ""
    last_error: str = ""
    shutdown_requested: bool = False
    status: LoopStatus = LoopStatus.IDLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "consecutive_failures": self.consecutive_failures,
            "max_iterations": self.max_iterations,
            "pending_issues": list(self.pending_issues),
            "warnings": list(self.warnings),
            "last_summary": self.last_summary,
            "last_error": self.last_error,
            "shutdown_requested": self.shutdown_requested,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> LoopState:
        try:
            status = LoopStatus(payload.get("status", LoopStatus.IDLE.value))
        except ValueError:
            status = LoopStatus.IDLE
        return cls(
            iteration=int(payload.get("iteration", 0)),
            consecutive_failures=int(payload.get("consecutive_failures", 0)),
            max_iterations=int(payload.get("max_iterations", 25)),
            pending_issues=[str(item) for item in payload.get("pending_issues", [])],
            warnings=[str(item) for item in payload.get("warnings", [])],
            last_summary=str(payload.get("last_summary", "")),
            last_error=str(payload.get("last_error", "")),
            shutdown_requested=bool(payload.get("shutdown_requested", False)),
            status=status,
        )


@dataclass(slots=True)
class LoopResult:
    status: LoopStatus
    iterations: int
    exit_code: int
    message: str = ""


def _corrective_description(verification: VerificationResult) -> str:
    first = verification.reasons[0].splitlines()[0] if verification.reasons else "unknown failure"
    extra = len(verification.reasons) - 1
    suffix = f" (+{extra} more)" if extra > 0 else ""
    return f"Fix completion verification failure: {first[:160]}{suffix}"


class LoopController:
    def __init__(
        self,
        spec_dir: Path,
        config: ForemanConfig,
        *,
        invoker: ResilientInvoker,
        gate_runner: GateRunner,
        learnings: LearningStore,
        verifier: CompletionVerifier,
        store: StateStore | None = None,
        shutdown: ShutdownFlag | None = None,
    ) -> None:
        self.paths = SpecPaths(spec_dir)
        self.config = config
        self.invoker = invoker
        self.gate_runner = gate_runner
        self.learnings = learnings
        self.verifier = verifier
        self.store = store or StateStore(self.paths.state_dir)
        self.journal = IterationJournal(self.paths.journal)
        self.shutdown = shutdown or ShutdownFlag()

    @property
    def spec_name(self) -> str:
        return self.paths.spec_dir.name

    def _increment_metric(self, key: str, value: int = 1) -> None:
        metrics = self.store.get_metrics()
        metrics[key] = int(metrics.get(key, 0)) + value
        self.store.set_metrics(metrics)

    def load_state(self, *, fresh: bool = False) -> LoopState:
        if fresh:
            last = self.journal.last()
            self.store.set_gate_counters({})
            return LoopState(iteration=last.iteration if last else 0)
        return LoopState.from_dict(self.store.get_loop())

    def _save_state(self, state: LoopState) -> None:
        self.store.set_loop(state.to_dict())

    def _load_document(self) -> TaskListDocument:
        document = TaskListDocument.load(self.paths.document)
        if document.demoted:
            # The parse already demoted extra in-progress claims; persist the repair.
            document.save()
        return document

    def _finish(
        self,
        state: LoopState,
        status: LoopStatus,
        message: str,
        *,
        iterations: int,
    ) -> LoopResult:
        state.status = status
        state.shutdown_requested = status is LoopStatus.STOPPED
        self._save_state(state)
        document = TaskListDocument.load(self.paths.document)
        document.status = HEADER_STATUS[status]
        document.iteration = state.iteration
        document.save()
        if status is LoopStatus.COMPLETED:
            logger.info(message)
        else:
            logger.warning(message)
        return LoopResult(
            status=status, iterations=iterations, exit_code=EXIT_CODES[status], message=message
        )

    def _verify(self, state: LoopState) -> VerificationResult:
        self._increment_metric("verifications")
        verification = self.verifier.verify(self.paths.spec_dir)
        if verification.passed:
            return verification
        self._increment_metric("verification_failures")
        document = TaskListDocument.load(self.paths.document)
        task = document.tasks.add_task(_corrective_description(verification))
        document.save()
        logger.warning("Verification failed; added corrective task %s", task.id)
        state.pending_issues = [
            f"Completion verification failed: {reason}" for reason in verification.reasons
        ]
        return verification

    def _build_context(self, state: LoopState, document: TaskListDocument) -> IterationContext:
        similar: list[LearningEntry] = []
        if state.last_error:
            similar = self.learnings.find_similar_fixes(
                state.last_error, limit=self.config.learnings.similar_fix_limit
            )
        learnings = self.learnings.render(
            self.spec_name, limit=self.config.learnings.render_limit
        )
        atomic_write_text(self.paths.context, learnings + ("\n" if learnings else ""))
        return IterationContext(
            spec_path=self.paths.document,
            iteration=state.iteration,
            max_iterations=state.max_iterations,
            task=document.tasks.in_progress(),
            previous_summary=state.last_summary,
            pending_issues=list(state.pending_issues),
            warnings=list(state.warnings),
            learnings=learnings,
            similar_fixes=similar,
            continuation=document.continuation(),
            gates=[item.command for item in document.gates()],
        )

    def _record_failure_learning(self, iteration: int, text: str) -> None:
        self.learnings.append(
            LearningEntry(
                category="iteration_failure",
                text=text,
                spec=self.spec_name,
                iteration=iteration,
            )
        )

    def _issues_after_gates(self, report: GateReport, claimed: bool) -> list[str]:
        if claimed and not report.passed:
            self._increment_metric("completion_rejections")
            logger.warning("Completion claim rejected: blocking gates failed")
            issues = [rejected_completion_issue(issue) for issue in report.issues]
            return [*issues, *report.probe_issues]
        return report.all_issues()

    async def _pause(self) -> None:
        delay = self.config.loop.iteration_delay_seconds
        if delay > 0 and not self.shutdown.requested:
            await self.shutdown.sleep(delay)

    async def run(self, *, fresh: bool = False, max_iterations: int | None = None) -> LoopResult:
        state = self.load_state(fresh=fresh)
        budget = max_iterations if max_iterations is not None else self.config.loop.max_iterations
        state.max_iterations = state.iteration + budget
        if state.consecutive_failures:
            logger.info("Resuming; clearing %d consecutive failures", state.consecutive_failures)
        state.consecutive_failures = 0
        state.shutdown_requested = False
        state.status = LoopStatus.RUNNING
        self._save_state(state)
        ran = 0
        last_report: GateReport | None = None
        logger.info(
            "Starting loop for %s at iteration %d (budget %d)",
            self.spec_name,
            state.iteration + 1,
            budget,
        )

        while True:
            if self.shutdown.requested:
                return self._finish(
                    state,
                    LoopStatus.STOPPED,
                    f"Stopped by {self.shutdown.reason}. "
                    f"Resume with `foreman run {self.paths.spec_dir}`.",
                    iterations=ran,
                )

            document = self._load_document()
            if document.tasks.all_complete():
                # Gates that ran after the last worker run still describe the tree.
                report = last_report
                last_report = None
                if report is None:
                    report = self.gate_runner.run(document.gates(), record=False)
                    if self.shutdown.requested:
                        continue
                    if not report.passed:
                        logger.warning("All tasks are checked off but quality gates fail")
                        state.pending_issues = self._issues_after_gates(report, True)
                        state.warnings = list(report.warnings)
                        failing = report.blocking_failures
                        state.last_error = failing[0].output if failing else ""
                        self._save_state(state)
                if report.passed:
                    logger.info("All tasks complete; verifying without invoking the worker")
                    verification = self._verify(state)
                    if verification.passed:
                        return self._finish(
                            state, LoopStatus.COMPLETED, "Work verified complete.", iterations=ran
                        )
                    self._save_state(state)
                    continue
            if document.tasks.count("pending") == 0 and document.tasks.count("blocked"):
                return self._finish(
                    state,
                    LoopStatus.BLOCKED,
                    f"Only blocked tasks remain in {self.paths.document}. Unblock them, then "
                    "resume with `foreman run`.",
                    iterations=ran,
                )

            if state.iteration >= state.max_iterations:
                return self._finish(
                    state,
                    LoopStatus.MAX_ITERATIONS,
                    f"Reached {state.max_iterations} iterations without verified completion. "
                    f"Inspect {self.paths.logs_dir} and resume with `foreman run`.",
                    iterations=ran,
                )

            state.iteration += 1
            ran += 1
            last_report = None
            iteration = state.iteration
            document.tasks.start_next()
            document.status = HEADER_STATUS[LoopStatus.RUNNING]
            document.iteration = iteration
            document.save()
            context = self._build_context(state, document)
            carried_issues = list(state.pending_issues)
            task = context.task
            log_path = self.paths.log_path(iteration)
            logger.info(
                "Iteration %d: %s",
                iteration,
                f"{task.id} {task.description}" if task else "no pending task",
            )
            self._increment_metric("iterations")

            try:
                run = await self.invoker.invoke(build_prompt(context), log_path)
            except ShutdownRequested:
                self.journal.append(
                    IterationRecord(
                        iteration=iteration,
                        outcome=IterationOutcome.TRANSIENT_FAILURE,
                        log_path=str(log_path),
                        task_id=task.id if task else None,
                        notes="interrupted by shutdown",
                    )
                )
                continue
            except PermanentAgentFailure as exc:
                state.consecutive_failures += 1
                self._increment_metric("permanent_failures")
                self._record_failure_learning(iteration, f"Worker failed permanently: {exc}")
                self.journal.append(
                    IterationRecord(
                        iteration=iteration,
                        outcome=IterationOutcome.PERMANENT_FAILURE,
                        log_path=str(log_path),
                        task_id=task.id if task else None,
                        notes=str(exc),
                    )
                )
                state.last_summary = f"Previous iteration: FAILED. The worker did not run: {exc}"
                # The worker never saw these issues, so they stay for one more attempt.
                state.pending_issues = carried_issues
                self._save_state(state)
                limit = self.config.loop.max_consecutive_failures
                if state.consecutive_failures >= limit:
                    return self._finish(
                        state,
                        LoopStatus.BLOCKED,
                        f"Aborted after {state.consecutive_failures} consecutive worker failures. "
                        f"Fix the worker, then resume with `foreman run {self.paths.spec_dir}`.",
                        iterations=ran,
                    )
                await self._pause()
                continue

            state.consecutive_failures = 0
            document = self._load_document()
            report = self.gate_runner.run(document.gates())
            self.learnings.record_output(run.output, spec=self.spec_name, iteration=iteration)
            if self.shutdown.requested:
                self.journal.append(
                    IterationRecord(
                        iteration=iteration,
                        outcome=IterationOutcome.TRANSIENT_FAILURE,
                        log_path=str(log_path),
                        task_id=task.id if task else None,
                        gates=[result.to_dict() for result in report.results],
                        notes="interrupted by shutdown",
                    )
                )
                state.pending_issues = report.all_issues() or carried_issues
                self._save_state(state)
                continue
            last_report = report
            claimed = has_completion_marker(run.output)

            state.pending_issues = self._issues_after_gates(report, claimed)
            state.warnings = list(report.warnings)
            failing = report.blocking_failures
            state.last_error = failing[0].output if failing else ""
            state.last_summary = summarize(run.output, passed=report.passed).render()
            if not report.passed:
                self._increment_metric("gate_failures")
                self._record_failure_learning(
                    iteration,
                    "Iteration failed quality gates: "
                    + ", ".join(f"`{result.command}`" for result in failing),
                )

            self.journal.append(
                IterationRecord(
                    iteration=iteration,
                    outcome=(
                        IterationOutcome.SUCCESS
                        if report.passed
                        else IterationOutcome.TRANSIENT_FAILURE
                    ),
                    log_path=str(log_path),
                    task_id=task.id if task else None,
                    completion_claimed=claimed,
                    gates=[result.to_dict() for result in report.results],
                )
            )
            self._save_state(state)

            if report.abort_requested:
                return self._finish(
                    state,
                    LoopStatus.BLOCKED,
                    "Aborted: a quality gate kept failing with the identical error "
                    f"{self.config.gates.repeat_failure_abort} times. Fix it by hand, then "
                    f"resume with `foreman run {self.paths.spec_dir}`.",
                    iterations=ran,
                )

            if claimed and report.passed:
                logger.info("Completion claimed with passing gates; verifying")
                verification = self._verify(state)
                if verification.passed:
                    return self._finish(
                        state, LoopStatus.COMPLETED, "Work verified complete.", iterations=ran
                    )
                self._save_state(state)

            await self._pause()
