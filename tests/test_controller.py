import asyncio
import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Any

from foreman.backends import AgentRun, PermanentAgentFailure, ShutdownRequested
from foreman.config import ForemanConfig
from foreman.controller import EXIT_SHUTDOWN, LoopController, LoopStatus, SpecPaths
from foreman.gates import GateRunner
from foreman.learnings import LearningStore
from foreman.shutdown import ShutdownFlag
from foreman.state import IterationJournal, IterationOutcome, StateStore
from foreman.tasklist import TaskListDocument, TaskStatus
from foreman.verifier import VerificationResult

SPEC = """\
---
status: pending
iteration: 0
created: 2026-10-01T00:00:00+00:00
---
# Checkout

## Tasks
- [ ] Add cart model
- [ ] Add checkout endpoint

## Quality Gates
```gates
pytest -q
```

## Exit Criteria
- [ ] Orders can be placed
"""

GATE_ERROR = "FAILED tests/test_cart.py::test_total - assert 2 == 3"

Step = Callable[[], str] | Exception


class FakeInvoker:
    """Replays worker steps; the last step repeats once the script runs out."""

    def __init__(self, steps: list[Step]) -> None:
        self.steps = list(steps)
        self.prompts: list[str] = []

    async def invoke(self, prompt: str, log_path: Path) -> AgentRun:
        self.prompts.append(prompt)
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, Exception):
            raise step
        output = step()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text(output, encoding="utf-8")
        return AgentRun(output=output, exit_code=0, attempts=1)


class FakeVerifier:
    def __init__(self, outcomes: list[bool]) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    def verify(self, spec_dir: Path) -> VerificationResult:
        self.calls += 1
        passed = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if passed:
            return VerificationResult(passed=True)
        return VerificationResult(
            passed=False,
            reasons=["Tests failed: `pytest -q tests` (exit 1):\n```\nE assert 2 == 3\n```"],
        )


class GateOutcome:
    def __init__(self, failing: bool) -> None:
        self.failing = failing
        self.calls: list[list[str]] = []

    def __call__(self, argv: list[str], **_: Any) -> subprocess.CompletedProcess[str]:
        self.calls.append(argv)
        if self.failing:
            return subprocess.CompletedProcess(argv, 1, stdout=GATE_ERROR + "\n1 failed\n")
        return subprocess.CompletedProcess(argv, 0, stdout="2 passed\n")


def _spec_dir(tmp_path: Path, text: str = SPEC) -> Path:
    spec_dir = tmp_path / "specs" / "checkout"
    spec_dir.mkdir(parents=True)
    (spec_dir / "SPEC.md").write_text(text, encoding="utf-8")
    return spec_dir


def _controller(
    tmp_path: Path,
    spec_dir: Path,
    invoker: FakeInvoker,
    gates: GateOutcome,
    verifier: FakeVerifier,
    *,
    shutdown: ShutdownFlag | None = None,
    config: ForemanConfig | None = None,
) -> LoopController:
    config = config or ForemanConfig.default()
    config.loop.iteration_delay_seconds = 0
    config.gates.allowed_programs = ["pytest"]
    store = StateStore(SpecPaths(spec_dir).state_dir)
    return LoopController(
        spec_dir,
        config,
        invoker=invoker,
        gate_runner=GateRunner(
            tmp_path, config.gates, store=store, runner=gates, shutdown=shutdown
        ),
        learnings=LearningStore(tmp_path / ".foreman" / "learnings.jsonl"),
        verifier=verifier,
        store=store,
        shutdown=shutdown,
    )


def _finish_all_tasks(spec_dir: Path, output: str) -> Callable[[], str]:
    def _step() -> str:
        document = TaskListDocument.load(spec_dir / "SPEC.md")
        for task in document.tasks.leaves():
            if task.status is not TaskStatus.COMPLETED:
                document.tasks.transition(task.id, TaskStatus.COMPLETED)
        document.save()
        return output

    return _step


def _say(output: str) -> Callable[[], str]:
    return lambda: output


COMPLETE = '{"marker": "learning", "text": "Cart totals use Decimal"}\n{"marker": "complete"}\n'


def test_verified_completion_after_one_iteration(tmp_path: Path) -> None:
    spec_dir = _spec_dir(tmp_path)
    invoker = FakeInvoker([_finish_all_tasks(spec_dir, COMPLETE)])
    verifier = FakeVerifier([True])
    controller = _controller(tmp_path, spec_dir, invoker, GateOutcome(False), verifier)

    result = asyncio.run(controller.run())

    assert result.status is LoopStatus.COMPLETED
    assert result.exit_code == 0
    assert result.iterations == 1
    assert verifier.calls == 1
    document = TaskListDocument.load(spec_dir / "SPEC.md")
    assert document.status == "complete"
    assert document.iteration == 1
    records = IterationJournal(SpecPaths(spec_dir).journal).records()
    assert [record.outcome for record in records] == [IterationOutcome.SUCCESS]
    assert records[0].completion_claimed is True
    assert records[0].task_id == "task-001"
    learnings = controller.learnings.query("discovery", limit=5, spec="checkout")
    assert [entry.text for entry in learnings] == ["Cart totals use Decimal"]
    assert "Add cart model" in invoker.prompts[0]
    assert "## Quality gates" in invoker.prompts[0]
    assert (spec_dir / "logs" / "iteration-001.log").exists()
    metrics = controller.store.get_metrics()
    assert metrics["iterations"] == 1
    assert metrics["verifications"] == 1


def test_completion_claim_with_failing_gate_is_never_completed(tmp_path: Path) -> None:
    spec_dir = _spec_dir(tmp_path)
    invoker = FakeInvoker([_say(COMPLETE)])
    verifier = FakeVerifier([True])
    controller = _controller(tmp_path, spec_dir, invoker, GateOutcome(True), verifier)

    result = asyncio.run(controller.run(max_iterations=2))

    assert result.status is LoopStatus.MAX_ITERATIONS
    assert result.exit_code == 1
    assert result.iterations == 2
    assert verifier.calls == 0
    records = IterationJournal(SpecPaths(spec_dir).journal).records()
    assert [record.outcome for record in records] == [IterationOutcome.TRANSIENT_FAILURE] * 2
    assert all(record.completion_claimed for record in records)
    assert TaskListDocument.load(spec_dir / "SPEC.md").status == "max_iterations"
    state = controller.load_state()
    assert len(state.pending_issues) == 1
    assert "completion claim was rejected" in state.pending_issues[0]
    assert GATE_ERROR in state.pending_issues[0]
    second_prompt = invoker.prompts[1]
    assert "## Fix these first" in second_prompt
    assert "NOT pre-existing" in second_prompt
    assert GATE_ERROR in second_prompt
    assert controller.store.get_metrics()["completion_rejections"] == 2


def test_all_tasks_completed_skips_the_worker(tmp_path: Path) -> None:
    spec_dir = _spec_dir(
        tmp_path,
        SPEC.replace("- [ ] Add cart", "- [x] Add cart").replace(
            "- [ ] Add checkout", "- [x] Add checkout"
        ),
    )
    invoker = FakeInvoker([_say("should not run")])
    verifier = FakeVerifier([True])
    controller = _controller(tmp_path, spec_dir, invoker, GateOutcome(False), verifier)

    result = asyncio.run(controller.run())

    assert result.status is LoopStatus.COMPLETED
    assert result.iterations == 0
    assert invoker.prompts == []
    assert verifier.calls == 1


def test_checked_off_tasks_with_failing_gates_are_never_completed(tmp_path: Path) -> None:
    spec_dir = _spec_dir(tmp_path)
    invoker = FakeInvoker([_finish_all_tasks(spec_dir, COMPLETE)])
    verifier = FakeVerifier([True])
    gates = GateOutcome(True)
    controller = _controller(tmp_path, spec_dir, invoker, gates, verifier)

    result = asyncio.run(controller.run(max_iterations=3))

    assert result.status is LoopStatus.MAX_ITERATIONS
    assert verifier.calls == 0
    assert len(invoker.prompts) == 3
    assert "No pending task is left" in invoker.prompts[1]
    assert GATE_ERROR in invoker.prompts[1]
    assert len(gates.calls) == 3
    assert controller.store.get_gate_counters()["pytest -q"]["count"] == 3


def test_checked_off_spec_with_failing_gates_invokes_the_worker(tmp_path: Path) -> None:
    spec_dir = _spec_dir(
        tmp_path,
        SPEC.replace("- [ ] Add cart", "- [x] Add cart").replace(
            "- [ ] Add checkout", "- [x] Add checkout"
        ),
    )
    invoker = FakeInvoker([_say("Looking into the failing total.")])
    verifier = FakeVerifier([True])
    gates = GateOutcome(True)
    controller = _controller(tmp_path, spec_dir, invoker, gates, verifier)

    result = asyncio.run(controller.run(max_iterations=1))

    assert result.status is LoopStatus.MAX_ITERATIONS
    assert verifier.calls == 0
    assert "No pending task is left" in invoker.prompts[0]
    assert GATE_ERROR in invoker.prompts[0]
    assert len(gates.calls) == 2
    assert controller.store.get_gate_counters()["pytest -q"]["count"] == 1


def test_failed_verification_adds_a_corrective_task(tmp_path: Path) -> None:
    spec_dir = _spec_dir(tmp_path)
    invoker = FakeInvoker([_finish_all_tasks(spec_dir, COMPLETE)])
    verifier = FakeVerifier([False, True])
    controller = _controller(tmp_path, spec_dir, invoker, GateOutcome(False), verifier)

    result = asyncio.run(controller.run())

    assert result.status is LoopStatus.COMPLETED
    assert result.iterations == 2
    assert verifier.calls == 2
    second_prompt = invoker.prompts[1]
    assert "Fix completion verification failure: Tests failed" in second_prompt
    assert "Completion verification failed:" in second_prompt
    descriptions = [
        task.description for task in TaskListDocument.load(spec_dir / "SPEC.md").tasks.tasks
    ]
    assert any(text.startswith("Fix completion verification failure") for text in descriptions)


def test_consecutive_permanent_failures_block_before_max_iterations(tmp_path: Path) -> None:
    spec_dir = _spec_dir(tmp_path)
    invoker = FakeInvoker([PermanentAgentFailure("Worker failed after 3 attempts.", attempts=3)])
    controller = _controller(tmp_path, spec_dir, invoker, GateOutcome(False), FakeVerifier([True]))

    result = asyncio.run(controller.run(max_iterations=10))

    assert result.status is LoopStatus.BLOCKED
    assert result.exit_code == 1
    assert result.iterations == 3
    assert "resume" in result.message
    state = controller.load_state()
    assert state.consecutive_failures == 3
    records = IterationJournal(SpecPaths(spec_dir).journal).records()
    assert [record.outcome for record in records] == [IterationOutcome.PERMANENT_FAILURE] * 3
    failures = controller.learnings.query("iteration_failure", limit=10, spec="checkout")
    assert len(failures) == 3

    resumed_invoker = FakeInvoker([_finish_all_tasks(spec_dir, COMPLETE)])
    resumed = _controller(
        tmp_path, spec_dir, resumed_invoker, GateOutcome(False), FakeVerifier([True])
    )
    result = asyncio.run(resumed.run())

    assert result.status is LoopStatus.COMPLETED
    assert resumed.load_state().consecutive_failures == 0
    last = IterationJournal(SpecPaths(spec_dir).journal).last()
    assert last is not None
    assert last.iteration == 4


def test_repeated_identical_gate_failure_aborts(tmp_path: Path) -> None:
    spec_dir = _spec_dir(tmp_path)
    config = ForemanConfig.default()
    config.gates.repeat_failure_threshold = 1
    config.gates.repeat_failure_abort = 2
    invoker = FakeInvoker([_say("Tried again, the total is still off by one somewhere.")])
    controller = _controller(
        tmp_path, spec_dir, invoker, GateOutcome(True), FakeVerifier([True]), config=config
    )

    result = asyncio.run(controller.run(max_iterations=10))

    assert result.status is LoopStatus.BLOCKED
    assert result.iterations == 2
    assert "identical error" in result.message
    assert "failed 1 times in a row" in invoker.prompts[1]


def test_only_blocked_tasks_left_blocks_without_invoking(tmp_path: Path) -> None:
    spec_dir = _spec_dir(
        tmp_path,
        SPEC.replace("- [ ] Add cart", "- [x] Add cart").replace(
            "- [ ] Add checkout", "- [!] Add checkout"
        ),
    )
    invoker = FakeInvoker([_say("should not run")])
    controller = _controller(tmp_path, spec_dir, invoker, GateOutcome(False), FakeVerifier([True]))

    result = asyncio.run(controller.run())

    assert result.status is LoopStatus.BLOCKED
    assert invoker.prompts == []


def test_shutdown_before_the_first_iteration_is_resumable(tmp_path: Path) -> None:
    spec_dir = _spec_dir(tmp_path)
    flag = ShutdownFlag()
    flag.request("SIGTERM")
    invoker = FakeInvoker([_say("should not run")])
    controller = _controller(
        tmp_path, spec_dir, invoker, GateOutcome(False), FakeVerifier([True]), shutdown=flag
    )

    result = asyncio.run(controller.run())

    assert result.status is LoopStatus.STOPPED
    assert result.exit_code == EXIT_SHUTDOWN
    assert invoker.prompts == []
    assert controller.load_state().shutdown_requested is True
    assert TaskListDocument.load(spec_dir / "SPEC.md").status == "stopped"


def test_shutdown_during_the_worker_run_is_journaled(tmp_path: Path) -> None:
    spec_dir = _spec_dir(tmp_path)
    flag = ShutdownFlag()

    def _interrupted() -> str:
        flag.request("SIGINT")
        raise ShutdownRequested()

    invoker = FakeInvoker([_interrupted])
    controller = _controller(
        tmp_path, spec_dir, invoker, GateOutcome(False), FakeVerifier([True]), shutdown=flag
    )

    result = asyncio.run(controller.run())

    assert result.status is LoopStatus.STOPPED
    assert result.exit_code == 130
    last = IterationJournal(SpecPaths(spec_dir).journal).last()
    assert last is not None
    assert last.outcome is IterationOutcome.TRANSIENT_FAILURE
    assert last.notes == "interrupted by shutdown"
    assert "SIGINT" in result.message


def test_fresh_run_keeps_iteration_numbers_and_clears_gate_counters(tmp_path: Path) -> None:
    spec_dir = _spec_dir(tmp_path)
    invoker = FakeInvoker([_say("Working on it, the cart model needs a migration first.")])
    controller = _controller(tmp_path, spec_dir, invoker, GateOutcome(True), FakeVerifier([True]))
    asyncio.run(controller.run(max_iterations=2))
    assert controller.store.get_gate_counters()["pytest -q"]["count"] == 2

    state = controller.load_state(fresh=True)

    assert state.iteration == 2
    assert state.pending_issues == []
    assert controller.store.get_gate_counters() == {}


def test_shutdown_during_the_gates_skips_verification(tmp_path: Path) -> None:
    spec_dir = _spec_dir(tmp_path, SPEC.replace("pytest -q\n", "pytest -q\npytest -q tests/e2e\n"))
    flag = ShutdownFlag()
    gates = GateOutcome(False)

    def _runner(argv: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        flag.request("SIGTERM")
        return gates(argv, **kwargs)

    verifier = FakeVerifier([True])
    controller = _controller(
        tmp_path,
        spec_dir,
        FakeInvoker([_finish_all_tasks(spec_dir, COMPLETE)]),
        _runner,  # type: ignore[arg-type]
        verifier,
        shutdown=flag,
    )

    result = asyncio.run(controller.run())

    assert result.status is LoopStatus.STOPPED
    assert result.exit_code == EXIT_SHUTDOWN
    assert gates.calls == [["pytest", "-q"]]
    assert verifier.calls == 0
    last = IterationJournal(SpecPaths(spec_dir).journal).last()
    assert last is not None
    assert last.notes == "interrupted by shutdown"
    assert last.completion_claimed is False
    assert TaskListDocument.load(spec_dir / "SPEC.md").status == "stopped"
