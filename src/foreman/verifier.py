from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from foreman.config import GatesConfig, VerifyConfig
from foreman.gates import (
    CommandPolicy,
    CommandRunner,
    UnsafeGateCommand,
    discover_gates,
    execute_gate,
)
from foreman.tasklist import DeclaredCommand, TaskListDocument

logger = logging.getLogger(__name__)

PASSED_PATTERN = re.compile(r"(\d+)\s+(?:passed|passing|tests? passed)", re.IGNORECASE)
FAILED_PATTERN = re.compile(r"(\d+)\s+(?:failed|failing|failures?|errors?)\b", re.IGNORECASE)


@dataclass(slots=True)
class VerificationStep:
    name: str
    command: str
    passed: bool
    advisory: bool = False
    unsafe: bool = False
    exit_code: int | None = None
    output: str = ""
    note: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class VerificationResult:
    passed: bool
    reasons: list[str] = field(default_factory=list)
    steps: list[VerificationStep] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "reasons": list(self.reasons),
            "steps": [step.to_dict() for step in self.steps],
        }


def parse_test_summary(output: str) -> tuple[int | None, int | None]:
    """Sum the ``N passed`` and ``N failed`` counts reported by common runners."""
    passed_counts = [int(value) for value in PASSED_PATTERN.findall(output)]
    failed_counts = [int(value) for value in FAILED_PATTERN.findall(output)]
    passed = sum(passed_counts) if passed_counts else None
    failed = sum(failed_counts) if failed_counts else None
    return passed, failed


def _excerpt(step: VerificationStep) -> str:
    if step.unsafe:
        status = "rejected"
    elif step.exit_code is None:
        status = "timed out"
    else:
        status = f"exit {step.exit_code}"
    body = step.output.strip() or "(no output captured)"
    return f"`{step.command}` ({status}):\n```\n{body}\n```"


class CompletionVerifier:
    """Integration checks run before a completion claim is accepted."""

    def __init__(
        self,
        root: Path,
        config: VerifyConfig,
        gates_config: GatesConfig,
        *,
        runner: CommandRunner = subprocess.run,
    ) -> None:
        self.root = root
        self.config = config
        self.gates_config = gates_config
        self.policy = CommandPolicy(gates_config.allowed_programs)
        self.runner = runner

    def _run(self, name: str, item: DeclaredCommand) -> tuple[VerificationStep, str]:
        try:
            command = self.policy.parse(item.command, informational=item.informational)
        except UnsafeGateCommand as exc:
            logger.error("Rejected %s command %r: %s", name, item.command, exc.reason)
            step = VerificationStep(
                name=name,
                command=item.command.strip(),
                passed=False,
                unsafe=True,
                output=exc.reason,
            )
            return step, exc.reason
        logger.info("Verification %s: %s", name, command.display)
        result, full_output = execute_gate(
            command,
            cwd=self.root,
            timeout_seconds=self.config.timeout_seconds,
            output_tail_lines=self.gates_config.output_tail_lines,
            runner=self.runner,
        )
        step = VerificationStep(
            name=name,
            command=result.command,
            passed=result.passed,
            advisory=item.informational,
            exit_code=result.exit_code,
            output=result.output,
        )
        return step, full_output

    @staticmethod
    def _pick(declared: list[DeclaredCommand], configured: str) -> list[DeclaredCommand]:
        if declared:
            return declared
        if configured.strip():
            return [DeclaredCommand(command=configured.strip())]
        return []

    def _test_commands(self, document: TaskListDocument) -> list[DeclaredCommand]:
        declared = document.declared_commands("verify")
        if declared:
            return declared
        if self.config.test_commands:
            return [DeclaredCommand(command=command) for command in self.config.test_commands]
        discovered = discover_gates(self.root)
        if discovered:
            logger.warning(
                "No verification tests declared; using discovered fallback: %s",
                ", ".join(item.command for item in discovered),
            )
        return discovered

    def _setup(
        self, result: VerificationResult, name: str, commands: list[DeclaredCommand]
    ) -> bool:
        for item in commands:
            step, _ = self._run(name, item)
            result.steps.append(step)
            if not step.passed and not step.advisory:
                result.reasons.append(f"{name.capitalize()} step failed: {_excerpt(step)}")
                return False
        return True

    def _e2e(self, result: VerificationResult, item: DeclaredCommand) -> None:
        step, full_output = self._run("e2e", item)
        step.advisory = True
        result.steps.append(step)
        if step.passed:
            return
        if step.unsafe:
            result.reasons.append(f"End-to-end command rejected: {_excerpt(step)}")
            return
        passed, failed = parse_test_summary(full_output)
        if failed:
            result.reasons.append(
                f"End-to-end tests reported {failed} failure(s): {_excerpt(step)}"
            )
            return
        if passed:
            step.passed = True
            step.note = f"accepted partial pass: {passed} passed, none failed"
            logger.info("E2E tier accepted with %d passing and no failing tests", passed)
            return
        if step.exit_code is None:
            step.note = "timed out without a test summary; treated as advisory"
        else:
            step.note = "non-zero exit without a parsable summary; treated as advisory"
        logger.warning("E2E tier %s: %s", step.command, step.note)

    def verify(self, spec_dir: Path) -> VerificationResult:
        document = TaskListDocument.load(spec_dir / "SPEC.md")
        result = VerificationResult(passed=False)

        services = self._pick(document.declared_commands("services"), self.config.services_command)
        if not self._setup(result, "services", services):
            return result
        bootstrap = self._pick(
            document.declared_commands("bootstrap"), self.config.bootstrap_command
        )
        if not self._setup(result, "bootstrap", bootstrap):
            return result

        tests = self._test_commands(document)
        if not tests:
            logger.warning("No test commands declared or discovered to verify %s", spec_dir)
            result.steps.append(
                VerificationStep(
                    name="tests",
                    command="",
                    passed=True,
                    advisory=True,
                    note="no test commands declared or discovered",
                )
            )
        for item in tests:
            step, _ = self._run("tests", item)
            result.steps.append(step)
            if not step.passed and not step.advisory:
                result.reasons.append(f"Tests failed: {_excerpt(step)}")

        for item in self._pick(document.declared_commands("e2e"), self.config.e2e_command):
            self._e2e(result, item)

        for item in self._pick(document.declared_commands("build"), self.config.build_command):
            step, _ = self._run("build", item)
            result.steps.append(step)
            if not step.passed and not step.advisory:
                result.reasons.append(f"Build failed: {_excerpt(step)}")

        result.passed = not result.reasons
        if result.passed:
            logger.info("Completion verified for %s", spec_dir)
        else:
            logger.warning(
                "Completion verification failed for %s: %d reason(s)", spec_dir, len(result.reasons)
            )
        return result
