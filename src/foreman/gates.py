from __future__ import annotations

import hashlib
import json
import logging
import re
import shlex
import subprocess
import time
from collections.abc import Callable, Iterable
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

from foreman.config import GatesConfig
from foreman.shutdown import ShutdownFlag
from foreman.state.store import StateStore
from foreman.tasklist import DeclaredCommand

if TYPE_CHECKING:
    from foreman.probe import PreviewProbe

logger = logging.getLogger(__name__)

SAFE_ARGUMENT_PATTERN = re.compile(r"^[A-Za-z0-9_@%+=:,./~-]+$")
SHELL_METACHARACTERS = set(";|&$`<>(){}\\\"'*?![]\n\r")
FORBIDDEN_FLAGS: dict[str, tuple[str, ...]] = {
    "python": ("-c",),
    "python3": ("-c",),
    "node": ("-e", "--eval", "-p", "--print"),
    "bun": ("-e", "--eval", "-p", "--print"),
    "deno": ("eval",),
    "npx": ("-c", "--call"),
    "npm": ("--call",),
    "make": ("-f", "--file", "--makefile", "SHELL"),
    "go": ("-exec", "-toolexec"),
    "cargo": ("--config",),
}
# Subcommands that start another program. An empty set means the launcher's
# first positional argument is always the program it starts.
LAUNCHER_SUBCOMMANDS: dict[str, frozenset[str]] = {
    "npx": frozenset(),
    "uv": frozenset({"run"}),
    "uvx": frozenset(),
    "npm": frozenset({"exec", "x"}),
    "pnpm": frozenset({"exec", "dlx"}),
    "yarn": frozenset({"exec", "dlx"}),
    "bun": frozenset({"x", "run"}),
}
FORBIDDEN_SUBCOMMANDS: dict[str, frozenset[str]] = {
    "uv": frozenset({"tool"}),
    "cargo": frozenset({"run"}),
    "go": frozenset({"run", "generate"}),
}
# Tools a launcher may start besides the allowlisted programs themselves.
LAUNCHED_TOOLS = frozenset(
    {"cypress", "eslint", "jest", "mocha", "playwright", "prettier", "tsc", "vitest"}
)
ERROR_HASH_LINES = 5
ERROR_LINE_PATTERN = re.compile(
    r"error|fail|panic|exception|traceback|assert|^E\s", re.IGNORECASE
)
DURATION_PATTERN = re.compile(r"\b\d+(?:\.\d+)?\s?(?:ms|s|sec|seconds)\b")

CommandRunner = Callable[..., subprocess.CompletedProcess[str]]


class UnsafeGateCommand(ValueError):
    def __init__(self, raw: str, reason: str) -> None:
        super().__init__(f"Unsafe gate command {raw!r}: {reason}")
        self.raw = raw
        self.reason = reason


@dataclass(frozen=True, slots=True)
class GateCommand:
    program: str
    args: tuple[str, ...] = ()
    informational: bool = False
    raw: str = ""

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args]

    @property
    def display(self) -> str:
        return self.raw or shlex.join(self.argv)


class CommandPolicy:
    """Turns declared command text into argv descriptors, or refuses to."""

    def __init__(self, allowed_programs: Iterable[str]) -> None:
        self.allowed_programs = frozenset(allowed_programs)

    @staticmethod
    def _forbidden_flag(program: str, args: list[str]) -> str | None:
        flags = FORBIDDEN_FLAGS.get(program, ())
        interpreter = program in {"python", "python3"}
        for arg in args:
            if interpreter and (arg.startswith("-m") or not arg.startswith("-")):
                # Everything after the module or script belongs to it.
                break
            name = arg.split("=", 1)[0]
            if name in flags:
                return name
            if interpreter and not arg.startswith("--") and "c" in arg[1:]:
                return arg
        return None

    @staticmethod
    def _first_positional(args: list[str]) -> int | None:
        return next((index for index, arg in enumerate(args) if not arg.startswith("-")), None)

    def _check_subcommands(self, raw: str, program: str, args: list[str]) -> None:
        first = self._first_positional(args)
        if first is not None and args[first] in FORBIDDEN_SUBCOMMANDS.get(program, ()):
            raise UnsafeGateCommand(raw, f"'{program} {args[first]}' runs arbitrary programs")
        if program not in LAUNCHER_SUBCOMMANDS:
            return
        subcommands = LAUNCHER_SUBCOMMANDS[program]
        rest = args
        if subcommands:
            if first is None or args[first] not in subcommands:
                return
            rest = args[first + 1 :]
        target = self._first_positional(rest)
        if target is None:
            raise UnsafeGateCommand(raw, f"{program} must name the tool it starts")
        tool = rest[target]
        if tool not in self.allowed_programs and tool not in LAUNCHED_TOOLS:
            raise UnsafeGateCommand(raw, f"{program} may not start '{tool}'")
        forbidden = self._forbidden_flag(tool, rest[target + 1 :])
        if forbidden is not None:
            raise UnsafeGateCommand(raw, f"flag '{forbidden}' is not allowed for {tool}")

    def parse(self, raw: str, *, informational: bool = False) -> GateCommand:
        text = raw.strip()
        if not text:
            raise UnsafeGateCommand(raw, "command is empty")
        metacharacters = sorted(SHELL_METACHARACTERS.intersection(text))
        if metacharacters:
            raise UnsafeGateCommand(
                raw, f"shell metacharacters are not allowed: {''.join(metacharacters)!r}"
            )
        try:
            tokens = shlex.split(text)
        except ValueError as exc:
            raise UnsafeGateCommand(raw, f"command could not be tokenised: {exc}") from exc
        if not tokens:
            raise UnsafeGateCommand(raw, "command is empty")

        program, args = tokens[0], tokens[1:]
        if "/" in program or "\\" in program:
            raise UnsafeGateCommand(raw, "program must be a bare name, not a path")
        if program not in self.allowed_programs:
            raise UnsafeGateCommand(raw, f"program '{program}' is not in the allowlist")
        for arg in args:
            if not SAFE_ARGUMENT_PATTERN.match(arg):
                raise UnsafeGateCommand(raw, f"argument {arg!r} contains disallowed characters")
        forbidden = self._forbidden_flag(program, args)
        if forbidden is not None:
            raise UnsafeGateCommand(raw, f"flag '{forbidden}' is not allowed for {program}")
        self._check_subcommands(raw, program, args)
        return GateCommand(
            program=program, args=tuple(args), informational=informational, raw=text
        )


@dataclass(slots=True)
class GateResult:
    command: str
    passed: bool
    informational: bool = False
    unsafe: bool = False
    exit_code: int | None = None
    output: str = ""
    error_hash: str = ""
    consecutive_failures: int = 0
    duration_seconds: float = 0.0

    @property
    def blocking(self) -> bool:
        return self.unsafe or not self.informational

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class GateReport:
    results: list[GateResult] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    probe_issues: list[str] = field(default_factory=list)
    abort_requested: bool = False
    interrupted: bool = False
    discovered: bool = False

    @property
    def passed(self) -> bool:
        if self.interrupted:
            return False
        return all(result.passed for result in self.results if result.blocking)

    @property
    def blocking_failures(self) -> list[GateResult]:
        return [result for result in self.results if result.blocking and not result.passed]

    def all_issues(self) -> list[str]:
        return [*self.issues, *self.probe_issues]

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "results": [result.to_dict() for result in self.results],
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "probe_issues": list(self.probe_issues),
            "abort_requested": self.abort_requested,
            "discovered": self.discovered,
            "interrupted": self.interrupted,
        }


def tail_lines(text: str, limit: int) -> str:
    lines = text.rstrip().splitlines()
    if limit <= 0:
        return ""
    return "\n".join(lines[-limit:])


def error_hash(output: str) -> str:
    """Fingerprint a failure by its first error lines, ignoring runner preamble and timings.

    Falls back to the first non-empty lines when nothing looks like an error.
    """
    lines = [
        DURATION_PATTERN.sub("<t>", line.strip()) for line in output.splitlines() if line.strip()
    ]
    errors = [line for line in lines if ERROR_LINE_PATTERN.search(line)]
    digest = hashlib.sha1("\n".join((errors or lines)[:ERROR_HASH_LINES]).encode("utf-8"))
    return digest.hexdigest()[:16]


def _coerce_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def execute_gate(
    command: GateCommand,
    *,
    cwd: Path,
    timeout_seconds: float,
    output_tail_lines: int,
    runner: CommandRunner = subprocess.run,
) -> tuple[GateResult, str]:
    """Run one descriptor without a shell; returns the result and the full output."""
    started = time.monotonic()
    try:
        proc = runner(
            command.argv,
            cwd=cwd,
            text=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout_seconds,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        output = _coerce_text(exc.output) + f"\nTimed out after {timeout_seconds:g}s."
        result = GateResult(
            command=command.display,
            passed=False,
            informational=command.informational,
            exit_code=None,
            output=tail_lines(output, output_tail_lines),
            duration_seconds=round(time.monotonic() - started, 3),
        )
        return result, output
    except OSError as exc:
        output = f"Could not start '{command.program}': {exc}"
        result = GateResult(
            command=command.display,
            passed=False,
            informational=command.informational,
            exit_code=127,
            output=output,
            duration_seconds=round(time.monotonic() - started, 3),
        )
        return result, output

    output = _coerce_text(proc.stdout)
    result = GateResult(
        command=command.display,
        passed=proc.returncode == 0,
        informational=command.informational,
        exit_code=proc.returncode,
        output=tail_lines(output, output_tail_lines),
        duration_seconds=round(time.monotonic() - started, 3),
    )
    return result, output


def _package_test_script(path: Path) -> bool:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return False
    scripts = payload.get("scripts") if isinstance(payload, dict) else None
    if not isinstance(scripts, dict):
        return False
    script = str(scripts.get("test", "")).strip()
    return bool(script) and "no test specified" not in script


def _makefile_has_test(path: Path) -> bool:
    try:
        content = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    return re.search(r"^test\s*:", content, re.MULTILINE) is not None


def discover_gates(root: Path) -> list[DeclaredCommand]:
    """Best-effort test command discovery from generic project descriptors."""
    discovered: list[DeclaredCommand] = []
    if (root / "pyproject.toml").exists() or (root / "setup.py").exists():
        discovered.append(DeclaredCommand(command="python -m pytest -q"))
    if (root / "package.json").exists() and _package_test_script(root / "package.json"):
        discovered.append(DeclaredCommand(command="npm test"))
    if (root / "Cargo.toml").exists():
        discovered.append(DeclaredCommand(command="cargo test"))
    if (root / "go.mod").exists():
        discovered.append(DeclaredCommand(command="go test ./..."))
    if (root / "Makefile").exists() and _makefile_has_test(root / "Makefile"):
        discovered.append(DeclaredCommand(command="make test"))
    return discovered


def _format_issue(result: GateResult) -> str:
    if result.unsafe:
        return (
            f"Quality gate `{result.command}` was rejected before execution: {result.output}\n"
            "Replace it with a plain command from the allowed programs."
        )
    status = "timed out" if result.exit_code is None else f"exit {result.exit_code}"
    excerpt = result.output.strip() or "(no output captured)"
    return f"Quality gate `{result.command}` failed ({status}):\n```\n{excerpt}\n```"


class GateRunner:
    def __init__(
        self,
        root: Path,
        config: GatesConfig,
        *,
        store: StateStore | None = None,
        probe: PreviewProbe | None = None,
        runner: CommandRunner = subprocess.run,
        shutdown: ShutdownFlag | None = None,
    ) -> None:
        self.root = root
        self.config = config
        self.store = store
        self.probe = probe
        self.runner = runner
        self.shutdown = shutdown
        self.policy = CommandPolicy(config.allowed_programs)

    def resolve(
        self, declared: list[DeclaredCommand]
    ) -> tuple[list[DeclaredCommand], list[str], bool]:
        if declared:
            return declared, [], False
        discovered = discover_gates(self.root)
        if not discovered:
            message = (
                "No quality gates are declared and none could be discovered; "
                "this iteration is not validated by any check."
            )
            logger.warning(message)
            return [], [message], True
        commands = ", ".join(item.command for item in discovered)
        message = f"No quality gates declared; using discovered fallback checks: {commands}"
        logger.warning(message)
        return discovered, [message], True

    def _run_one(self, item: DeclaredCommand) -> tuple[GateResult, str]:
        try:
            command = self.policy.parse(item.command, informational=item.informational)
        except UnsafeGateCommand as exc:
            logger.error("Rejected gate command %r: %s", item.command, exc.reason)
            result = GateResult(
                command=item.command.strip(),
                passed=False,
                informational=item.informational,
                unsafe=True,
                output=exc.reason,
            )
            return result, exc.reason
        logger.info("Running gate: %s", command.display)
        return execute_gate(
            command,
            cwd=self.root,
            timeout_seconds=self.config.timeout_seconds,
            output_tail_lines=self.config.output_tail_lines,
            runner=self.runner,
        )

    def _track(self, results: list[tuple[GateResult, str]], *, record: bool = True) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            counters = payload if isinstance(payload, dict) else {}
            for result, _ in results:
                entry = counters.get(result.command)
                if result.passed:
                    counters[result.command] = {"hash": "", "count": 0}
                    result.consecutive_failures = 0
                    continue
                if isinstance(entry, dict) and entry.get("hash") == result.error_hash:
                    count = int(entry.get("count", 0)) + 1
                else:
                    count = 1
                counters[result.command] = {"hash": result.error_hash, "count": count}
                result.consecutive_failures = count
            return counters

        if self.store is None or not record:
            for result, _ in results:
                result.consecutive_failures = 0 if result.passed else 1
            return
        self.store.update_json("gates", _updater, default={})

    def run(self, declared: list[DeclaredCommand], *, record: bool = True) -> GateReport:
        """Run every gate in order.

        With ``record`` off the repeat-failure counters are left untouched.
        """
        commands, warnings, discovered = self.resolve(declared)
        report = GateReport(warnings=list(warnings), discovered=discovered)

        executed: list[tuple[GateResult, str]] = []
        for item in commands:
            if self.shutdown is not None and self.shutdown.requested:
                logger.warning(
                    "Skipping remaining gates after shutdown request (%s)", self.shutdown.reason
                )
                report.interrupted = True
                break
            executed.append(self._run_one(item))
        for result, full_output in executed:
            if not result.passed:
                result.error_hash = error_hash(full_output)
        self._track(executed, record=record)

        threshold = self.config.repeat_failure_threshold
        abort_at = self.config.repeat_failure_abort
        for result, _ in executed:
            report.results.append(result)
            if result.passed:
                logger.info("Gate passed: %s", result.command)
                continue
            if not result.blocking:
                logger.info("Informational gate failed: %s", result.command)
                continue
            logger.warning("Gate failed: %s", result.command)
            report.issues.append(_format_issue(result))
            if threshold > 0 and result.consecutive_failures >= threshold:
                report.warnings.append(
                    f"Gate `{result.command}` has failed {result.consecutive_failures} times "
                    "in a row with the same error. This failure is real and must be fixed now; "
                    "it is not environmental and it is not pre-existing."
                )
            if abort_at > 0 and result.consecutive_failures >= abort_at:
                report.abort_requested = True

        if self.probe is not None and not report.interrupted:
            report.probe_issues = self.probe.check()
        return report
