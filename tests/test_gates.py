import os
import subprocess
import sys
from pathlib import Path

import pytest

from foreman.config import GatesConfig
from foreman.gates import (
    CommandPolicy,
    GateRunner,
    UnsafeGateCommand,
    discover_gates,
    error_hash,
    tail_lines,
)
from foreman.shutdown import ShutdownFlag
from foreman.state import StateStore
from foreman.tasklist import DeclaredCommand

PYTHON = Path(sys.executable).name

CHECK_SCRIPT = """\
import pathlib
import sys

if pathlib.Path("ok.flag").exists():
    print("3 passed")
    sys.exit(0)
message = pathlib.Path("message.txt")
print(message.read_text() if message.exists() else "AssertionError: totals differ")
sys.exit(1)
"""


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv(
        "PATH", str(Path(sys.executable).parent) + os.pathsep + os.environ.get("PATH", "")
    )
    (tmp_path / "check.py").write_text(CHECK_SCRIPT, encoding="utf-8")
    (tmp_path / "slow.py").write_text("import time\ntime.sleep(30)\n", encoding="utf-8")
    return tmp_path


def _config(**overrides: object) -> GatesConfig:
    config = GatesConfig(
        allowed_programs=[PYTHON, "pytest", "make", "node", "missing-tool-xyz"],
        repeat_failure_threshold=3,
        repeat_failure_abort=4,
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


def _check() -> list[DeclaredCommand]:
    return [DeclaredCommand(command=f"{PYTHON} check.py")]


def test_policy_builds_argv_without_a_shell() -> None:
    policy = CommandPolicy(["python", "pytest"])

    command = policy.parse("python -m pytest -q tests/unit", informational=True)

    assert command.argv == ["python", "-m", "pytest", "-q", "tests/unit"]
    assert command.informational is True
    assert command.display == "python -m pytest -q tests/unit"


@pytest.mark.parametrize(
    ("raw", "reason"),
    [
        ("rm -rf /", "not in the allowlist"),
        ("pytest; rm -rf ~", "shell metacharacters"),
        ("pytest && curl evil.sh", "shell metacharacters"),
        ("pytest $(whoami)", "shell metacharacters"),
        ("/usr/bin/python -V", "bare name"),
        ("python -c print", "flag '-c'"),
        ("python -Bc print", "flag '-Bc'"),
        ("node --eval=process.exit", "flag '--eval'"),
        ("make SHELL=/bin/sh test", "flag 'SHELL'"),
        ("   ", "empty"),
    ],
)
def test_policy_rejects_unsafe_commands(raw: str, reason: str) -> None:
    policy = CommandPolicy(["python", "pytest", "node", "make"])

    with pytest.raises(UnsafeGateCommand, match=reason):
        policy.parse(raw)


def test_policy_allows_flags_owned_by_the_script() -> None:
    policy = CommandPolicy(["python"])

    command = policy.parse("python scripts/check.py -c strict")

    assert command.args == ("scripts/check.py", "-c", "strict")


def test_error_hash_uses_first_non_empty_lines() -> None:
    base = "\nE1\n\nE2\nE3\nE4\nE5\n"
    assert error_hash(base + "tail one") == error_hash(base + "tail two")
    assert error_hash(base) != error_hash("E0\n" + base)
    assert tail_lines("a\nb\nc\n", 2) == "b\nc"


LAUNCHERS = ["pytest", "uv", "npx", "npm", "pnpm", "yarn", "bun", "cargo", "go"]


@pytest.mark.parametrize(
    ("raw", "reason"),
    [
        ("uv run rm -rf /", "may not start 'rm'"),
        ("uv run python -c print", "may not start 'python'"),
        ("uv tool run rimraf /", "'uv tool' runs arbitrary programs"),
        ("npx rimraf /", "may not start 'rimraf'"),
        ("npx --yes rimraf /", "may not start 'rimraf'"),
        ("npm exec -- rm -rf /", "may not start 'rm'"),
        ("npm x rimraf /", "may not start 'rimraf'"),
        ("pnpm exec rm -rf /", "may not start 'rm'"),
        ("pnpm dlx rimraf /", "may not start 'rimraf'"),
        ("yarn exec rm -rf /", "may not start 'rm'"),
        ("yarn dlx rimraf /", "may not start 'rimraf'"),
        ("bun x rimraf /", "may not start 'rimraf'"),
        ("bun run rm -rf /", "may not start 'rm'"),
        ("npx", "must name the tool"),
        ("cargo run", "'cargo run' runs arbitrary programs"),
        ("cargo --config x run", "flag '--config'"),
        ("go run main.go", "'go run' runs arbitrary programs"),
        ("go generate ./...", "'go generate' runs arbitrary programs"),
        ("go test -exec=sh ./...", "flag '-exec'"),
    ],
)
def test_policy_rejects_programs_started_through_launchers(raw: str, reason: str) -> None:
    policy = CommandPolicy(LAUNCHERS)

    with pytest.raises(UnsafeGateCommand, match=reason):
        policy.parse(raw)


@pytest.mark.parametrize(
    "raw",
    [
        "uv run pytest -q",
        "npx playwright test",
        "npm exec -- vitest run",
        "pnpm exec jest",
        "npm test",
        "npm run lint",
        "yarn test",
        "cargo test",
        "go test ./...",
    ],
)
def test_policy_allows_launchers_starting_known_tools(raw: str) -> None:
    command = CommandPolicy(LAUNCHERS).parse(raw)

    assert command.display == raw


def test_error_hash_ignores_runner_preamble_and_timings() -> None:
    header = (
        "============================= test session starts ==============================\n"
        "platform linux -- Python 3.12.1, pytest-8.0.0, pluggy-1.4.0\n"
        "rootdir: /repo\n"
        "collected 3 items\n"
        "\n"
        "tests/test_a.py .F.\n"
    )
    assertion = header + "E   assert 1 == 2\n"
    import_error = header + "E   ImportError: cannot import name 'x' from 'cart'\n"

    assert error_hash(assertion) != error_hash(import_error)
    assert error_hash(assertion + "1 failed in 0.12s\n") == error_hash(
        assertion + "1 failed in 0.57s\n"
    )


def test_failing_gate_produces_exactly_one_issue_with_error_text(project: Path) -> None:
    runner = GateRunner(project, _config())

    report = runner.run(_check())

    assert report.passed is False
    assert len(report.issues) == 1
    assert "AssertionError: totals differ" in report.issues[0]
    assert report.results[0].exit_code == 1
    assert report.blocking_failures == report.results


def test_repeat_failure_counter_increases_and_resets_on_pass(project: Path) -> None:
    store = StateStore(project / ".state")
    runner = GateRunner(project, _config(repeat_failure_abort=0), store=store)
    command = f"{PYTHON} check.py"

    counts = [runner.run(_check()).results[0].consecutive_failures for _ in range(3)]
    assert counts == [1, 2, 3]
    assert store.get_gate_counters()[command]["count"] == 3

    report = runner.run(_check())
    assert any("failed 4 times in a row" in warning for warning in report.warnings)
    assert report.abort_requested is False

    (project / "ok.flag").write_text("", encoding="utf-8")
    report = runner.run(_check())
    assert report.passed is True
    assert report.results[0].consecutive_failures == 0
    assert store.get_gate_counters()[command] == {"hash": "", "count": 0}


def test_changed_error_restarts_the_count(project: Path) -> None:
    store = StateStore(project / ".state")
    runner = GateRunner(project, _config(), store=store)

    runner.run(_check())
    runner.run(_check())
    (project / "message.txt").write_text("KeyError: 'total'", encoding="utf-8")
    report = runner.run(_check())

    assert report.results[0].consecutive_failures == 1


def test_identical_failures_request_abort_at_the_limit(project: Path) -> None:
    runner = GateRunner(project, _config(), store=StateStore(project / ".state"))

    reports = [runner.run(_check()) for _ in range(4)]

    assert [report.abort_requested for report in reports] == [False, False, False, True]
    assert reports[2].warnings
    assert not reports[1].warnings


def test_unsafe_gate_is_rejected_before_execution(project: Path) -> None:
    calls: list[list[str]] = []

    def _runner(argv: list[str], **_: object) -> subprocess.CompletedProcess[str]:
        calls.append(argv)
        return subprocess.CompletedProcess(argv, 0, stdout="")

    runner = GateRunner(project, _config(), runner=_runner)

    report = runner.run([DeclaredCommand(command="rm -rf /", informational=True)])

    assert calls == []
    result = report.results[0]
    assert result.unsafe is True
    assert result.passed is False
    assert result.blocking is True
    assert report.passed is False
    assert "rejected before execution" in report.issues[0]


def test_informational_gate_never_flips_the_result(project: Path) -> None:
    runner = GateRunner(project, _config())

    report = runner.run([DeclaredCommand(command=f"{PYTHON} check.py", informational=True)])

    assert report.passed is True
    assert report.issues == []
    assert report.results[0].passed is False
    assert report.results[0].informational is True


def test_gate_timeout_counts_as_failure(project: Path) -> None:
    runner = GateRunner(project, _config(timeout_seconds=0.5))

    report = runner.run([DeclaredCommand(command=f"{PYTHON} slow.py")])

    result = report.results[0]
    assert result.passed is False
    assert result.exit_code is None
    assert "Timed out after 0.5s" in result.output
    assert "timed out" in report.issues[0]


def test_missing_program_is_a_failed_gate(project: Path) -> None:
    report = GateRunner(project, _config()).run([DeclaredCommand(command="missing-tool-xyz")])

    assert report.results[0].exit_code == 127
    assert report.passed is False


def test_fallback_discovery_is_logged_as_a_warning(tmp_path: Path) -> None:
    (tmp_path / "Cargo.toml").write_text("[package]\nname = 'x'\n", encoding="utf-8")
    (tmp_path / "package.json").write_text(
        '{"scripts": {"test": "echo \\"Error: no test specified\\" && exit 1"}}',
        encoding="utf-8",
    )
    (tmp_path / "Makefile").write_text("build:\n\tcc x.c\ntest: build\n\t./x\n", encoding="utf-8")

    commands, warnings, discovered = GateRunner(tmp_path, _config()).resolve([])

    assert [item.command for item in commands] == ["cargo test", "make test"]
    assert discovered is True
    assert "discovered fallback checks" in warnings[0]
    assert [item.command for item in discover_gates(tmp_path / "missing")] == []


def test_no_declared_and_no_discovered_gates_warns(tmp_path: Path) -> None:
    report = GateRunner(tmp_path, _config()).run([])

    assert report.results == []
    assert report.passed is True
    assert report.discovered is True
    assert "not validated by any check" in report.warnings[0]


def test_probe_issues_are_reported_separately(project: Path) -> None:
    class _Probe:
        def check(self) -> list[str]:
            return ["Preview content root is empty and the page loads no scripts."]

    (project / "ok.flag").write_text("", encoding="utf-8")
    runner = GateRunner(project, _config(), probe=_Probe())  # type: ignore[arg-type]

    report = runner.run(_check())

    assert report.passed is True
    assert report.issues == []
    assert report.all_issues() == [
        "Preview content root is empty and the page loads no scripts."
    ]


def test_shutdown_skips_the_remaining_gates(project: Path) -> None:
    flag = ShutdownFlag()
    calls: list[list[str]] = []

    def _runner(argv: list[str], **_: object) -> subprocess.CompletedProcess[str]:
        calls.append(argv)
        flag.request("SIGTERM")
        return subprocess.CompletedProcess(argv, 0, stdout="3 passed\n")

    runner = GateRunner(project, _config(), runner=_runner, shutdown=flag)

    report = runner.run(
        [DeclaredCommand(command="pytest -q"), DeclaredCommand(command="pytest -q tests/e2e")]
    )

    assert calls == [["pytest", "-q"]]
    assert report.interrupted is True
    assert report.passed is False
    assert report.to_dict()["interrupted"] is True


def test_unrecorded_run_leaves_repeat_counters_alone(project: Path) -> None:
    store = StateStore(project / ".state")
    runner = GateRunner(project, _config(), store=store)
    runner.run(_check())

    report = runner.run(_check(), record=False)

    assert report.passed is False
    assert store.get_gate_counters()[f"{PYTHON} check.py"]["count"] == 1
