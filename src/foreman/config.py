from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude", "codex", "command"]

DEFAULT_ALLOWED_PROGRAMS = [
    "bun",
    "cargo",
    "deno",
    "eslint",
    "go",
    "gradle",
    "jest",
    "make",
    "mvn",
    "mypy",
    "node",
    "npm",
    "npx",
    "pnpm",
    "pyright",
    "pytest",
    "python",
    "python3",
    "ruff",
    "tox",
    "tsc",
    "uv",
    "vitest",
    "yarn",
]


@dataclass(slots=True)
class AgentConfig:
    backend: BackendName = "claude"
    binary: str = ""
    extra_args: list[str] = field(default_factory=list)
    command: list[str] = field(default_factory=list)
    timeout_seconds: float = 600.0
    max_retries: int = 3
    retry_delay_seconds: float = 5.0
    graceful_shutdown_seconds: float = 5.0


@dataclass(slots=True)
class LoopConfig:
    max_iterations: int = 25
    max_consecutive_failures: int = 3
    iteration_delay_seconds: float = 3.0


@dataclass(slots=True)
class GatesConfig:
    allowed_programs: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_PROGRAMS))
    timeout_seconds: float = 600.0
    output_tail_lines: int = 40
    repeat_failure_threshold: int = 5
    repeat_failure_abort: int = 10


@dataclass(slots=True)
class LearningsConfig:
    path: str = ".foreman/learnings.jsonl"
    render_limit: int = 10
    similar_fix_limit: int = 3


@dataclass(slots=True)
class VerifyConfig:
    services_command: str = ""
    bootstrap_command: str = ""
    test_commands: list[str] = field(default_factory=list)
    e2e_command: str = ""
    build_command: str = ""
    timeout_seconds: float = 900.0


@dataclass(slots=True)
class ProbeConfig:
    url: str = ""
    timeout_seconds: float = 5.0


@dataclass(slots=True)
class ForemanConfig:
    agent: AgentConfig = field(default_factory=AgentConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    gates: GatesConfig = field(default_factory=GatesConfig)
    learnings: LearningsConfig = field(default_factory=LearningsConfig)
    verify: VerifyConfig = field(default_factory=VerifyConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ForemanConfig:
        return cls(
            agent=AgentConfig(**data.get("agent", {})),
            loop=LoopConfig(**data.get("loop", {})),
            gates=GatesConfig(**data.get("gates", {})),
            learnings=LearningsConfig(**data.get("learnings", {})),
            verify=VerifyConfig(**data.get("verify", {})),
            probe=ProbeConfig(**data.get("probe", {})),
        )

    def to_dict(self) -> dict:
        return {
            "agent": {
                "backend": self.agent.backend,
                "binary": self.agent.binary,
                "extra_args": list(self.agent.extra_args),
                "command": list(self.agent.command),
                "timeout_seconds": self.agent.timeout_seconds,
                "max_retries": self.agent.max_retries,
                "retry_delay_seconds": self.agent.retry_delay_seconds,
                "graceful_shutdown_seconds": self.agent.graceful_shutdown_seconds,
            },
            "loop": {
                "max_iterations": self.loop.max_iterations,
                "max_consecutive_failures": self.loop.max_consecutive_failures,
                "iteration_delay_seconds": self.loop.iteration_delay_seconds,
            },
            "gates": {
                "allowed_programs": list(self.gates.allowed_programs),
                "timeout_seconds": self.gates.timeout_seconds,
                "output_tail_lines": self.gates.output_tail_lines,
                "repeat_failure_threshold": self.gates.repeat_failure_threshold,
                "repeat_failure_abort": self.gates.repeat_failure_abort,
            },
            "learnings": {
                "path": self.learnings.path,
                "render_limit": self.learnings.render_limit,
                "similar_fix_limit": self.learnings.similar_fix_limit,
            },
            "verify": {
                "services_command": self.verify.services_command,
                "bootstrap_command": self.verify.bootstrap_command,
                "test_commands": list(self.verify.test_commands),
                "e2e_command": self.verify.e2e_command,
                "build_command": self.verify.build_command,
                "timeout_seconds": self.verify.timeout_seconds,
            },
            "probe": {
                "url": self.probe.url,
                "timeout_seconds": self.probe.timeout_seconds,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["agent", "loop", "gates", "learnings", "verify", "probe"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    return ForemanConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ForemanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
